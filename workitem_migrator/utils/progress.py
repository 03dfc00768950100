"""Progress display for export and import runs."""

import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from workitem_migrator.logging import get_logger


class ProgressTracker:
    """Track and display progress of a run."""

    def __init__(self, console: Optional[Console] = None, live: bool = True) -> None:
        """Initialize progress tracker.

        Args:
            console: Rich console for output
            live: Show the live panel while running
        """
        self.console = console or Console()
        self.show_live = live
        self.logger = get_logger("progress_tracker")

        self.title = "Migration Progress"
        self.unit = "revisions"
        self.total_items = 0
        self.completed_items = 0
        self.failed_items = 0
        self.skipped_items = 0
        self.start_time: Optional[float] = None

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
        )
        self.main_task: Optional[TaskID] = None
        self.live: Optional[Live] = None
        self.current: str = ""

    def initialize(self, total_items: int, description: str, unit: str = "revisions") -> None:
        """Start tracking.

        Args:
            total_items: Total number of items to process
            description: Progress bar label
            unit: Name of the counted items
        """
        self.total_items = total_items
        self.unit = unit
        self.completed_items = 0
        self.failed_items = 0
        self.skipped_items = 0
        self.start_time = time.monotonic()

        self.main_task = self.progress.add_task(description, total=total_items)

        if self.show_live:
            self.live = Live(self._create_display(), console=self.console, refresh_per_second=1)
            self.live.start()

        self.logger.info("progress_initialized", total_items=total_items, unit=unit)

    def advance(self, status: str, current: str = "") -> None:
        """Count one processed item.

        Args:
            status: ``completed``, ``failed`` or ``skipped``
            current: Label of the item just processed
        """
        if status == "completed":
            self.completed_items += 1
        elif status == "failed":
            self.failed_items += 1
        else:
            self.skipped_items += 1
        self.current = current

        if self.main_task is not None:
            self.progress.update(self.main_task, completed=self.processed)
        if self.live:
            self.live.update(self._create_display())

    @property
    def processed(self) -> int:
        return self.completed_items + self.failed_items + self.skipped_items

    def get_rate(self) -> float:
        """Calculate processing rate.

        Returns:
            Items per minute
        """
        if not self.start_time:
            return 0.0

        elapsed = time.monotonic() - self.start_time
        if elapsed < 1:
            return 0.0
        return (self.processed / elapsed) * 60

    def get_eta(self) -> Optional[datetime]:
        rate = self.get_rate()
        remaining = self.total_items - self.processed
        if rate <= 0 or remaining <= 0:
            return None
        return datetime.now() + timedelta(minutes=remaining / rate)

    def _create_display(self) -> Panel:
        stats_table = Table(show_header=False, box=None)
        stats_table.add_column("Label", style="cyan")
        stats_table.add_column("Value", style="green")

        progress_pct = (self.processed / self.total_items * 100) if self.total_items > 0 else 0

        stats_table.add_row(f"Total {self.unit.capitalize()}", str(self.total_items))
        stats_table.add_row("Completed", f"{self.completed_items} ✓")
        stats_table.add_row("Failed", f"{self.failed_items} ✗" if self.failed_items > 0 else "0")
        stats_table.add_row("Skipped", f"{self.skipped_items} ⊘" if self.skipped_items > 0 else "0")
        stats_table.add_row("Progress", f"{progress_pct:.1f}%")
        stats_table.add_row("Rate", f"{self.get_rate():.1f} {self.unit}/min")

        eta = self.get_eta()
        if eta:
            stats_table.add_row("ETA", eta.strftime("%H:%M:%S"))
        if self.current:
            stats_table.add_row("Current", self.current)

        display = Table.grid()
        display.add_column()
        display.add_row(self.progress)
        display.add_row("")
        display.add_row(stats_table)

        return Panel(display, title=self.title, border_style="blue")

    def finish(self) -> Dict[str, Any]:
        """Stop the display and return a summary."""
        if self.live:
            self.live.stop()
            self.live = None

        if not self.start_time:
            return {}

        elapsed = time.monotonic() - self.start_time
        summary = {
            "total_items": self.total_items,
            "completed_items": self.completed_items,
            "failed_items": self.failed_items,
            "skipped_items": self.skipped_items,
            "success_rate": (
                (self.completed_items / self.processed * 100) if self.processed > 0 else 0
            ),
            "elapsed_time": elapsed,
        }

        self.logger.info("progress_finished", **summary)
        return summary
