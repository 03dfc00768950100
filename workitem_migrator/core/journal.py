"""Durable checkpoint store for resumable replay."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Set, Tuple

import aiosqlite
from pydantic import BaseModel, Field

from workitem_migrator.logging import get_logger


class MigrationRun(BaseModel):
    """Migration run metadata."""

    id: Optional[int] = None
    command: str = "import"
    started_at: datetime
    completed_at: Optional[datetime] = None
    forced: bool = False
    total_items: int = 0
    total_revisions: int = 0
    processed_revisions: int = 0
    skipped_revisions: int = 0
    failed_revisions: int = 0
    warnings: int = 0
    aborted: bool = False
    configuration: Dict[str, Any] = Field(default_factory=dict)
    error_log: List[str] = Field(default_factory=list)


class Journal:
    """Journal of migrated items, processed revisions and uploaded attachments.

    Entries are only written after the target system has confirmed the
    corresponding mutation. Lookups are served from memory; every write goes
    straight to SQLite.
    """

    def __init__(self, db_path: Path, timeout: int = 30) -> None:
        """Initialize the journal.

        Args:
            db_path: Path to the SQLite file
            timeout: Connection timeout in seconds
        """
        self.db_path = db_path
        self.timeout = timeout
        self.logger = get_logger("journal")
        self._lock = asyncio.Lock()
        self._migrated_items: Dict[str, int] = {}
        self._processed: Set[Tuple[str, int]] = set()
        self._attachments: Dict[str, str] = {}

    async def initialize(self, fresh: bool = False) -> None:
        """Create the schema if needed and load existing entries.

        Args:
            fresh: Forget previous item, revision and attachment entries
        """
        async with self._lock:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            await self._create_schema()
            if fresh:
                await self._clear()
            await self._load()
            self.logger.info(
                "journal_initialized",
                path=str(self.db_path),
                fresh=fresh,
                items=len(self._migrated_items),
                revisions=len(self._processed),
                attachments=len(self._attachments),
            )

    async def _create_schema(self) -> None:
        async with self._get_connection() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS migration_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    command TEXT NOT NULL,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP,
                    forced INTEGER DEFAULT 0,
                    total_items INTEGER DEFAULT 0,
                    total_revisions INTEGER DEFAULT 0,
                    processed_revisions INTEGER DEFAULT 0,
                    skipped_revisions INTEGER DEFAULT 0,
                    failed_revisions INTEGER DEFAULT 0,
                    warnings INTEGER DEFAULT 0,
                    aborted INTEGER DEFAULT 0,
                    configuration TEXT,
                    error_log TEXT
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS migrated_items (
                    origin_id TEXT PRIMARY KEY,
                    wi_id INTEGER NOT NULL,
                    migrated_at TIMESTAMP NOT NULL
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_revisions (
                    origin_id TEXT NOT NULL,
                    rev_index INTEGER NOT NULL,
                    wi_id INTEGER NOT NULL,
                    processed_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (origin_id, rev_index)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS migrated_attachments (
                    att_origin_id TEXT PRIMARY KEY,
                    reference TEXT NOT NULL,
                    uploaded_at TIMESTAMP NOT NULL
                )
            """)

            await conn.commit()

    async def _clear(self) -> None:
        async with self._get_connection() as conn:
            await conn.execute("DELETE FROM migrated_items")
            await conn.execute("DELETE FROM processed_revisions")
            await conn.execute("DELETE FROM migrated_attachments")
            await conn.commit()
        self.logger.info("journal_cleared", path=str(self.db_path))

    async def _load(self) -> None:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT origin_id, wi_id FROM migrated_items")
            self._migrated_items = {row["origin_id"]: row["wi_id"] for row in await cursor.fetchall()}

            cursor = await conn.execute("SELECT origin_id, rev_index FROM processed_revisions")
            self._processed = {(row["origin_id"], row["rev_index"]) for row in await cursor.fetchall()}

            cursor = await conn.execute("SELECT att_origin_id, reference FROM migrated_attachments")
            self._attachments = {
                row["att_origin_id"]: row["reference"] for row in await cursor.fetchall()
            }

    @asynccontextmanager
    async def _get_connection(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get database connection.

        Yields:
            Database connection
        """
        conn = await aiosqlite.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    def get_migrated_id(self, origin_id: str) -> Optional[int]:
        """Get the work item id created for an item, if any."""
        return self._migrated_items.get(origin_id)

    def is_item_migrated(self, origin_id: str, index: int) -> bool:
        """Check whether a revision was already replayed."""
        return (origin_id, index) in self._processed

    def get_attachment_reference(self, att_origin_id: str) -> Optional[str]:
        return self._attachments.get(att_origin_id)

    def is_attachment_migrated(self, att_origin_id: str) -> bool:
        return att_origin_id in self._attachments

    async def mark_rev_processed(self, origin_id: str, wi_id: int, index: int) -> None:
        """Record a committed revision.

        The item's work item id is recorded the first time only.

        Args:
            origin_id: Source item key
            wi_id: Work item id confirmed by the target
            index: Revision index
        """
        now = datetime.now(timezone.utc).isoformat()
        known = self._migrated_items.get(origin_id)
        if known is not None and known != wi_id:
            self.logger.warning(
                "work_item_id_conflict",
                origin_id=origin_id,
                journaled_id=known,
                new_id=wi_id,
            )

        async with self._get_connection() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO migrated_items (origin_id, wi_id, migrated_at) VALUES (?, ?, ?)",
                (origin_id, wi_id, now),
            )
            await conn.execute(
                """
                INSERT OR REPLACE INTO processed_revisions (
                    origin_id, rev_index, wi_id, processed_at
                ) VALUES (?, ?, ?, ?)
                """,
                (origin_id, index, wi_id, now),
            )
            await conn.commit()

        self._migrated_items.setdefault(origin_id, wi_id)
        self._processed.add((origin_id, index))
        self.logger.debug("revision_journaled", origin_id=origin_id, index=index, wi_id=wi_id)

    async def mark_attachment_processed(self, att_origin_id: str, reference: str) -> None:
        """Record a confirmed attachment upload."""
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO migrated_attachments (
                    att_origin_id, reference, uploaded_at
                ) VALUES (?, ?, ?)
                """,
                (att_origin_id, reference, datetime.now(timezone.utc).isoformat()),
            )
            await conn.commit()

        self._attachments[att_origin_id] = reference

    async def create_run(self, run: MigrationRun) -> MigrationRun:
        """Insert a run record.

        Args:
            run: Run to insert

        Returns:
            Run with its id
        """
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO migration_runs (
                    command, started_at, forced, total_items, total_revisions, configuration
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run.command,
                    run.started_at.isoformat(),
                    int(run.forced),
                    run.total_items,
                    run.total_revisions,
                    json.dumps(run.configuration),
                ),
            )
            run.id = cursor.lastrowid
            await conn.commit()

        self.logger.info("migration_run_created", run_id=run.id, command=run.command)
        return run

    async def update_run(self, run: MigrationRun) -> None:
        """Update run statistics.

        Args:
            run: Run to update
        """
        async with self._get_connection() as conn:
            await conn.execute(
                """
                UPDATE migration_runs SET
                    completed_at = ?,
                    total_items = ?,
                    total_revisions = ?,
                    processed_revisions = ?,
                    skipped_revisions = ?,
                    failed_revisions = ?,
                    warnings = ?,
                    aborted = ?,
                    error_log = ?
                WHERE id = ?
                """,
                (
                    run.completed_at.isoformat() if run.completed_at else None,
                    run.total_items,
                    run.total_revisions,
                    run.processed_revisions,
                    run.skipped_revisions,
                    run.failed_revisions,
                    run.warnings,
                    int(run.aborted),
                    json.dumps(run.error_log),
                    run.id,
                ),
            )
            await conn.commit()

    async def get_latest_run(self, command: Optional[str] = None) -> Optional[MigrationRun]:
        """Get the latest run, optionally of one command.

        Returns:
            Latest run or None
        """
        query = "SELECT * FROM migration_runs"
        params: Tuple[Any, ...] = ()
        if command:
            query += " WHERE command = ?"
            params = (command,)
        query += " ORDER BY id DESC LIMIT 1"

        async with self._get_connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()

            if not row:
                return None

            return MigrationRun(
                id=row["id"],
                command=row["command"],
                started_at=datetime.fromisoformat(row["started_at"]),
                completed_at=(
                    datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
                ),
                forced=bool(row["forced"]),
                total_items=row["total_items"],
                total_revisions=row["total_revisions"],
                processed_revisions=row["processed_revisions"],
                skipped_revisions=row["skipped_revisions"],
                failed_revisions=row["failed_revisions"],
                warnings=row["warnings"],
                aborted=bool(row["aborted"]),
                configuration=json.loads(row["configuration"] or "{}"),
                error_log=json.loads(row["error_log"] or "[]"),
            )

    async def get_statistics(self) -> Dict[str, Any]:
        """Get journal statistics for reporting.

        Returns:
            Dictionary of counts and the latest run
        """
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) AS n FROM migrated_items")
            items = (await cursor.fetchone())["n"]
            cursor = await conn.execute("SELECT COUNT(*) AS n FROM processed_revisions")
            revisions = (await cursor.fetchone())["n"]
            cursor = await conn.execute("SELECT COUNT(*) AS n FROM migrated_attachments")
            attachments = (await cursor.fetchone())["n"]
            cursor = await conn.execute("SELECT COUNT(*) AS n FROM migration_runs")
            runs = (await cursor.fetchone())["n"]

        latest = await self.get_latest_run()
        return {
            "migrated_items": items,
            "processed_revisions": revisions,
            "migrated_attachments": attachments,
            "runs": runs,
            "latest_run": latest.model_dump(mode="json") if latest else None,
        }

    async def get_migrated_items(self) -> List[Dict[str, Any]]:
        """List journaled items for the detailed report."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT m.origin_id, m.wi_id, m.migrated_at, COUNT(p.rev_index) AS revisions
                FROM migrated_items m
                LEFT JOIN processed_revisions p ON p.origin_id = m.origin_id
                GROUP BY m.origin_id
                ORDER BY m.origin_id
                """
            )
            return [dict(row) for row in await cursor.fetchall()]
