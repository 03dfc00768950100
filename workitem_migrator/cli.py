"""Command-line interface for the Jira to Azure DevOps migration tool."""

import asyncio
import json
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from workitem_migrator import __version__
from workitem_migrator.config import Config, load_config
from workitem_migrator.logging import logger


console = Console()


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="Jira to Azure DevOps Migrator")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)
@click.option(
    "--env-file",
    "-e",
    type=click.Path(exists=True, path_type=Path),
    help="Path to .env file",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[Path], env_file: Optional[Path]) -> None:
    """Jira to Azure DevOps work item migration tool.

    Exports Jira issues with their history, then replays every revision
    into Azure DevOps.
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["env_file"] = env_file


def _load(ctx: click.Context) -> Config:
    try:
        return load_config(ctx.obj.get("config_path"), ctx.obj.get("env_file"))
    except Exception as e:
        console.print(f"[bold red]Error loading configuration:[/bold red] {e}")
        sys.exit(1)


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config.yaml"),
    help="Output path for configuration file",
)
@click.option(
    "--format",
    "-f",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    help="Configuration file format",
)
def init(output: Path, format: str) -> None:
    """Initialize a new configuration file with default values."""
    console.print(f"[bold blue]Creating configuration file: {output}[/bold blue]")

    from workitem_migrator.config import (
        DevOpsConfig,
        JiraConfig,
        MappingConfig,
        TypeMapEntry,
    )

    console.print("\n[bold yellow]Jira:[/bold yellow]")
    jira_url = click.prompt("Jira URL")
    jira_user = click.prompt("Jira user")
    jira_token = click.prompt("Jira API token", hide_input=True)
    jira_project = click.prompt("Jira project key")

    console.print("\n[bold yellow]Azure DevOps:[/bold yellow]")
    devops_url = click.prompt("Organization URL")
    devops_pat = click.prompt("Personal access token", hide_input=True)
    devops_project = click.prompt("Project name")

    try:
        config = Config(
            jira=JiraConfig(
                url=jira_url,
                user=jira_user,
                api_token=jira_token,  # type: ignore
                project=jira_project,
            ),
            devops=DevOpsConfig(
                url=devops_url,
                pat=devops_pat,  # type: ignore
                project=devops_project,
            ),
            mapping=MappingConfig(
                type_map=[
                    TypeMapEntry(source="Story", target="User Story"),
                    TypeMapEntry(source="Bug", target="Bug"),
                    TypeMapEntry(source="Task", target="Task"),
                    TypeMapEntry(source="Epic", target="Epic"),
                ]
            ),
        )

        if format == "json" and not output.suffix:
            output = output.with_suffix(".json")
        elif format == "yaml" and not output.suffix:
            output = output.with_suffix(".yaml")

        config.to_file(output)
        console.print(f"\n[bold green]✓[/bold green] Configuration saved to: {output}")
        console.print("\n[yellow]Next steps:[/yellow]")
        console.print("1. Set JIRA_API_TOKEN and DEVOPS_PAT, secrets are not written to the file")
        console.print("2. Review the type, field and link maps")
        console.print("3. Run 'wi-migrate validate', then 'wi-migrate export' and 'wi-migrate import'")

    except Exception as e:
        console.print(f"[bold red]Error creating configuration:[/bold red] {e}")
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration and test Jira connectivity."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Loading configuration...", total=None)
        config = _load(ctx)
        progress.update(task, description="[green]✓[/green] Configuration loaded")

        progress.add_task("Validating paths...", total=None)
        errors = config.validate_paths()
        if errors:
            console.print("\n[bold red]Validation errors:[/bold red]")
            for error in errors:
                console.print(f"  • {error}")
            sys.exit(1)
        console.print("[green]✓[/green] All paths validated")

        progress.add_task("Testing Jira connectivity...", total=None)
        if asyncio.run(_test_jira_connectivity(config)):
            console.print("[green]✓[/green] Connected to Jira")
        else:
            console.print("[red]✗[/red] Jira connection failed")

    _display_config_summary(config)


@cli.command()
@click.pass_context
@click.option("--force", is_flag=True, help="Export issues that already have a record again")
def export(ctx: click.Context, force: bool) -> None:
    """Export Jira issues and sprints into the workspace."""
    config = _load(ctx)
    logger.configure(config.logging)
    log = logger.get_logger("cli")

    console.print("\n[bold blue]Export Configuration:[/bold blue]")
    console.print(f"  • Jira: {config.jira.url}")
    console.print(f"  • Query: {config.jira.jql}")
    console.print(f"  • Workspace: {config.workspace.path}")
    console.print(f"  • Force: {force}")

    try:
        result = asyncio.run(_run_export(config, force))
    except KeyboardInterrupt:
        console.print("\n[yellow]Export interrupted by user[/yellow]")
        log.warning("export_interrupted")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[bold red]Export failed:[/bold red] {e}")
        log.error("export_failed", error=str(e), exc_info=e)
        sys.exit(1)

    _display_result("Export", result)


@cli.command(name="import")
@click.pass_context
@click.option("--force", is_flag=True, help="Ignore the journal and import everything again")
@click.option(
    "--continue-on-critical",
    is_flag=True,
    help="Keep going after critical errors",
)
def import_(ctx: click.Context, force: bool, continue_on_critical: bool) -> None:
    """Replay exported revisions into Azure DevOps."""
    config = _load(ctx)
    if continue_on_critical:
        config.migration.continue_on_critical = True

    logger.configure(config.logging)
    log = logger.get_logger("cli")

    console.print("\n[bold blue]Import Configuration:[/bold blue]")
    console.print(f"  • Target: {config.devops.url} / {config.devops.project}")
    console.print(f"  • Workspace: {config.workspace.path}")
    console.print(f"  • Force: {force}")

    if force and not click.confirm("\nThe journal will be cleared. Proceed?"):
        console.print("[yellow]Import cancelled[/yellow]")
        return

    try:
        result = asyncio.run(_run_import(config, force))
    except KeyboardInterrupt:
        console.print("\n[yellow]Import interrupted by user[/yellow]")
        log.warning("import_interrupted")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[bold red]Import failed:[/bold red] {e}")
        log.error("import_failed", error=str(e), exc_info=e)
        sys.exit(1)

    _display_result("Import", result)
    if result.get("status") == "aborted":
        sys.exit(2)


@cli.command()
@click.pass_context
@click.option(
    "--format",
    "-f",
    type=click.Choice(["summary", "detailed", "json"]),
    default="summary",
    help="Report format",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Save report to file",
)
def report(ctx: click.Context, format: str, output: Optional[Path]) -> None:
    """Generate a report from the journal."""
    config = _load(ctx)
    asyncio.run(_generate_report(config, format, output))


@cli.command()
@click.pass_context
@click.option("--all", "remove_all", is_flag=True, help="Also remove exported records")
def clean(ctx: click.Context, remove_all: bool) -> None:
    """Clean up migration state and log files."""
    config = _load(ctx)
    workspace = config.workspace

    console.print("[bold yellow]This will remove:[/bold yellow]")
    console.print(f"  • Journal: {workspace.journal_path}")
    if config.logging.file:
        console.print(f"  • Log files: {config.logging.file}*")
    if remove_all:
        console.print(f"  • Workspace: {workspace.path}")

    if not click.confirm("\nProceed with cleanup?"):
        console.print("[yellow]Cleanup cancelled[/yellow]")
        return

    if workspace.journal_path.exists():
        workspace.journal_path.unlink()
        console.print(f"[green]✓[/green] Removed journal: {workspace.journal_path}")

    if config.logging.file:
        log_pattern = f"{config.logging.file.stem}*{config.logging.file.suffix}"
        for log_file in config.logging.file.parent.glob(log_pattern):
            log_file.unlink()
            console.print(f"[green]✓[/green] Removed log file: {log_file}")

    if remove_all and workspace.path.exists():
        shutil.rmtree(workspace.path)
        console.print(f"[green]✓[/green] Removed workspace: {workspace.path}")

    console.print("\n[bold green]Cleanup completed[/bold green]")


async def _test_jira_connectivity(config: Config) -> bool:
    from workitem_migrator.api.jira_client import JiraClient

    async with JiraClient(config.jira) as client:
        return await client.test_connection()


async def _run_export(config: Config, force: bool) -> Dict[str, Any]:
    from workitem_migrator.core.orchestrator import MigrationOrchestrator

    return await MigrationOrchestrator(config).export(force=force)


async def _run_import(config: Config, force: bool) -> Dict[str, Any]:
    from workitem_migrator.core.orchestrator import MigrationOrchestrator

    return await MigrationOrchestrator(config).replay(force=force, confirm=click.confirm)


async def _generate_report(
    config: Config,
    format: str,
    output: Optional[Path],
) -> None:
    """Generate migration report.

    Args:
        config: Configuration instance
        format: Report format
        output: Optional output file path
    """
    from workitem_migrator.core.journal import Journal

    journal_path = config.workspace.journal_path
    if not journal_path.exists():
        console.print("[yellow]No journal found[/yellow]")
        return

    journal = Journal(journal_path)
    await journal.initialize()
    stats = await journal.get_statistics()
    run = stats["latest_run"]

    if format == "json":
        report_data = dict(stats)
        report_data["items"] = await journal.get_migrated_items()
        text = json.dumps(report_data, indent=2, default=str)
    else:
        report_lines = [
            "=" * 60,
            "MIGRATION REPORT",
            "=" * 60,
            f"Runs: {stats['runs']}",
            f"Migrated items: {stats['migrated_items']}",
            f"Processed revisions: {stats['processed_revisions']}",
            f"Migrated attachments: {stats['migrated_attachments']}",
            "",
        ]
        if run:
            report_lines.extend([
                "LATEST RUN",
                "-" * 30,
                f"Command: {run['command']}",
                f"Started: {run['started_at']}",
                f"Completed: {run['completed_at'] or 'In Progress'}",
                f"Forced: {run['forced']}",
                f"Revisions: {run['total_revisions']}",
                f"  - Processed: {run['processed_revisions']}",
                f"  - Skipped: {run['skipped_revisions']}",
                f"  - Failed: {run['failed_revisions']}",
                f"Warnings: {run['warnings']}",
                f"Aborted: {run['aborted']}",
                "",
            ])

        if format == "detailed":
            report_lines.extend(["ITEMS", "-" * 30])
            for item in await journal.get_migrated_items():
                report_lines.append(
                    f"  {item['origin_id']} -> {item['wi_id']} ({item['revisions']} revisions)"
                )
            report_lines.append("")

        text = "\n".join(report_lines)

    if output:
        output.write_text(text)
        console.print(f"[green]Report saved to {output}[/green]")
    else:
        console.print(text)


def _display_result(title: str, result: Dict[str, Any]) -> None:
    status = result.get("status", "completed")
    color = "green" if status == "completed" else "red"
    console.print(f"\n[bold {color}]{title} {status}[/bold {color}]")
    for key in ("items", "revisions", "processed", "skipped", "failed", "warnings", "errors"):
        if key in result:
            console.print(f"  • {key.capitalize()}: {result[key]}")
    if "elapsed_seconds" in result:
        console.print(f"  • Duration: {result['elapsed_seconds']:.1f} seconds")


def _display_config_summary(config: Config) -> None:
    """Display configuration summary.

    Args:
        config: Configuration instance
    """
    table = Table(title="Configuration Summary", show_header=True)
    table.add_column("Category", style="cyan")
    table.add_column("Setting", style="yellow")
    table.add_column("Value", style="green")

    table.add_row("Jira", "URL", config.jira.url)
    table.add_row("Jira", "Query", config.jira.jql)
    table.add_row("Jira", "Board", str(config.jira.board_id or "-"))
    table.add_row("Jira", "Rate Limit", f"{config.jira.rate_limit} req/min")

    table.add_row("Azure DevOps", "URL", config.devops.url)
    table.add_row("Azure DevOps", "Project", config.devops.project)
    table.add_row("Azure DevOps", "Process", config.devops.process_template)
    table.add_row("Azure DevOps", "Base Area", config.devops.base_area_path or "-")
    table.add_row("Azure DevOps", "Base Iteration", config.devops.base_iteration_path or "-")

    table.add_row("Workspace", "Path", str(config.workspace.path))
    table.add_row("Workspace", "Journal", str(config.workspace.journal_path))

    table.add_row("Mapping", "Types", str(len(config.mapping.type_map)))
    table.add_row("Mapping", "Fields", str(len(config.mapping.field_map)))
    table.add_row("Mapping", "Links", str(len(config.mapping.link_map)))

    table.add_row("Logging", "Level", config.logging.level.value)
    if config.logging.file:
        table.add_row("Logging", "File", str(config.logging.file))

    console.print("\n")
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except Exception as e:
        console.print(f"[bold red]Unexpected error:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
