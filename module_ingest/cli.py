"""CLI interface for module-ingest using Typer.

This module provides the operator entry point for module-ingest, with
commands for seeding discovered versions, inspecting the fetch queue and
per-version state, showing statistics, and running the scheduler.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .core.errors import ModuleIngestError, NotFoundError
from .core.scheduler import Scheduler, SchedulerConfig
from .core.state import UNATTEMPTED, ZERO_TIME, VersionStateDB
from .downloaders.proxy import DEFAULT_PROXY_URL
from .utils.extract import DEFAULT_MAX_FILE_SIZE
from .utils.logging import setup_logging
from .utils.paths import WorkdirManager
from .utils.versions_file import parse_versions_file

# Load .env file if present
load_dotenv()

app = typer.Typer(
    name="module-ingest",
    help="Track, fetch and retry module versions for a module-indexing pipeline.",
    add_completion=False,
)

console = Console()

WORKDIR_OPTION = typer.Option(
    Path("work"),
    "--workdir",
    "-w",
    envvar="MODULE_INGEST_WORKDIR",
    help="Working directory holding state.db and logs",
)


def _open_db(workdir: Path, create: bool = False) -> VersionStateDB:
    """Open the state database in a working directory.

    Args:
        workdir: Working directory.
        create: If False, exit with an error when no database exists yet.

    Raises:
        typer.Exit: If the database does not exist and create is False.
    """
    db_path = WorkdirManager(workdir).state_db_path
    if not create and not db_path.exists():
        console.print(f"[red]Error:[/red] No state database found at {db_path}")
        console.print("Seed some versions first with 'module-ingest seed'.")
        raise typer.Exit(1)

    db = VersionStateDB(db_path)
    db.init_db()
    return db


def _format_time(value: Optional[datetime]) -> str:
    if value is None or value == ZERO_TIME:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _format_status(status: Optional[int]) -> str:
    """Format an attempt status with color for rich output."""
    if status is None:
        return UNATTEMPTED
    if 200 <= status < 300:
        color = "green"
    elif status < 500:
        color = "yellow"
    else:
        color = "red"
    return f"[{color}]{status}[/{color}]"


def _truncate(text: Optional[str], max_length: int = 40) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


@app.command()
def seed(
    versions: Path = typer.Option(
        ...,
        "--versions",
        "-f",
        help="File with one '<module path> <version> [timestamp]' per line",
    ),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Insert or refresh discovered versions from a versions file.
    """
    try:
        discovered = parse_versions_file(versions)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {versions}: {escape(str(e))}")
        raise typer.Exit(1)

    if not discovered:
        console.print("[yellow]No versions found in file.[/yellow]")
        raise typer.Exit(0)

    db = _open_db(workdir, create=True)
    try:
        count = db.insert_discovered_versions(discovered)
    except ModuleIngestError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    console.print(f"[green]Seeded {count} version(s).[/green]")


@app.command()
def queue(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of versions to show"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Show the next versions eligible for fetching, in priority order.
    """
    db = _open_db(workdir)
    versions = db.get_next_versions_to_fetch(limit)

    if not versions:
        console.print("[yellow]No versions are eligible for fetching.[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Fetch Queue")
    table.add_column("Module", style="cyan", no_wrap=False, max_width=50)
    table.add_column("Version", style="magenta")
    table.add_column("Indexed")
    table.add_column("Tries", justify="right")
    table.add_column("Last status")

    for v in versions:
        table.add_row(
            v.module_path,
            v.version,
            _format_time(v.index_timestamp),
            str(v.try_count),
            _format_status(v.status),
        )

    console.print(table)


@app.command()
def show(
    module_path: str = typer.Argument(..., help="Module path"),
    version: str = typer.Argument(..., help="Module version"),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Show the processing state of one module version.
    """
    db = _open_db(workdir)
    try:
        state = db.get_version_state(module_path, version)
    except NotFoundError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    console.print(f"\n[bold cyan]{state.module_path}@{state.version}[/bold cyan]")
    console.print(f"  Indexed:          {_format_time(state.index_timestamp)}")
    console.print(f"  Created:          {_format_time(state.created_at)}")
    console.print(f"  Tries:            {state.try_count}")
    console.print(f"  Last status:      {_format_status(state.status)}")
    console.print(f"  Last processed:   {_format_time(state.last_processed_at)}")
    console.print(f"  Next eligible:    {_format_time(state.next_processed_after)}")
    if state.error:
        console.print(f"  Error:            [red]{escape(state.error)}[/red]")
    console.print()


@app.command()
def stats(
    failures: int = typer.Option(
        0,
        "--failures",
        min=0,
        help="Also list this many most recent failures",
    ),
    workdir: Path = WORKDIR_OPTION,
) -> None:
    """
    Show version counts per last status and the latest index timestamp.
    """
    db = _open_db(workdir)
    version_stats = db.get_version_stats()

    table = Table(title="Version Statistics")
    table.add_column("Status")
    table.add_column("Versions", justify="right")

    def sort_key(key: object) -> tuple:
        return (0, 0) if key == UNATTEMPTED else (1, key)

    for key in sorted(version_stats.version_counts, key=sort_key):
        status = None if key == UNATTEMPTED else key
        table.add_row(_format_status(status), str(version_stats.version_counts[key]))

    console.print(table)
    console.print(
        f"\n[bold]Summary:[/bold] Total: {version_stats.total}, "
        f"Latest index timestamp: {_format_time(version_stats.latest_timestamp)}"
    )

    if failures:
        failed = db.get_failed_versions(failures)
        if not failed:
            console.print("\n[green]No failed versions.[/green]")
            return

        failure_table = Table(title="Recent Failures")
        failure_table.add_column("Module", style="cyan", max_width=50)
        failure_table.add_column("Version", style="magenta")
        failure_table.add_column("Status")
        failure_table.add_column("Tries", justify="right")
        failure_table.add_column("Next eligible")
        failure_table.add_column("Error", style="red", max_width=40)
        for v in failed:
            failure_table.add_row(
                v.module_path,
                v.version,
                _format_status(v.status),
                str(v.try_count),
                _format_time(v.next_processed_after),
                escape(_truncate(v.error)),
            )
        console.print(failure_table)


@app.command()
def run(
    workdir: Path = WORKDIR_OPTION,
    proxy_url: str = typer.Option(
        DEFAULT_PROXY_URL,
        "--proxy-url",
        envvar="MODULE_INGEST_PROXY_URL",
        help="Module proxy base URL",
    ),
    batch_size: int = typer.Option(10, "--batch-size", "-b", min=1, help="Versions per pass"),
    concurrency: int = typer.Option(3, "--concurrency", "-c", min=1, help="Concurrent workers"),
    max_file_size: int = typer.Option(
        DEFAULT_MAX_FILE_SIZE,
        "--max-file-size",
        envvar="MODULE_INGEST_MAX_FILE_SIZE",
        min=1,
        help="Largest uncompressed zip entry in bytes",
    ),
    keep_archives: bool = typer.Option(
        False,
        "--keep-archives",
        help="Keep fetched zips under workdir/archives",
    ),
    once: bool = typer.Option(False, "--once", help="Run a single pass"),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would be fetched without fetching or recording",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """
    Fetch eligible versions and record the outcome of each attempt.

    Example:
        module-ingest run --workdir ./work --batch-size 20 --once
    """
    db = _open_db(workdir)
    logger = setup_logging(workdir, verbose=verbose)

    config = SchedulerConfig(
        workdir=workdir,
        proxy_url=proxy_url,
        batch_size=batch_size,
        concurrency=concurrency,
        max_file_size=max_file_size,
        keep_archives=keep_archives,
        dry_run=dry_run,
    )

    console.print("\n[bold cyan]Scheduler Configuration[/bold cyan]")
    console.print(f"  Working dir:     {workdir}")
    console.print(f"  Proxy:           {proxy_url}")
    console.print(f"  Batch size:      {batch_size}")
    console.print(f"  Concurrency:     {concurrency}")
    console.print(f"  Max file size:   {max_file_size:,} bytes")
    console.print(f"  Dry run:         {dry_run}")
    console.print()

    scheduler = Scheduler(config, state_db=db, logger=logger)
    try:
        result = scheduler.run(max_passes=1 if once else None)
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler interrupted by user.[/yellow]")
        raise typer.Exit(130)
    except ModuleIngestError as e:
        console.print(f"[red]Scheduler error:[/red] {escape(str(e))}")
        logger.exception("Scheduler failed with exception")
        raise typer.Exit(1)
    finally:
        scheduler.close()

    console.print("\n[bold cyan]Scheduler Summary[/bold cyan]")
    console.print(f"  Passes:        {result.passes}")
    console.print(f"  Selected:      {result.selected}")
    console.print(f"  Succeeded:     [green]{result.succeeded}[/green]")
    console.print(f"  Failed:        [red]{result.failed}[/red]")
    console.print(f"  Fetched:       {result.bytes_fetched:,} bytes")
    console.print(f"  Duration:      {result.duration_seconds():.1f}s")
    if result.failed:
        console.print("[yellow]Failed versions will be retried after backoff. "
                      "Use 'stats --failures 20' to see details.[/yellow]")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
