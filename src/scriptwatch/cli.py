"""CLI entry point for scriptwatch."""

import asyncio
import json
import logging
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from scriptwatch.adapters.base import NotFoundError, RegistryError
from scriptwatch.adapters.npm import NpmRegistryClient
from scriptwatch.analyzers.lifecycle import LifecycleDetector, pick_version_pair
from scriptwatch.config import WatchSettings
from scriptwatch.models.schemas import Cursor

app = typer.Typer(help="Watch the npm registry for newly added install scripts.")

console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Send log records through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # Per-request lines from the HTTP stack drown out everything else
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def parse_cursor(value: str | None) -> Cursor | None:
    """Interpret a command-line cursor; numeric cursors stay numeric."""
    if value is None:
        return None
    value = value.strip()
    return int(value) if value.isdigit() else value


def load_settings(**overrides) -> WatchSettings:
    """Load settings, exiting with status 2 on invalid configuration."""
    try:
        return WatchSettings.from_env(**overrides)
    except (ValidationError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(2)


def build_client(settings: WatchSettings) -> NpmRegistryClient:
    return NpmRegistryClient(
        replicate_db_url=settings.replicate_db_url,
        changes_url=settings.changes_url,
        registry_url=settings.registry_url,
        timeout=settings.request_timeout,
        full_metadata=settings.full_metadata,
    )


@app.command()
def watch(
    since: str | None = typer.Option(None, "--since", help="Start from this feed cursor instead of the current head"),
    max_runtime: float | None = typer.Option(None, "--max-runtime", help="Stop after this many seconds"),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", help="Number of workers"),
    rate_limit: int | None = typer.Option(None, "--rate-limit", help="Maximum job starts per second"),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds to wait after an empty batch"),
    full_metadata: bool | None = typer.Option(None, "--full-metadata/--abbreviated", help="Request full packuments"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d", help="Data directory for metrics"),
    events_file: Path | None = typer.Option(None, "--events-file", "-o", help="Append detections to this JSON Lines file"),
    log_level: str = typer.Option("INFO", "--log-level", "-l", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """Follow the npm change feed and flag new preinstall/postinstall scripts.

    Runs until interrupted (Ctrl-C) or until --max-runtime elapses.
    Settings not given on the command line are read from the environment.
    """
    settings = load_settings(
        max_runtime=max_runtime,
        concurrency=concurrency,
        rate_limit=rate_limit,
        poll_interval=poll_interval,
        full_metadata=full_metadata,
        data_dir=data_dir,
        events_file=events_file,
    )
    if log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        console.print(f"[red]Invalid log level: {log_level}[/red]")
        raise typer.Exit(2)
    setup_logging(log_level)

    asyncio.run(_watch(settings, parse_cursor(since)))


async def _watch(settings: WatchSettings, since: Cursor | None) -> None:
    """Async implementation of watch."""
    from scriptwatch.daemon import ContinuousWatcher, PollerStartupError
    from scriptwatch.monitoring import MetricsCollector
    from scriptwatch.notify import CompositeNotifier, JsonLinesNotifier, LogNotifier

    notifiers = [LogNotifier()]
    if settings.events_file:
        notifiers.append(JsonLinesNotifier(settings.events_file))

    watcher = ContinuousWatcher(
        settings,
        notifier=CompositeNotifier(notifiers),
        metrics=MetricsCollector(settings.metrics_file),
    )

    try:
        await watcher.run(since=since)
    except PollerStartupError as e:
        console.print(f"[red]Could not start watcher: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def check(
    package: str = typer.Argument(..., help="Package name to check"),
    full_metadata: bool | None = typer.Option(None, "--full-metadata/--abbreviated", help="Request full packuments"),
    output_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Check whether the latest version of a package added an install script."""
    settings = load_settings(full_metadata=full_metadata)
    asyncio.run(_check(package, settings, output_json))


async def _check(package: str, settings: WatchSettings, output_json: bool) -> None:
    """Async implementation of check."""
    client = build_client(settings)
    detector = LifecycleDetector(flag_first_publish=settings.flag_first_publish)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(f"Fetching {package}...", total=None)
        try:
            packument = await client.get_packument(package)
        except NotFoundError:
            console.print(f"[red]Package not found: {package}[/red]")
            raise typer.Exit(1)
        except RegistryError as e:
            console.print(f"[red]Error fetching package: {e}[/red]")
            raise typer.Exit(1)

    pair = pick_version_pair(packument)
    result = detector.detect(packument, pair)

    if output_json:
        console.print_json(json.dumps({"package": package, **result.model_dump(mode="json")}))
        return

    console.print()
    console.print(f"[bold cyan]{package}[/bold cyan]")

    info_table = Table(show_header=False, box=None)
    info_table.add_column("Key", style="bold")
    info_table.add_column("Value")

    info_table.add_row("Versions", str(len(packument.versions)))
    info_table.add_row("Latest", result.latest or "-")
    info_table.add_row("Previous", result.previous or "[dim]none[/dim]")

    if result.latest:
        manifest = packument.versions[result.latest]
        for name in ("preinstall", "install", "postinstall"):
            command = manifest.scripts.get(name)
            if isinstance(command, str) and command.strip():
                info_table.add_row(name, command)

    console.print(info_table)
    console.print()

    if result.introduced:
        console.print(
            f"[bold red]FLAG[/bold red] {result.script_kind.value} added in "
            f"{package}@{result.latest}: {result.script_value!r}"
        )
    else:
        console.print("[green]No newly introduced preinstall/postinstall script[/green]")


@app.command()
def head() -> None:
    """Print the current change feed cursor."""
    settings = load_settings()
    asyncio.run(_head(settings))


async def _head(settings: WatchSettings) -> None:
    """Async implementation of head."""
    try:
        cursor = await build_client(settings).get_current_cursor()
    except RegistryError as e:
        console.print(f"[red]Error fetching feed head: {e}[/red]")
        raise typer.Exit(1)
    console.print(str(cursor))


@app.command()
def changes(
    since: str | None = typer.Option(None, "--since", help="Cursor to read from (defaults to the current head)"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to read"),
) -> None:
    """Show one batch of the change feed."""
    settings = load_settings()
    asyncio.run(_changes(settings, parse_cursor(since), limit))


async def _changes(settings: WatchSettings, since: Cursor | None, limit: int) -> None:
    """Async implementation of changes."""
    client = build_client(settings)
    try:
        cursor = since if since is not None else await client.get_current_cursor()
        batch = await client.get_change_batch(cursor, limit)
    except RegistryError as e:
        console.print(f"[red]Error reading change feed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"{len(batch.rows)} changes since {cursor}")
    table.add_column("#", style="dim", width=6)
    table.add_column("Package", style="cyan")

    for i, row in enumerate(batch.rows, 1):
        name = f"[dim]{row.package_name}[/dim]" if row.is_design_document else row.package_name
        table.add_row(str(i), name)

    console.print(table)
    console.print(f"[dim]Next cursor: {batch.next_cursor}[/dim]")


@app.command()
def monitor(
    data_dir: Path = typer.Option(Path("data"), "--data-dir", "-d", help="Data directory"),
    interval: float = typer.Option(2.0, "--interval", "-i", help="Refresh interval in seconds"),
) -> None:
    """Launch the watcher monitoring dashboard.

    Opens an interactive TUI dashboard that displays real-time metrics
    from a running watcher. Use this to follow `scriptwatch watch`
    in another terminal.

    Controls:
      q - quit
      r - manual refresh
    """
    from scriptwatch.monitoring import run_dashboard

    metrics_file = data_dir / ".watch-metrics.json"
    run_dashboard(metrics_file=metrics_file, refresh_interval=interval)


@app.command()
def version() -> None:
    """Show version information."""
    from scriptwatch import __version__

    console.print(f"scriptwatch v{__version__}")


if __name__ == "__main__":
    app()
