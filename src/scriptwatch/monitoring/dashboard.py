"""TUI dashboard for monitoring the script watcher."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import Footer, Header, Static

from .metrics import MetricsCollector, WatchMetrics


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def format_time(dt: datetime | None) -> str:
    """Format datetime as HH:MM:SS."""
    if dt is None:
        return "--:--:--"
    return dt.strftime("%H:%M:%S")


class FeedPanel(Static):
    """Shows poller state and feed position."""

    def update_metrics(self, metrics: WatchMetrics) -> None:
        """Update the panel with new metrics."""
        status = "[green]RUNNING[/green]" if metrics.is_running else "[yellow]STOPPED[/yellow]"

        if metrics.consecutive_poll_errors:
            health = f"[red]✗[/red] {metrics.consecutive_poll_errors} failed polls in a row"
        else:
            health = "[green]✓[/green] OK"

        content = f"""[bold]CHANGE FEED[/bold]  {status}

[bold]State:[/bold]     {metrics.state or '-'}
[bold]Cursor:[/bold]    {metrics.cursor or '-'}
[bold]Last poll:[/bold] {format_time(metrics.last_poll_at)}
[bold]Health:[/bold]    {health}
[bold]Elapsed:[/bold]   {format_duration(metrics.elapsed_seconds)}"""

        self.update(content)


class JobsPanel(Static):
    """Shows job throughput."""

    def update_metrics(self, metrics: WatchMetrics) -> None:
        """Update the panel with new metrics."""
        content = f"""[bold]JOBS[/bold]

[bold]Batches:[/bold]   {metrics.batches_polled:,} ({metrics.rows_seen:,} changes)
[bold]Queued:[/bold]    {metrics.jobs_submitted:,}
[green]✓ Done:[/green]    {metrics.jobs_completed:,}
[red]✗ Failed:[/red]  {metrics.jobs_failed:,}
[bold]Rate:[/bold]      {metrics.jobs_per_minute:.1f}/min"""

        self.update(content)


class ErrorsPanel(Static):
    """Shows recent errors."""

    def update_metrics(self, metrics: WatchMetrics) -> None:
        """Update the panel with new metrics."""
        lines = [f"[bold]RECENT ERRORS[/bold] ({metrics.poll_errors} feed errors total)", ""]

        if not metrics.recent_errors:
            lines.append("[dim]No errors[/dim]")
        else:
            for error in list(metrics.recent_errors)[-5:]:
                time_str = format_time(error.timestamp)
                msg = error.message[:50] + "..." if len(error.message) > 50 else error.message
                lines.append(f"[dim]{time_str}[/dim] [cyan]{error.package:15}[/cyan] [red]{error.error_type}[/red]: {msg}")

        self.update("\n".join(lines))


class DetectionsPanel(Static):
    """Shows reported script introductions."""

    def update_metrics(self, metrics: WatchMetrics) -> None:
        """Update the panel with new metrics."""
        lines = [f"[bold]DETECTIONS[/bold] ({metrics.detections} total)", ""]

        if not metrics.recent_detections:
            lines.append("[dim]No detections yet[/dim]")
        else:
            for entry in list(metrics.recent_detections)[-10:]:
                time_str = format_time(entry.timestamp)
                previous = entry.previous_version or "first publish"
                command = entry.command[:40] + "..." if len(entry.command) > 40 else entry.command
                lines.append(
                    f"[dim]{time_str}[/dim]  [yellow]⚠[/yellow] "
                    f"[cyan]{entry.package}@{entry.version}[/cyan] "
                    f"[magenta]{entry.script_kind}[/magenta] (prev: {previous}) {command}"
                )

        self.update("\n".join(lines))


class WatchDashboard(App):
    """TUI dashboard for monitoring the script watcher."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #top-row {
        height: 9;
        layout: horizontal;
    }

    #feed-panel {
        width: 1fr;
        border: solid green;
        padding: 0 1;
    }

    #jobs-panel {
        width: 1fr;
        border: solid blue;
        padding: 0 1;
    }

    #errors-panel {
        height: 8;
        border: solid red;
        padding: 0 1;
    }

    #detections-panel {
        height: 1fr;
        border: solid yellow;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(
        self,
        metrics_file: Path | None = None,
        refresh_interval: float = 2.0,
    ):
        super().__init__()
        self.collector = MetricsCollector(metrics_file or Path("data/.watch-metrics.json"))
        self.refresh_interval = refresh_interval

    def compose(self) -> ComposeResult:
        """Create dashboard layout."""
        yield Header()

        with Container(id="top-row"):
            yield FeedPanel(id="feed-panel")
            yield JobsPanel(id="jobs-panel")

        yield ErrorsPanel(id="errors-panel")
        yield DetectionsPanel(id="detections-panel")

        yield Footer()

    def on_mount(self) -> None:
        """Start auto-refresh timer."""
        self.refresh_metrics()
        self.set_interval(self.refresh_interval, self.refresh_metrics)

    def refresh_metrics(self) -> None:
        """Load metrics from file and update all panels."""
        metrics = self.collector.load()

        self.query_one("#feed-panel", FeedPanel).update_metrics(metrics)
        self.query_one("#jobs-panel", JobsPanel).update_metrics(metrics)
        self.query_one("#errors-panel", ErrorsPanel).update_metrics(metrics)
        self.query_one("#detections-panel", DetectionsPanel).update_metrics(metrics)

    def action_refresh(self) -> None:
        """Manual refresh."""
        self.refresh_metrics()


def run_dashboard(metrics_file: Path | None = None, refresh_interval: float = 2.0) -> None:
    """Run the dashboard app."""
    app = WatchDashboard(metrics_file=metrics_file, refresh_interval=refresh_interval)
    app.run()
