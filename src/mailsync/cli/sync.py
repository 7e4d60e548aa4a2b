"""CLI commands for running and inspecting mailbox synchronization."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from mailsync.configuration.settings import Settings, load_settings
from mailsync.errors import ConfigurationError
from mailsync.orchestrator.engine import SyncEngine
from mailsync.orchestrator.report import ConnectionStatus, SyncReport
from mailsync.orchestrator.scheduler import SyncScheduler
from mailsync.storage.connections import ConnectionSource
from mailsync.storage.cursor import CursorTracker
from mailsync.storage.database import open_database
from mailsync.storage.metadata import MetadataPersister

console = Console()
error_console = Console(stderr=True)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_STATUS_STYLES = {
    ConnectionStatus.SUCCEEDED: "green",
    ConnectionStatus.FAILED: "red",
    ConnectionStatus.SKIPPED: "yellow",
    ConnectionStatus.CANCELLED: "dim",
}


def _load(config: Optional[Path]) -> Settings:
    try:
        settings = load_settings(config)
    except ConfigurationError as exc:
        error_console.print(f"[red]Configuration error:[/red] {exc.message}")
        raise typer.Exit(1)
    logging.basicConfig(level=settings.logging_level, format=LOG_FORMAT, force=True)
    return settings


def _build_engine(settings: Settings) -> SyncEngine:
    try:
        return SyncEngine.from_settings(settings)
    except ConfigurationError as exc:
        error_console.print(f"[red]Startup failed:[/red] {exc.message}")
        raise typer.Exit(1)


def _render_report(report: SyncReport) -> None:
    table = Table(title="Sync pass")
    table.add_column("Connection", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Fetched", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Cursor", justify="right")
    table.add_column("Error", overflow="fold")

    for entry in report.connections:
        style = _STATUS_STYLES[entry.status]
        cursor = (
            f"{entry.mailbox_epoch}:{entry.cursor_sequence}"
            if entry.mailbox_epoch is not None
            else "-"
        )
        table.add_row(
            entry.connection_id,
            entry.kind.value if entry.kind else "-",
            f"[{style}]{entry.status.value}[/{style}]",
            str(entry.fetched),
            str(entry.stored),
            str(entry.skipped),
            str(entry.failed),
            cursor,
            entry.error or "",
        )

    console.print(table)
    totals = report.totals()
    console.print(
        f"Fetched {totals['fetched']}, stored {totals['stored']}, "
        f"skipped {totals['skipped']}, failed {totals['failed']} "
        f"in {report.duration_seconds:.1f}s"
    )


def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML settings file"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Run one sync pass over every enabled connection."""
    settings = _load(config)
    engine = _build_engine(settings)
    try:
        report = asyncio.run(engine.run_sync_pass())
    finally:
        engine.close()

    if json_output:
        console.print_json(report.model_dump_json())
    else:
        _render_report(report)
    if report.has_failures:
        raise typer.Exit(1)


def serve(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML settings file"),
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", min=1, help="Seconds between passes (overrides settings)"
    ),
) -> None:
    """Run sync passes on a fixed interval until interrupted."""
    settings = _load(config)
    engine = _build_engine(settings)
    seconds = interval or settings.schedule_interval_seconds
    console.print(f"[bold blue]Synchronizing every {seconds}s[/bold blue] (Ctrl+C to stop)")
    try:
        asyncio.run(_serve(engine, seconds))
    finally:
        engine.close()


async def _serve(engine: SyncEngine, interval_seconds: int) -> None:
    scheduler = SyncScheduler(engine, interval_seconds=interval_seconds)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass
    scheduler.start()
    await scheduler.wait_until_stopped()


def status(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML settings file"),
) -> None:
    """Show enabled connections with their cursors and stored message counts."""
    settings = _load(config)
    try:
        database = open_database(settings.database_path)
    except ConfigurationError as exc:
        error_console.print(f"[red]Startup failed:[/red] {exc.message}")
        raise typer.Exit(1)

    try:
        connections = ConnectionSource(
            database, default_mailbox=settings.mailbox
        ).list_enabled_connections()
        tracker = CursorTracker(database)
        persister = MetadataPersister(database)

        table = Table(title="Connections")
        table.add_column("Connection", style="cyan")
        table.add_column("Host")
        table.add_column("Mailbox")
        table.add_column("Epoch", justify="right")
        table.add_column("Last sequence", justify="right")
        table.add_column("Messages", justify="right")
        table.add_column("Updated")

        for connection in connections:
            cursor = tracker.get_cursor(connection.id, connection.mailbox)
            table.add_row(
                connection.id,
                f"{connection.host}:{connection.port}",
                connection.mailbox,
                str(cursor.mailbox_epoch) if cursor else "-",
                str(cursor.last_sequence) if cursor else "-",
                str(persister.count(connection.id)),
                cursor.updated_at.strftime("%Y-%m-%d %H:%M:%S") if cursor else "never",
            )
    finally:
        database.close()

    if not connections:
        console.print("[yellow]No enabled connections[/yellow]")
        return
    console.print(table)


__all__ = ["run", "serve", "status"]
