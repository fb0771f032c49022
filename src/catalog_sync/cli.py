"""Catalog sync CLI - run and inspect provider catalog syncs."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Any

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import get_settings
from .data.database import open_stores
from .data.models import EventType, SyncEvent, SyncMode, SyncRequest
from .provider import JustTCGClient
from .sync import SyncOrchestrator

console = Console()

_EVENT_STYLES: dict[EventType, str] = {
    EventType.START: "bold cyan",
    EventType.START_GAME: "bold cyan",
    EventType.PHASE_START: "cyan",
    EventType.UPSERT_PROGRESS: "dim",
    EventType.GUARDRAIL_RESULT: "magenta",
    EventType.GAME_DONE: "green",
    EventType.WARNING: "yellow",
    EventType.ERROR: "bold red",
    EventType.COMPLETE: "bold green",
}


def run_async(coro: Any) -> Any:
    """Run async coroutine in sync context."""
    return asyncio.run(coro)


def output_json(data: Any) -> None:
    """Output data as JSON."""
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    rprint(json.dumps(data, indent=2, default=str))


def describe_event(event: SyncEvent) -> str:
    """One-line human summary of an event."""
    where = "/".join(part for part in (event.game, event.phase, event.stream) if part)
    if event.type is EventType.START:
        return f"Sync {', '.join(event.games or [])} from {event.provider} ({event.mode})"
    if event.type is EventType.UPSERT_PROGRESS:
        total = f"/{event.total}" if event.total is not None else ""
        return f"{where}: {event.count}{total} written"
    if event.type is EventType.GUARDRAIL_RESULT:
        return f"{where}: {event.rolled_back} rolled back, {event.not_found} not found"
    if event.type in (EventType.GAME_DONE, EventType.COMPLETE):
        failed = f", {len(event.failures)} failed streams" if event.failures else ""
        scope = f"{event.game}: " if event.game else ""
        return f"{scope}{event.sets} sets, {event.cards} cards, {event.variants} variants{failed}"
    detail = event.error or event.message or ""
    if event.record_id:
        detail = f"{event.record_id}: {detail}"
    return f"{where}: {detail}" if where else detail


class ConsoleEventSink:
    """Prints events as they arrive."""

    def __init__(self, as_json: bool = False):
        self._as_json = as_json

    async def send(self, event: SyncEvent) -> None:
        if self._as_json:
            print(event.model_dump_json(exclude_none=True))
            return
        style = _EVENT_STYLES.get(event.type, "")
        console.print(f"[{style}]{event.type.value:<16}[/] {escape(describe_event(event))}")

    async def close(self) -> None:
        pass


# =============================================================================
# Main CLI app
# =============================================================================

cli = typer.Typer(
    name="catalog-sync",
    help="Catalog sync - incremental provider catalog synchronization.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

checkpoints_app = typer.Typer(help="Checkpoint inspection commands")
cli.add_typer(checkpoints_app, name="checkpoints")


@cli.callback()
def main(
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Debug logging")] = False,
) -> None:
    """Configure logging for every command."""
    settings = get_settings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, format="%(levelname)s:%(name)s:%(message)s")


# =============================================================================
# Server command
# =============================================================================


@cli.command()
def serve(
    host: Annotated[str | None, typer.Option(help="Host to bind to")] = None,
    port: Annotated[int | None, typer.Option(help="Port to listen on")] = None,
) -> None:
    """Start the HTTP API server."""
    from .api.server import main as server_main

    argv: list[str] = []
    if host:
        argv += ["--host", host]
    if port:
        argv += ["--port", str(port)]
    server_main(argv)


# =============================================================================
# Sync commands
# =============================================================================


@cli.command("run")
def run_cmd(
    games: Annotated[list[str], typer.Argument(help="Game slugs to sync, in order")],
    mode: Annotated[SyncMode, typer.Option("--mode", help="live or shadow catalog")] = SyncMode.LIVE,
    force: Annotated[
        bool, typer.Option("--force", help="Clear checkpoints of these games first")
    ] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Print events as JSON lines")] = False,
) -> None:
    """Run a sync, printing progress events. Exits 1 if the run ends in ERROR."""
    settings = get_settings()
    request = SyncRequest(provider=settings.provider_name, games=games, mode=mode, force=force)

    async def _run() -> SyncEvent:
        async with open_stores(mode, settings) as stores, JustTCGClient(settings) as client:
            orchestrator = SyncOrchestrator(
                client,
                stores.checkpoints,
                stores.catalog,
                ConsoleEventSink(as_json=as_json),
                jobs=stores.jobs,
                settings=settings,
                mode=mode,
            )
            return await orchestrator.run(request)

    terminal = run_async(_run())
    if terminal.type is EventType.ERROR:
        raise typer.Exit(code=1)


@checkpoints_app.command("list")
def list_checkpoints_cmd(
    game: Annotated[str | None, typer.Option("--game", help="Only this game")] = None,
    mode: Annotated[SyncMode, typer.Option("--mode")] = SyncMode.LIVE,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """List stored stream checkpoints."""
    settings = get_settings()

    async def _run() -> None:
        async with open_stores(mode, settings) as stores:
            rows = await stores.checkpoints.list_checkpoints(settings.provider_name, game)

        if as_json:
            output_json(
                [
                    {
                        "game": row.game,
                        "stream_key": row.stream_key,
                        "cursor": row.cursor.next,
                        "complete": row.cursor.complete,
                        "updated_at": row.updated_at,
                    }
                    for row in rows
                ]
            )
            return

        table = Table(title=f"{len(rows)} checkpoints ({mode.value})")
        table.add_column("Game", style="cyan")
        table.add_column("Stream", style="white")
        table.add_column("Cursor", style="yellow")
        table.add_column("Complete", justify="center")
        table.add_column("Updated", style="dim")
        for row in rows:
            table.add_row(
                row.game,
                row.stream_key,
                "" if row.cursor.next is None else str(row.cursor.next),
                "[green]yes[/]" if row.cursor.complete else "no",
                str(row.updated_at or ""),
            )
        console.print(table)

    run_async(_run())


@checkpoints_app.command("reset")
def reset_checkpoints_cmd(
    game: Annotated[str | None, typer.Option("--game", help="Only this game")] = None,
    mode: Annotated[SyncMode, typer.Option("--mode")] = SyncMode.LIVE,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Clear checkpoints so the next run re-fetches every stream."""
    settings = get_settings()
    scope = game or "all games"
    if not yes and not typer.confirm(f"Clear {mode.value} checkpoints for {scope}?"):
        raise typer.Abort()

    async def _run() -> int:
        async with open_stores(mode, settings) as stores:
            return await stores.checkpoints.clear(settings.provider_name, game)

    cleared = run_async(_run())
    console.print(f"[green]Cleared {cleared} checkpoints[/] for {scope}")


@cli.command("jobs")
def jobs_cmd(
    run_id: Annotated[str | None, typer.Option("--run-id", help="Only this run")] = None,
    limit: Annotated[int, typer.Option(help="Maximum jobs to show")] = 20,
    mode: Annotated[SyncMode, typer.Option("--mode")] = SyncMode.LIVE,
) -> None:
    """Show recent sync jobs."""
    settings = get_settings()

    async def _run() -> None:
        async with open_stores(mode, settings) as stores:
            jobs = await stores.jobs.list_jobs(run_id=run_id, limit=limit)

        table = Table(title=f"Recent sync jobs ({mode.value})")
        table.add_column("Run", style="dim")
        table.add_column("Game", style="cyan")
        table.add_column("Phase")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Error", style="red")
        for job in jobs:
            status_style = {"completed": "green", "failed": "red", "cancelled": "yellow"}.get(
                job.status.value, "white"
            )
            total = f"/{job.progress_total}" if job.progress_total is not None else ""
            table.add_row(
                job.run_id[:8],
                job.game,
                job.phase,
                f"[{status_style}]{job.status.value}[/]",
                f"{job.progress_current}{total}",
                job.error_message or "",
            )
        console.print(table)

    run_async(_run())


@cli.command("stats")
def stats_cmd(
    mode: Annotated[SyncMode, typer.Option("--mode")] = SyncMode.LIVE,
    as_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Show per-game catalog counts."""
    settings = get_settings()

    async def _run() -> None:
        async with open_stores(mode, settings) as stores:
            stats = await stores.catalog.get_stats(settings.provider_name)

        if as_json:
            output_json([vars(row) for row in stats])
            return

        table = Table(title=f"Catalog ({mode.value})")
        table.add_column("Game", style="cyan")
        table.add_column("Active", justify="center")
        table.add_column("Sets", justify="right")
        table.add_column("Cards", justify="right")
        table.add_column("Variants", justify="right")
        table.add_column("Missing upstream", justify="right", style="yellow")
        for row in stats:
            missing = row.sets_not_found + row.cards_not_found
            table.add_row(
                row.game,
                "[green]yes[/]" if row.active else "[red]no[/]",
                str(row.sets),
                str(row.cards),
                str(row.variants),
                str(missing) if missing else "",
            )
        console.print(table)

    run_async(_run())


if __name__ == "__main__":
    cli()
