"""
CLI for the agentrun workflow engine.

Commands:
    agentrun run SYMBOL EXCHANGE - Execute a workflow in-process
    agentrun stream RUN_ID - Follow a run's events until it finishes
    agentrun replay RUN_ID - Replay a finished run at speed
    agentrun runs - List recent runs
    agentrun serve - Serve the HTTP API
    agentrun config - Show current configuration
    agentrun version - Print version
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Annotated, AsyncIterator, Optional

import orjson
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentrun import __version__
from agentrun.cli.progress import RunProgress, describe_event
from agentrun.config import Settings, clear_settings_cache, get_settings
from agentrun.coordinator.registry import build_default_registry
from agentrun.coordinator.service import RunService
from agentrun.events import BaseEvent, event_to_payload
from agentrun.exceptions import AgentRunError
from agentrun.logging import setup_logging
from agentrun.persistence import Database, EventLog, RunStore
from agentrun.streaming.live import LiveStreamServer
from agentrun.streaming.replay import ReplayServer
from agentrun.types import AgentType, Run, RunStatus, StoredEvent
from agentrun.workflows.dry_run import build_dry_run_services

app = typer.Typer(
    name="agentrun",
    help="agentrun - durable, replayable multi-step agent workflows",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


class WorkflowChoice(str, Enum):
    CONSENSUS = "consensus"
    RESEARCH = "research"


STATUS_STYLES = {
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "magenta",
}


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _require_settings(verbose: bool = False) -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'agentrun config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE, console_output=verbose)
    return settings


def _fail(message: str) -> typer.Exit:
    error_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


async def _execute(
    settings: Settings,
    agent_type: AgentType,
    payload: dict[str, object],
    progress: RunProgress,
) -> tuple[Run, int]:
    async with Database(settings.DATABASE_PATH) as db:
        run_store = RunStore(db)
        event_log = EventLog(db)
        registry = build_default_registry(build_dry_run_services(), settings)
        service = RunService(run_store, event_log, registry)

        async def forward(event: BaseEvent) -> None:
            progress.handle_event(event_to_payload(event))

        run = await service.launch(agent_type, payload, emitter=forward)
        try:
            finished = await service.wait(run.id)
        finally:
            await service.shutdown()
        return finished, await event_log.count(run.id)


@app.command()
def run(
    symbol: Annotated[str, typer.Argument(help="Stock symbol (e.g., AAPL)")],
    exchange: Annotated[str, typer.Argument(help="Exchange acronym (e.g., NASDAQ)")],
    workflow: Annotated[
        WorkflowChoice,
        typer.Option("--workflow", "-w", help="Workflow to execute"),
    ] = WorkflowChoice.CONSENSUS,
    query: Annotated[
        Optional[str],
        typer.Option("--query", "-q", help="Research question (research workflow)"),
    ] = None,
    force_refresh: Annotated[
        bool,
        typer.Option("--force-refresh", help="Bypass cached market data"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show log output"),
    ] = False,
) -> None:
    """Execute a workflow in-process and show its progress.

    The run and every event are persisted to DATABASE_PATH, so it can be
    replayed later with 'agentrun replay'.
    """
    settings = _require_settings(verbose)
    if not settings.DRY_RUN:
        raise _fail(
            "No live step services are configured. Set DRY_RUN=true to use offline services."
        )

    agent_type = AgentType(workflow.value)
    payload: dict[str, object] = {
        "stockSymbol": symbol,
        "exchangeAcronym": exchange,
        "forceRefresh": force_refresh,
    }
    if agent_type is AgentType.RESEARCH and query:
        payload["query"] = query

    registry = build_default_registry(build_dry_run_services(), settings)
    progress = RunProgress(
        console,
        title=f"{symbol.upper().strip()} {agent_type.value}",
        step_names=registry.step_names(agent_type),
    )

    try:
        with progress:
            finished, event_count = asyncio.run(
                _execute(settings, agent_type, payload, progress)
            )
    except AgentRunError as e:
        raise _fail(e.message) from e

    style = STATUS_STYLES.get(finished.status, "white")
    body = (
        f"[bold]Run ID:[/bold] {finished.id}\n"
        f"[bold]Workflow:[/bold] {finished.agent_type.value}\n"
        f"[bold]Status:[/bold] [{style}]{finished.status.value}[/{style}]\n"
        f"[bold]Events:[/bold] {event_count}"
    )
    if finished.error:
        body += f"\n[bold]Error:[/bold] {finished.error}"
    report = (finished.output or {}).get("report") or {}
    if isinstance(report, dict) and report.get("title"):
        body += f"\n[bold]Report:[/bold] {report['title']}"

    console.print()
    console.print(Panel(body, title="[bold]Run finished[/bold]", border_style=style))

    if finished.status is not RunStatus.COMPLETED:
        raise typer.Exit(1)


def _print_event(stored: StoredEvent, raw: bool) -> None:
    if raw:
        console.print(
            orjson.dumps(stored.to_wire()).decode("utf-8"),
            markup=False,
            emoji=False,
            highlight=False,
            soft_wrap=True,
        )
    else:
        console.print(describe_event(stored.to_wire()), highlight=False)


async def _drain(events: AsyncIterator[StoredEvent], raw: bool) -> int:
    count = 0
    async for stored in events:
        _print_event(stored, raw)
        count += 1
    return count


async def _follow(settings: Settings, run_id: str, cursor: str | None, raw: bool) -> int:
    async with Database(settings.DATABASE_PATH) as db:
        live = LiveStreamServer(
            RunStore(db),
            EventLog(db),
            poll_interval=settings.poll_interval_seconds,
            batch_size=settings.STREAM_BATCH_SIZE,
        )
        return await _drain(await live.open(run_id, cursor), raw)


async def _replay(
    settings: Settings,
    run_id: str,
    speed: float | None,
    max_delay_ms: float | None,
    raw: bool,
) -> int:
    async with Database(settings.DATABASE_PATH) as db:
        replay_server = ReplayServer(
            RunStore(db),
            EventLog(db),
            default_max_delay_ms=settings.REPLAY_MAX_DELAY_MS,
            max_speed=settings.REPLAY_MAX_SPEED,
        )
        return await _drain(await replay_server.open(run_id, speed, max_delay_ms), raw)


@app.command()
def stream(
    run_id: Annotated[str, typer.Argument(help="Run to follow")],
    cursor: Annotated[
        Optional[str],
        typer.Option("--cursor", "-c", help="Only events after this sequence"),
    ] = None,
    raw: Annotated[
        bool,
        typer.Option("--raw", help="Print NDJSON lines instead of summaries"),
    ] = False,
) -> None:
    """Follow a run's events until it finishes."""
    settings = _require_settings()
    try:
        asyncio.run(_follow(settings, run_id, cursor, raw))
    except AgentRunError as e:
        raise _fail(e.message) from e


@app.command()
def replay(
    run_id: Annotated[str, typer.Argument(help="Run to replay")],
    speed: Annotated[
        Optional[float],
        typer.Option("--speed", "-s", help="Playback speed multiplier"),
    ] = None,
    max_delay_ms: Annotated[
        Optional[float],
        typer.Option("--max-delay-ms", help="Cap on any single gap (ms)"),
    ] = None,
    raw: Annotated[
        bool,
        typer.Option("--raw", help="Print NDJSON lines instead of summaries"),
    ] = False,
) -> None:
    """Replay a run's recorded events with their original pacing."""
    settings = _require_settings()
    try:
        count = asyncio.run(_replay(settings, run_id, speed, max_delay_ms, raw))
    except AgentRunError as e:
        raise _fail(e.message) from e
    if not raw:
        console.print(f"[dim]{count} events replayed[/dim]")


async def _list_runs(settings: Settings, limit: int, agent_type: AgentType | None) -> list[Run]:
    async with Database(settings.DATABASE_PATH) as db:
        return await RunStore(db).list_runs(limit=limit, agent_type=agent_type)


@app.command()
def runs(
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", min=1, max=200, help="Number of runs to show"),
    ] = 20,
    workflow: Annotated[
        Optional[WorkflowChoice],
        typer.Option("--workflow", "-w", help="Only runs of this workflow"),
    ] = None,
) -> None:
    """List the most recent runs."""
    settings = _require_settings()
    agent_type = AgentType(workflow.value) if workflow else None
    recent = asyncio.run(_list_runs(settings, limit, agent_type))

    if not recent:
        console.print("[dim]No runs recorded yet.[/dim]")
        return

    table = Table(title="Runs")
    table.add_column("ID", justify="right")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Input")
    table.add_column("Created", style="dim")
    table.add_column("Error", style="red")

    for item in recent:
        style = STATUS_STYLES.get(item.status, "white")
        symbol = item.input.get("stockSymbol", "")
        exchange = item.input.get("exchangeAcronym", "")
        table.add_row(
            str(item.id),
            item.agent_type.value,
            f"[{style}]{item.status.value}[/{style}]",
            f"{symbol}:{exchange}" if exchange else str(symbol),
            item.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            item.error or "",
        )

    console.print(table)


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Bind host"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Bind port"),
    ] = None,
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    settings = _require_settings(verbose=True)
    uvicorn.run(
        "agentrun.api.server:create_app",
        factory=True,
        host=host or settings.API_HOST,
        port=port or settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Error:[/red] Configuration is invalid.")
        error_console.print("Check your environment variables and .env file.")
        raise typer.Exit(1)

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for key, value in settings.redacted_display().items():
        table.add_row(key, "" if value is None else str(value))

    console.print(table)


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"agentrun version {__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
