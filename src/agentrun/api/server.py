"""
agentrun HTTP API.

Starts consensus and research runs, streams their events live as NDJSON,
replays finished runs at speed, and exposes run status and cancellation.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import orjson
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from agentrun import __version__
from agentrun.config import Settings, get_settings
from agentrun.coordinator.registry import build_default_registry
from agentrun.coordinator.service import RunService
from agentrun.exceptions import (
    AgentRunError,
    ConfigurationError,
    RunAlreadyStartedError,
    RunNotFoundError,
    ValidationError,
    WorkflowNotFoundError,
)
from agentrun.logging import get_logger, setup_logging
from agentrun.persistence import Database, EventLog, RunStore
from agentrun.streaming.live import LiveStreamServer, format_stream_line
from agentrun.streaming.params import parse_run_id
from agentrun.streaming.replay import ReplayServer
from agentrun.types import AgentType, StoredEvent
from agentrun.workflows.dry_run import build_dry_run_services
from agentrun.workflows.services import WorkflowServices

logger = get_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"

_STATUS_CODES: dict[type[AgentRunError], int] = {
    ValidationError: 400,
    RunNotFoundError: 404,
    WorkflowNotFoundError: 404,
    RunAlreadyStartedError: 409,
}


def stream_headers(run_id: int) -> dict[str, str]:
    return {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Agent-Run-Id": str(run_id),
    }


async def ndjson_lines(events: AsyncIterator[StoredEvent]) -> AsyncIterator[bytes]:
    async for stored in events:
        yield format_stream_line(stored)


def _parse_limit(value: str | None) -> int:
    if value is None or value == "":
        return 50
    if not value.strip().isdigit():
        raise ValidationError("limit must be an integer", context={"field": "limit"})
    return max(1, min(int(value), 200))


def _parse_agent_type(value: str | None) -> AgentType | None:
    if value is None or value == "":
        return None
    try:
        return AgentType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown agentType: {value}", context={"field": "agentType"}
        ) from None


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = orjson.loads(await request.body() or b"{}")
    except orjson.JSONDecodeError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def create_app(
    settings: Settings | None = None,
    services: WorkflowServices | None = None,
) -> FastAPI:
    """Build the API application.

    Args:
        settings: Application settings (loads from env if None).
        services: Step services; the offline services are used when omitted
            and DRY_RUN is enabled.
    """
    settings = settings or get_settings()

    if services is None:
        if not settings.DRY_RUN:
            raise ConfigurationError(
                "No live step services configured; pass services or set DRY_RUN=true"
            )
        services = build_dry_run_services()
    step_services = services

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        db = Database(settings.DATABASE_PATH)
        await db.connect()

        run_store = RunStore(db)
        event_log = EventLog(db)
        registry = build_default_registry(step_services, settings)
        service = RunService(run_store, event_log, registry)

        app.state.run_store = run_store
        app.state.event_log = event_log
        app.state.service = service
        app.state.live = LiveStreamServer(
            run_store,
            event_log,
            poll_interval=settings.poll_interval_seconds,
            batch_size=settings.STREAM_BATCH_SIZE,
        )
        app.state.replay = ReplayServer(
            run_store,
            event_log,
            default_max_delay_ms=settings.REPLAY_MAX_DELAY_MS,
            max_speed=settings.REPLAY_MAX_SPEED,
        )

        recovered = await service.recover_interrupted_runs()
        logger.info("API ready", database=str(settings.DATABASE_PATH), recovered=len(recovered))
        try:
            yield
        finally:
            await service.shutdown()
            await db.close()

    app = FastAPI(title="agentrun API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Agent-Run-Id"],
    )

    @app.exception_handler(AgentRunError)
    async def handle_agentrun_error(request: Request, exc: AgentRunError) -> JSONResponse:
        status_code = next(
            (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
        )
        if status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=str(exc))
        return JSONResponse({"error": exc.message}, status_code=status_code)

    # ============== Routes ==============

    @app.get("/")
    async def root(request: Request) -> dict[str, Any]:
        return {
            "name": "agentrun API",
            "version": __version__,
            "status": "operational",
            "activeRuns": request.app.state.service.active_count,
        }

    async def _start(request: Request, agent_type: AgentType) -> dict[str, Any]:
        body = await _json_body(request)
        run = await request.app.state.service.launch(agent_type, body)
        return {"runId": run.id}

    @app.post("/workflows/consensus/start")
    async def start_consensus(request: Request) -> dict[str, Any]:
        """Start a consensus run."""
        return await _start(request, AgentType.CONSENSUS)

    @app.post("/workflows/research/start")
    async def start_research(request: Request) -> dict[str, Any]:
        """Start a research run."""
        return await _start(request, AgentType.RESEARCH)

    @app.get("/workflows/stream")
    async def stream_run(request: Request) -> StreamingResponse:
        """Follow a run's events from ``cursor`` until it finishes."""
        raw_run_id = request.query_params.get("runId")
        events = await request.app.state.live.open(
            raw_run_id,
            request.query_params.get("cursor"),
            is_disconnected=request.is_disconnected,
        )
        return StreamingResponse(
            ndjson_lines(events),
            media_type=NDJSON_MEDIA_TYPE,
            headers=stream_headers(parse_run_id(raw_run_id)),
        )

    @app.get("/workflows/replay")
    async def replay_run(request: Request) -> StreamingResponse:
        """Replay a run's recorded events with scaled timing."""
        raw_run_id = request.query_params.get("runId")
        events = await request.app.state.replay.open(
            raw_run_id,
            speed=request.query_params.get("speed"),
            max_delay_ms=request.query_params.get("maxDelayMs"),
        )
        return StreamingResponse(
            ndjson_lines(events),
            media_type=NDJSON_MEDIA_TYPE,
            headers=stream_headers(parse_run_id(raw_run_id)),
        )

    @app.get("/runs")
    async def list_runs(request: Request) -> dict[str, Any]:
        """Most recent runs first."""
        runs = await request.app.state.run_store.list_runs(
            limit=_parse_limit(request.query_params.get("limit")),
            agent_type=_parse_agent_type(request.query_params.get("agentType")),
        )
        return {"runs": [run.to_dict() for run in runs]}

    @app.get("/runs/{run_id}")
    async def get_run(request: Request, run_id: str) -> dict[str, Any]:
        """A run with its ordered steps."""
        parsed = parse_run_id(run_id)
        run = await request.app.state.run_store.require_run(parsed)
        steps = await request.app.state.run_store.list_steps(parsed)
        return {
            "run": run.to_dict(),
            "steps": [step.to_dict() for step in steps],
            "eventCount": await request.app.state.event_log.count(parsed),
            "active": request.app.state.service.is_active(parsed),
        }

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(request: Request, run_id: str) -> dict[str, Any]:
        """Cooperatively cancel a run."""
        run = await request.app.state.service.cancel_run(parse_run_id(run_id))
        return {"run": run.to_dict()}

    return app


def main() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "agentrun.api.server:create_app",
        factory=True,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
