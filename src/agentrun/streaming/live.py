"""
Live stream: follow a run's event log while the run executes.

A reader polls the log from its cursor, drains whatever is there without
sleeping, and only sleeps when it has caught up and the run is still going.
Because the engine appends the terminal event before it writes the terminal
status, one last drain after the status turns terminal delivers everything.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable

import orjson

from agentrun.logging import get_logger
from agentrun.persistence.event_log import EventLog
from agentrun.persistence.runs import RunStore
from agentrun.streaming.params import parse_cursor, parse_run_id
from agentrun.types import StoredEvent

logger = get_logger(__name__)

IsDisconnected = Callable[[], Awaitable[bool]]
Sleep = Callable[[float], Awaitable[Any]]


def format_stream_line(stored: StoredEvent) -> bytes:
    """One NDJSON line: ``{"eventId", "sequence", ...payload}``."""
    return orjson.dumps(stored.to_wire()) + b"\n"


class LiveStreamServer:
    """Cursor-based polling reader over the event log."""

    def __init__(
        self,
        run_store: RunStore,
        event_log: EventLog,
        poll_interval: float = 0.5,
        batch_size: int = 100,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the stream server.

        Args:
            run_store: Source of run status.
            event_log: Source of events.
            poll_interval: Seconds to sleep after an empty poll.
            batch_size: Maximum events read per poll.
            sleep: Awaitable sleep, replaceable in tests.
        """
        self.run_store = run_store
        self.event_log = event_log
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.sleep = sleep

    async def validate_request(self, run_id: Any, cursor: Any = 0) -> tuple[int, int]:
        """Parse and check the request before any stream starts.

        Raises:
            ValidationError: If run_id or cursor is malformed.
            RunNotFoundError: If the run does not exist.
        """
        parsed_run_id = parse_run_id(run_id)
        parsed_cursor = parse_cursor(cursor)
        await self.run_store.require_run(parsed_run_id)
        return parsed_run_id, parsed_cursor

    async def open(
        self,
        run_id: Any,
        cursor: Any = 0,
        is_disconnected: IsDisconnected | None = None,
    ) -> AsyncIterator[StoredEvent]:
        """Validate the request and return the event iterator.

        Events come in strictly increasing sequence order starting after
        ``cursor``. The iterator ends once the run is terminal and fully
        delivered, the client disconnects, or the store fails.
        """
        parsed_run_id, parsed_cursor = await self.validate_request(run_id, cursor)
        return self._follow(parsed_run_id, parsed_cursor, is_disconnected)

    async def _follow(
        self,
        run_id: int,
        cursor: int,
        is_disconnected: IsDisconnected | None,
    ) -> AsyncIterator[StoredEvent]:
        draining = False
        delivered = 0

        # Bound as fields, not log_context: this generator yields to its reader.
        logger.debug("Live stream opened", run_id=run_id, cursor=cursor)
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.debug(
                    "Client disconnected", run_id=run_id, cursor=cursor, delivered=delivered
                )
                return

            try:
                batch = await self.event_log.read_after(run_id, cursor, self.batch_size)
            except Exception as e:
                logger.error(
                    "Live stream read failed", run_id=run_id, cursor=cursor, error=str(e)
                )
                return

            for stored in batch:
                yield stored
                cursor = stored.sequence
                delivered += 1

            if batch:
                continue
            if draining:
                logger.debug(
                    "Live stream finished", run_id=run_id, cursor=cursor, delivered=delivered
                )
                return

            try:
                status = await self.run_store.get_status(run_id)
            except Exception as e:
                logger.error("Live stream status check failed", run_id=run_id, error=str(e))
                return

            if status is None or status.is_terminal:
                draining = True
                continue

            await self.sleep(self.poll_interval)
