"""
Replay: play back a run's recorded events with their original pacing.

The gap between consecutive events is taken from their producer timestamps,
divided by the speed multiplier and capped at ``max_delay_ms``. Replay reads
the log once and ends after the last persisted event.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, AsyncIterator, Sequence

from agentrun.logging import get_logger, log_context
from agentrun.persistence.event_log import EventLog
from agentrun.persistence.runs import RunStore
from agentrun.streaming.live import Sleep
from agentrun.streaming.params import parse_max_delay_ms, parse_run_id, parse_speed
from agentrun.types import StoredEvent

logger = get_logger(__name__)

DEFAULT_MAX_DELAY_MS = 2000
DEFAULT_MAX_SPEED = 10.0


def replay_delays_ms(
    events: Sequence[StoredEvent], speed: float, max_delay_ms: float
) -> list[float]:
    """Delay before each event, in milliseconds (the first is always 0)."""
    delays: list[float] = []
    previous: int | None = None
    for stored in events:
        ts = stored.timestamp_ms
        if previous is None:
            delays.append(0.0)
        else:
            delays.append(min(max(ts - previous, 0) / speed, max_delay_ms))
        previous = ts
    return delays


class ReplayServer:
    """Speed-scaled playback of a run's full event log."""

    def __init__(
        self,
        run_store: RunStore,
        event_log: EventLog,
        default_max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
        max_speed: float = DEFAULT_MAX_SPEED,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.run_store = run_store
        self.event_log = event_log
        self.default_max_delay_ms = default_max_delay_ms
        self.max_speed = max_speed
        self.sleep = sleep

    def clamp_speed(self, speed: float | None) -> float:
        """Usable speed multiplier.

        Missing, NaN, infinite and non-positive values play at 1x; anything
        faster than ``max_speed`` is capped.
        """
        if speed is None or math.isnan(speed) or math.isinf(speed) or speed <= 0:
            return 1.0
        return min(speed, self.max_speed)

    async def open(
        self,
        run_id: Any,
        speed: Any = None,
        max_delay_ms: Any = None,
    ) -> AsyncIterator[StoredEvent]:
        """Validate the request, load the log and return the paced iterator.

        Raises:
            ValidationError: If run_id, speed or max_delay_ms is malformed.
            RunNotFoundError: If the run does not exist.
        """
        parsed_run_id = parse_run_id(run_id)
        effective_speed = self.clamp_speed(parse_speed(speed))
        cap = parse_max_delay_ms(max_delay_ms)
        if cap is None:
            cap = self.default_max_delay_ms

        await self.run_store.require_run(parsed_run_id)
        events = await self.event_log.read_all(parsed_run_id)

        with log_context(run_id=parsed_run_id):
            logger.debug(
                "Replay opened", events=len(events), speed=effective_speed, max_delay_ms=cap
            )
        return self._play(events, effective_speed, cap)

    async def _play(
        self, events: list[StoredEvent], speed: float, max_delay_ms: float
    ) -> AsyncIterator[StoredEvent]:
        for stored, delay in zip(events, replay_delays_ms(events, speed, max_delay_ms)):
            if delay > 0:
                await self.sleep(delay / 1000)
            yield stored
