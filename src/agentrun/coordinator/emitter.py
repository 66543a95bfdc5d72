"""
Persisted workflow event emitter.

The emit function handed to step handlers. Every event is first appended to
the run's event log; only after the append has committed is it forwarded
to the optional in-process live emitter.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from agentrun.events import BaseEvent
from agentrun.logging import get_logger
from agentrun.persistence.event_log import EventLog
from agentrun.types import StoredEvent

logger = get_logger(__name__)

Emit = Callable[[BaseEvent], Awaitable[StoredEvent]]
LiveEmitter = Callable[[BaseEvent], Awaitable[None]]


def create_persisted_emitter(
    event_log: EventLog,
    run_id: int,
    emitter: LiveEmitter | None = None,
) -> Emit:
    """Bind an emit function to one run.

    Args:
        event_log: Durable event storage.
        run_id: The run every emitted event belongs to.
        emitter: Optional live forwarder (e.g. straight into a response).

    Returns:
        ``async emit(event) -> StoredEvent``. Append failures raise
        EventLogError; live forwarding failures are logged and ignored.
    """

    async def emit(event: BaseEvent) -> StoredEvent:
        stored = await event_log.append(run_id, event)

        if emitter is not None:
            try:
                await emitter(event)
            except Exception as e:
                logger.warning(
                    "Live event forwarding failed",
                    run_id=run_id,
                    sequence=stored.sequence,
                    type=stored.type,
                    error=str(e),
                )

        return stored

    return emit
