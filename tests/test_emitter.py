"""
Tests for the persisted emitter.
"""

from __future__ import annotations

import pytest

from agentrun.coordinator.emitter import create_persisted_emitter
from agentrun.events import BaseEvent, create_event
from agentrun.exceptions import EventLogError
from agentrun.persistence import EventLog, RunStore
from agentrun.types import AgentType


@pytest.fixture
async def run_id(run_store: RunStore) -> int:
    run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, ["fetch_data"])
    return run.id


class TestPersistedEmitter:
    """Tests for persist-then-forward emission."""

    @pytest.mark.asyncio
    async def test_persists_and_returns_stored_event(
        self, event_log: EventLog, run_id: int
    ) -> None:
        emit = create_persisted_emitter(event_log, run_id)

        stored = await emit(create_event("thinking", message="hello"))

        assert stored.sequence == 1
        assert stored.run_id == run_id
        assert (await event_log.read_all(run_id))[0].event_id == stored.event_id

    @pytest.mark.asyncio
    async def test_forwards_after_persisting(self, event_log: EventLog, run_id: int) -> None:
        """Test that the live emitter only sees events already in the log."""
        seen: list[tuple[str, int]] = []

        async def forward(event: BaseEvent) -> None:
            seen.append((event.type, await event_log.count(run_id)))  # type: ignore[attr-defined]

        emit = create_persisted_emitter(event_log, run_id, forward)
        await emit(create_event("thinking", message="one"))
        await emit(create_event("thinking", message="two"))

        assert seen == [("thinking", 1), ("thinking", 2)]

    @pytest.mark.asyncio
    async def test_forwarding_failure_is_ignored(
        self, event_log: EventLog, run_id: int
    ) -> None:
        """Test that a broken live consumer does not fail the emit."""

        async def broken(event: BaseEvent) -> None:
            raise ConnectionResetError("client went away")

        emit = create_persisted_emitter(event_log, run_id, broken)
        stored = await emit(create_event("thinking", message="still stored"))

        assert stored.sequence == 1
        assert await event_log.count(run_id) == 1

    @pytest.mark.asyncio
    async def test_append_failure_propagates(self, event_log: EventLog) -> None:
        """Test that an event that was not persisted is never forwarded."""
        forwarded: list[BaseEvent] = []

        async def forward(event: BaseEvent) -> None:
            forwarded.append(event)

        emit = create_persisted_emitter(event_log, 999, forward)

        with pytest.raises(EventLogError):
            await emit(create_event("thinking", message="lost"))
        assert forwarded == []
