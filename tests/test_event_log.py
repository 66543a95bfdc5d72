"""
Tests for the event log.
"""

from __future__ import annotations

import asyncio

import pytest

from agentrun.events import BaseEvent, create_event
from agentrun.exceptions import EventLogError
from agentrun.persistence import EventLog, RunStore
from agentrun.types import AgentType, StoredEvent


@pytest.fixture
async def run_id(run_store: RunStore) -> int:
    """Create a pending run to append events to."""
    run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, ["fetch_data"])
    return run.id


def thinking(message: str) -> BaseEvent:
    return create_event("thinking", message=message)


class TestAppend:
    """Tests for appending events."""

    @pytest.mark.asyncio
    async def test_sequence_starts_at_one(self, event_log: EventLog, run_id: int) -> None:
        """Test that sequences are 1..N without gaps."""
        stored = [await event_log.append(run_id, thinking(f"m{i}")) for i in range(5)]

        assert [s.sequence for s in stored] == [1, 2, 3, 4, 5]
        assert len({s.event_id for s in stored}) == 5
        assert await event_log.last_sequence(run_id) == 5

    @pytest.mark.asyncio
    async def test_sequences_are_per_run(
        self, event_log: EventLog, run_store: RunStore, run_id: int
    ) -> None:
        """Test that each run has its own sequence."""
        other, _ = await run_store.create_run(AgentType.RESEARCH, {}, ["fetch_data"])

        await event_log.append(run_id, thinking("a"))
        await event_log.append(run_id, thinking("b"))
        stored = await event_log.append(other.id, thinking("c"))

        assert stored.sequence == 1

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_gapless(
        self, event_log: EventLog, run_id: int
    ) -> None:
        """Test that concurrent appends get unique, contiguous sequences."""
        stored = await asyncio.gather(
            *[event_log.append(run_id, thinking(f"m{i}")) for i in range(20)]
        )

        assert sorted(s.sequence for s in stored) == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_payload_is_persisted(self, event_log: EventLog, run_id: int) -> None:
        """Test that the full camelCase payload is stored."""
        await event_log.append(
            run_id, create_event("progress", step_id="fetch_data", percent=50, timestamp=7)
        )

        [stored] = await event_log.read_all(run_id)
        assert stored.type == "progress"
        assert stored.payload == {
            "type": "progress",
            "stepId": "fetch_data",
            "percent": 50.0,
            "timestamp": 7,
        }

    @pytest.mark.asyncio
    async def test_append_raw_payload(self, event_log: EventLog, run_id: int) -> None:
        """Test that already-serialized payloads are accepted."""
        stored = await event_log.append(run_id, {"type": "custom", "value": 1})

        assert stored.type == "custom"
        assert (await event_log.read_all(run_id))[0].payload == {"type": "custom", "value": 1}

    @pytest.mark.asyncio
    async def test_append_to_missing_run_fails(self, event_log: EventLog) -> None:
        """Test that a failed write raises EventLogError."""
        with pytest.raises(EventLogError) as exc_info:
            await event_log.append(999, thinking("orphan"))

        assert exc_info.value.context["run_id"] == 999
        assert exc_info.value.context["event_type"] == "thinking"


class TestRead:
    """Tests for reading events."""

    @pytest.mark.asyncio
    async def test_read_after_cursor(self, event_log: EventLog, run_id: int) -> None:
        """Test that read_after returns only events after the cursor."""
        for i in range(6):
            await event_log.append(run_id, thinking(f"m{i}"))

        assert [e.sequence for e in await event_log.read_after(run_id, 0)] == [1, 2, 3, 4, 5, 6]
        assert [e.sequence for e in await event_log.read_after(run_id, 4)] == [5, 6]
        assert await event_log.read_after(run_id, 6) == []

    @pytest.mark.asyncio
    async def test_read_after_limit(self, event_log: EventLog, run_id: int) -> None:
        for i in range(6):
            await event_log.append(run_id, thinking(f"m{i}"))

        assert [e.sequence for e in await event_log.read_after(run_id, 1, limit=2)] == [2, 3]

    @pytest.mark.asyncio
    async def test_empty_log(self, event_log: EventLog, run_id: int) -> None:
        assert await event_log.read_all(run_id) == []
        assert await event_log.last_sequence(run_id) == 0
        assert await event_log.count(run_id) == 0

    @pytest.mark.asyncio
    async def test_counts(self, event_log: EventLog, run_id: int) -> None:
        """Test total and per-type counts."""
        await event_log.append(run_id, thinking("a"))
        await event_log.append(run_id, thinking("b"))
        await event_log.append(run_id, create_event("complete", duration=1))

        assert await event_log.count(run_id) == 3
        assert await event_log.count_by_type(run_id) == {"thinking": 2, "complete": 1}


class TestStoredEvent:
    """Tests for the stored event record."""

    def test_to_wire_prefixes_id_and_sequence(self) -> None:
        stored = StoredEvent(
            run_id=1,
            sequence=3,
            event_id="abc",
            type="thinking",
            payload={"type": "thinking", "message": "hi", "timestamp": 10},
        )

        assert stored.to_wire() == {
            "eventId": "abc",
            "sequence": 3,
            "type": "thinking",
            "message": "hi",
            "timestamp": 10,
        }
        assert stored.timestamp_ms == 10

    def test_timestamp_falls_back_to_created_at(self) -> None:
        """Test that payloads without a timestamp use the insertion time."""
        stored = StoredEvent(run_id=1, sequence=1, event_id="abc", type="custom")

        assert stored.timestamp_ms == int(stored.created_at.timestamp() * 1000)
