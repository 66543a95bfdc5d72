"""
Event log: append-only, per-run ordered record of workflow events.

Each event is stored as its full JSON payload next to a run-scoped
``sequence`` that starts at 1 and has no gaps. The sequence is assigned
inside the INSERT itself (max + 1, backed by a UNIQUE(run_id, sequence)
constraint), so the order in which a caller appends is the order every
reader observes. Readers use the sequence as their cursor.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Any

import aiosqlite

from agentrun.events import BaseEvent, event_to_payload
from agentrun.exceptions import EventLogError
from agentrun.logging import get_logger
from agentrun.persistence.database import Database, dumps, from_iso, loads, to_iso
from agentrun.types import StoredEvent, utc_now

logger = get_logger(__name__)

_STORE_ERRORS = (sqlite3.Error, ValueError, RuntimeError)


class EventLog:
    """Durable, strictly ordered event storage for all runs."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def append(self, run_id: int, event: BaseEvent | dict[str, Any]) -> StoredEvent:
        """Append an event to a run's log.

        Args:
            run_id: The owning run.
            event: A workflow event model or an already-serialized payload.

        Returns:
            The stored event with its assigned sequence.

        Raises:
            EventLogError: If the event could not be durably written.
        """
        payload = event_to_payload(event) if isinstance(event, BaseEvent) else dict(event)
        event_type = str(payload.get("type", "event"))
        event_id = uuid.uuid4().hex
        created_at = utc_now()

        try:
            async with self.db.write() as conn:
                cursor = await conn.execute(
                    """
                    INSERT INTO agent_run_events (run_id, sequence, event_id, type, payload, created_at)
                    SELECT ?, COALESCE(MAX(sequence), 0) + 1, ?, ?, ?, ?
                    FROM agent_run_events WHERE run_id = ?
                    """,
                    (
                        run_id,
                        event_id,
                        event_type,
                        dumps(payload),
                        to_iso(created_at),
                        run_id,
                    ),
                )
                row_id = cursor.lastrowid
                async with conn.execute(
                    "SELECT sequence FROM agent_run_events WHERE id = ?", (row_id,)
                ) as seq_cursor:
                    row = await seq_cursor.fetchone()
        except _STORE_ERRORS as e:
            raise EventLogError(
                f"Failed to persist workflow event: {e}",
                context={"run_id": run_id, "event_type": event_type},
            ) from e

        sequence = row["sequence"]
        logger.debug("Appended event", run_id=run_id, sequence=sequence, type=event_type)

        return StoredEvent(
            run_id=run_id,
            sequence=sequence,
            event_id=event_id,
            type=event_type,
            payload=payload,
            created_at=created_at,
        )

    async def read_after(
        self, run_id: int, cursor: int = 0, limit: int = 100
    ) -> list[StoredEvent]:
        """Events with sequence > cursor, oldest first, at most ``limit``."""
        rows = await self.db.fetchall(
            """
            SELECT * FROM agent_run_events
            WHERE run_id = ? AND sequence > ?
            ORDER BY sequence ASC
            LIMIT ?
            """,
            (run_id, cursor, limit),
        )
        return [self._row_to_event(row) for row in rows]

    async def read_all(self, run_id: int) -> list[StoredEvent]:
        """The run's complete log in order."""
        rows = await self.db.fetchall(
            "SELECT * FROM agent_run_events WHERE run_id = ? ORDER BY sequence ASC",
            (run_id,),
        )
        return [self._row_to_event(row) for row in rows]

    async def last_sequence(self, run_id: int) -> int:
        """Highest sequence for the run (0 when the log is empty)."""
        row = await self.db.fetchone(
            "SELECT COALESCE(MAX(sequence), 0) FROM agent_run_events WHERE run_id = ?",
            (run_id,),
        )
        return row[0] if row else 0

    async def count(self, run_id: int) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) FROM agent_run_events WHERE run_id = ?", (run_id,)
        )
        return row[0] if row else 0

    async def count_by_type(self, run_id: int) -> dict[str, int]:
        rows = await self.db.fetchall(
            """
            SELECT type, COUNT(*) FROM agent_run_events
            WHERE run_id = ? GROUP BY type
            """,
            (run_id,),
        )
        return {row[0]: row[1] for row in rows}

    def _row_to_event(self, row: aiosqlite.Row) -> StoredEvent:
        return StoredEvent(
            run_id=row["run_id"],
            sequence=row["sequence"],
            event_id=row["event_id"],
            type=row["type"],
            payload=loads(row["payload"]) or {},
            created_at=from_iso(row["created_at"]),
        )
