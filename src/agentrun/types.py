"""
Core types for the workflow run engine.

This module defines the fundamental data structures used throughout the system:
- Enums for agent types and run/step statuses (with their state machines)
- Frozen dataclasses for persisted records (Run, Step, StoredEvent)
- Helper functions for timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def epoch_ms(value: datetime | None = None) -> int:
    """Milliseconds since the epoch for ``value`` (defaults to now)."""
    value = value or utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class AgentType(str, Enum):
    """Kinds of workflow a run can execute."""

    CONSENSUS = "consensus"
    RESEARCH = "research"


class RunStatus(str, Enum):
    """Run lifecycle: PENDING -> RUNNING -> {COMPLETED, FAILED, CANCELLED}."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES

    def can_transition_to(self, target: RunStatus) -> bool:
        """Whether a run may move from this status to ``target``.

        Terminal statuses are final. A pending run may be failed or cancelled
        without ever running.
        """
        if self.is_terminal:
            return False
        if self is RunStatus.RUNNING:
            return target is not RunStatus.PENDING
        return True


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


class StepStatus(str, Enum):
    """Step lifecycle: PENDING -> RUNNING -> {COMPLETED, FAILED}."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)

    def can_transition_to(self, target: StepStatus) -> bool:
        if self is StepStatus.PENDING:
            return target is StepStatus.RUNNING
        if self is StepStatus.RUNNING:
            return target.is_terminal
        return False


@dataclass(frozen=True)
class Run:
    """One user-initiated orchestration instance.

    ``input`` is fixed at creation. Only the engine executing the run changes
    its status, and ``completed_at`` is set exactly when the status is terminal.
    """

    id: int
    agent_type: AgentType
    status: RunStatus
    input: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    output: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict (camelCase, as served over HTTP)."""
        return {
            "id": self.id,
            "agentType": self.agent_type.value,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class Step:
    """One named, ordered unit of work within a run's pipeline."""

    id: int
    run_id: int
    step_name: str
    step_order: int
    status: StepStatus
    output: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runId": self.run_id,
            "stepName": self.step_name,
            "stepOrder": self.step_order,
            "status": self.status.value,
            "output": self.output,
            "metadata": self.metadata,
            "error": self.error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class StoredEvent:
    """One immutable event appended to a run's timeline.

    ``sequence`` is the run-scoped ordering key used as the stream cursor;
    ``payload`` is the full serialized event including its own ``type`` and
    producer-side ``timestamp``.
    """

    run_id: int
    sequence: int
    event_id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def timestamp_ms(self) -> int:
        """Producer timestamp, falling back to the storage insertion time."""
        value = self.payload.get("timestamp")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return epoch_ms(self.created_at)

    def to_wire(self) -> dict[str, Any]:
        """The payload prefixed with its stable id and cursor position."""
        return {"eventId": self.event_id, "sequence": self.sequence, **self.payload}
