"""
RunStore: persisted runs and their ordered steps.

A run and all of its steps are created together (the pipeline shape is
declared up front). Status updates enforce the state machines in
``agentrun.types``: run updates that would leave a terminal status are
refused and reported, step updates outside PENDING -> RUNNING ->
{COMPLETED, FAILED} raise.
"""

from __future__ import annotations

from typing import Any, Sequence

import aiosqlite

from agentrun.exceptions import InvalidTransitionError, RunNotFoundError, ValidationError
from agentrun.logging import get_logger
from agentrun.persistence.database import Database, dumps, from_iso, loads, to_iso
from agentrun.types import AgentType, Run, RunStatus, Step, StepStatus, utc_now

logger = get_logger(__name__)


class RunStore:
    """Reads and writes ``agent_runs`` and ``agent_run_steps``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create_run(
        self,
        agent_type: AgentType,
        input: dict[str, Any],
        step_names: Sequence[str],
    ) -> tuple[Run, list[Step]]:
        """Insert a PENDING run and its PENDING steps (orders 1..N).

        Args:
            agent_type: Workflow the run executes.
            input: Validated request parameters.
            step_names: Pipeline step names in execution order.

        Returns:
            The created run and its steps, ordered by step_order.
        """
        if not step_names:
            raise ValidationError("A run needs at least one step")
        if len(set(step_names)) != len(step_names):
            raise ValidationError(
                "Step names must be unique within a run",
                context={"steps": list(step_names)},
            )

        now = to_iso(utc_now())
        async with self.db.write() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO agent_runs (agent_type, status, input, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (agent_type.value, RunStatus.PENDING.value, dumps(input), now, now),
            )
            run_id = cursor.lastrowid
            await conn.executemany(
                """
                INSERT INTO agent_run_steps (run_id, step_name, step_order, status, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (run_id, name, order, StepStatus.PENDING.value, now)
                    for order, name in enumerate(step_names, start=1)
                ],
            )

        logger.info(
            "Run created",
            run_id=run_id,
            agent_type=agent_type.value,
            steps=list(step_names),
        )
        return await self.require_run(run_id), await self.list_steps(run_id)

    async def get_run(self, run_id: int) -> Run | None:
        row = await self.db.fetchone("SELECT * FROM agent_runs WHERE id = ?", (run_id,))
        return self._row_to_run(row) if row else None

    async def require_run(self, run_id: int) -> Run:
        """Get a run or raise RunNotFoundError."""
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError("runId not found", context={"run_id": run_id})
        return run

    async def get_status(self, run_id: int) -> RunStatus | None:
        """Current status only; the live stream polls this."""
        row = await self.db.fetchone(
            "SELECT status FROM agent_runs WHERE id = ?", (run_id,)
        )
        return RunStatus(row["status"]) if row else None

    async def list_runs(
        self,
        limit: int = 50,
        agent_type: AgentType | None = None,
        statuses: Sequence[RunStatus] | None = None,
    ) -> list[Run]:
        """Most recent runs first."""
        conditions: list[str] = []
        params: list[Any] = []

        if agent_type:
            conditions.append("agent_type = ?")
            params.append(agent_type.value)

        if statuses:
            conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        rows = await self.db.fetchall(
            f"SELECT * FROM agent_runs WHERE {where_clause} ORDER BY id DESC LIMIT ?",
            [*params, limit],
        )
        return [self._row_to_run(row) for row in rows]

    async def update_run_status(
        self,
        run_id: int,
        status: RunStatus,
        *,
        error: str | None = None,
        output: dict[str, Any] | None = None,
    ) -> bool:
        """Move a run to ``status``.

        Sets ``started_at`` on RUNNING and ``completed_at`` on terminal
        statuses. The update is conditional on the current status, so a run
        that is already terminal is never changed.

        Returns:
            True if the run was updated, False if the transition was refused.
        """
        current = await self.require_run(run_id)
        if current.status is status and not status.is_terminal:
            return True
        if not current.status.can_transition_to(status):
            logger.warning(
                "Refused run status transition",
                run_id=run_id,
                current=current.status.value,
                target=status.value,
            )
            return False

        now = to_iso(utc_now())
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, now]

        if status is RunStatus.RUNNING:
            assignments.append("started_at = COALESCE(started_at, ?)")
            params.append(now)
        if status.is_terminal:
            assignments.append("completed_at = ?")
            params.append(now)
        if error is not None:
            assignments.append("error = ?")
            params.append(error)
        if output is not None:
            assignments.append("output = ?")
            params.append(dumps(output))

        async with self.db.write() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE agent_runs SET {', '.join(assignments)}
                WHERE id = ? AND status = ?
                """,
                [*params, run_id, current.status.value],
            )
            updated = cursor.rowcount == 1

        if updated:
            logger.debug("Run status updated", run_id=run_id, status=status.value)
        return updated

    async def list_steps(self, run_id: int) -> list[Step]:
        rows = await self.db.fetchall(
            "SELECT * FROM agent_run_steps WHERE run_id = ? ORDER BY step_order ASC",
            (run_id,),
        )
        return [self._row_to_step(row) for row in rows]

    async def get_step(self, step_id: int) -> Step | None:
        row = await self.db.fetchone(
            "SELECT * FROM agent_run_steps WHERE id = ?", (step_id,)
        )
        return self._row_to_step(row) if row else None

    async def update_step_status(
        self,
        step_id: int,
        status: StepStatus,
        *,
        error: str | None = None,
        output: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Step:
        """Move a step to ``status`` and return the updated step.

        Raises:
            InvalidTransitionError: If the step state machine forbids it.
        """
        step = await self.get_step(step_id)
        if step is None:
            raise InvalidTransitionError("Step not found", context={"step_id": step_id})
        if not step.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"Step {step.step_name} cannot move from {step.status.value} to {status.value}",
                context={
                    "step_id": step_id,
                    "current": step.status.value,
                    "target": status.value,
                },
            )

        now = to_iso(utc_now())
        assignments = ["status = ?"]
        params: list[Any] = [status.value]

        if status is StepStatus.RUNNING:
            assignments.append("started_at = ?")
            params.append(now)
        if status.is_terminal:
            assignments.append("completed_at = ?")
            params.append(now)
        if error is not None:
            assignments.append("error = ?")
            params.append(error)
        if output is not None:
            assignments.append("output = ?")
            params.append(dumps(output))
        if metadata is not None:
            assignments.append("metadata = ?")
            params.append(dumps(metadata))

        async with self.db.write() as conn:
            await conn.execute(
                f"UPDATE agent_run_steps SET {', '.join(assignments)} WHERE id = ?",
                [*params, step_id],
            )

        updated = await self.get_step(step_id)
        if updated is None:
            raise InvalidTransitionError(
                "Step disappeared during update", context={"step_id": step_id}
            )
        return updated

    def _row_to_run(self, row: aiosqlite.Row) -> Run:
        return Run(
            id=row["id"],
            agent_type=AgentType(row["agent_type"]),
            status=RunStatus(row["status"]),
            input=loads(row["input"]) or {},
            output=loads(row["output"]),
            error=row["error"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
        )

    def _row_to_step(self, row: aiosqlite.Row) -> Step:
        return Step(
            id=row["id"],
            run_id=row["run_id"],
            step_name=row["step_name"],
            step_order=row["step_order"],
            status=StepStatus(row["status"]),
            output=loads(row["output"]),
            metadata=loads(row["metadata"]),
            error=row["error"],
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
        )
