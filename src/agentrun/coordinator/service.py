"""
Run service: the boundary where runs are created, started and cancelled.

Owns the in-memory RunHandle of every run executing in this process and
the background task driving it. Runs left unfinished by an earlier process
are marked failed on startup.
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from agentrun.coordinator.emitter import Emit, LiveEmitter, create_persisted_emitter
from agentrun.coordinator.engine import RunHandle, WorkflowDefinition, WorkflowEngine
from agentrun.coordinator.registry import WorkflowRegistry
from agentrun.events import create_event
from agentrun.exceptions import EventLogError, RunAlreadyStartedError, ValidationError
from agentrun.logging import get_logger, log_context
from agentrun.persistence.event_log import EventLog
from agentrun.persistence.runs import RunStore
from agentrun.types import AgentType, Run, RunStatus, Step, StepStatus

logger = get_logger(__name__)

INTERRUPTED_MESSAGE = "Run interrupted by process restart"


class RunService:
    """Creates runs and drives them through the workflow engine."""

    def __init__(
        self,
        run_store: RunStore,
        event_log: EventLog,
        registry: WorkflowRegistry,
        engine: WorkflowEngine | None = None,
    ) -> None:
        self.run_store = run_store
        self.event_log = event_log
        self.registry = registry
        self.engine = engine or WorkflowEngine(run_store, event_log)
        self._handles: dict[int, RunHandle] = {}

    @property
    def active_count(self) -> int:
        """Number of runs currently executing in this process."""
        return len(self._handles)

    def is_active(self, run_id: int) -> bool:
        return run_id in self._handles

    async def create_run(
        self, agent_type: AgentType, input: dict[str, Any]
    ) -> tuple[Run, list[Step]]:
        """Validate the input and persist a pending run with all its steps.

        Raises:
            ValidationError: If the input does not fit the workflow; nothing
                is written in that case.
        """
        definition = self.registry.get(agent_type)
        try:
            validated = definition.input_model.model_validate(input)
        except PydanticValidationError as e:
            error = e.errors()[0]
            field_name = ".".join(str(p) for p in error["loc"]) or "input"
            raise ValidationError(
                f"Invalid {field_name}: {error['msg']}",
                context={"field": field_name},
            ) from e

        stored_input = validated.model_dump(mode="json", by_alias=True, exclude_none=True)
        return await self.run_store.create_run(agent_type, stored_input, definition.step_names)

    async def start_run(
        self, run_id: int, emitter: LiveEmitter | None = None
    ) -> asyncio.Task[RunStatus]:
        """Start executing a pending run in a background task.

        Args:
            run_id: The run to start.
            emitter: Optional live forwarder for the run's events.

        Raises:
            RunNotFoundError: If the run does not exist.
            RunAlreadyStartedError: If the run is active or no longer pending.
        """
        run = await self.run_store.require_run(run_id)
        if run_id in self._handles or run.status is not RunStatus.PENDING:
            raise RunAlreadyStartedError(
                "Run has already been started",
                context={"run_id": run_id, "status": run.status.value},
            )

        emit = create_persisted_emitter(self.event_log, run_id, emitter)
        handle = RunHandle(run_id=run_id, emit=emit)
        self._handles[run_id] = handle

        try:
            definition = self.registry.get(run.agent_type)
            steps = await self.run_store.list_steps(run_id)
            await emit(
                create_event(
                    "stage",
                    stage=f"{run.agent_type.value}.request",
                    progress=0.0,
                    message="Request received",
                )
            )
        except Exception:
            self._handles.pop(run_id, None)
            raise

        task = asyncio.create_task(
            self._drive(definition, run, steps, emit, handle), name=f"agentrun-run-{run_id}"
        )
        handle.task = task
        logger.info("Run started", run_id=run_id, agent_type=run.agent_type.value)
        return task

    async def launch(
        self,
        agent_type: AgentType,
        input: dict[str, Any],
        emitter: LiveEmitter | None = None,
    ) -> Run:
        """Create and start a run."""
        run, _ = await self.create_run(agent_type, input)
        await self.start_run(run.id, emitter)
        return run

    async def cancel_run(self, run_id: int, reason: str = "Run cancelled") -> Run:
        """Cancel a run cooperatively.

        A terminal run is returned unchanged. A non-terminal run with no
        active task in this process is finalized directly.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        run = await self.run_store.require_run(run_id)
        if run.is_terminal:
            return run

        handle = self._handles.get(run_id) or RunHandle(run_id=run_id)
        await self.engine.cancel(handle, reason)
        return await self.run_store.require_run(run_id)

    async def wait(self, run_id: int) -> Run:
        """Wait for the run's task (if any) and return the stored run."""
        handle = self._handles.get(run_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait({handle.task})
        return await self.run_store.require_run(run_id)

    async def recover_interrupted_runs(self) -> list[int]:
        """Fail runs an earlier process left pending or running.

        Returns:
            Ids of the runs that were marked failed.
        """
        stale = await self.run_store.list_runs(
            limit=10_000, statuses=[RunStatus.PENDING, RunStatus.RUNNING]
        )
        recovered: list[int] = []

        for run in stale:
            if run.id in self._handles:
                continue

            with log_context(run_id=run.id, workflow=run.agent_type.value):
                for step in await self.run_store.list_steps(run.id):
                    if step.status is StepStatus.RUNNING:
                        await self.run_store.update_step_status(
                            step.id, StepStatus.FAILED, error=INTERRUPTED_MESSAGE
                        )

                emit = create_persisted_emitter(self.event_log, run.id)
                try:
                    await emit(
                        create_event(
                            "error",
                            message=INTERRUPTED_MESSAGE,
                            recoverable=False,
                            code="interrupted",
                        )
                    )
                except EventLogError as e:
                    logger.error("Could not record interruption", error=str(e))

                if await self.run_store.update_run_status(
                    run.id, RunStatus.FAILED, error=INTERRUPTED_MESSAGE
                ):
                    recovered.append(run.id)

        if recovered:
            logger.warning("Recovered interrupted runs", run_ids=recovered)
        return recovered

    async def shutdown(self) -> None:
        """Cancel every active run task and wait for them to unwind."""
        tasks = [h.task for h in self._handles.values() if h.task and not h.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled active runs", count=len(tasks))

    async def _drive(
        self,
        definition: WorkflowDefinition,
        run: Run,
        steps: list[Step],
        emit: Emit,
        handle: RunHandle,
    ) -> RunStatus:
        try:
            return await self.engine.execute(definition, run, steps, emit, handle)
        finally:
            self._handles.pop(run.id, None)
