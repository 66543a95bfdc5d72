"""
Workflow engine.

Executes a run's fixed, ordered pipeline of steps:
1. Validate the run input against the workflow's input model
2. Run each step in ascending step_order, persisting its status and output
3. Finalize the run exactly once: append the terminal event, then write
   the terminal status

Failures never escape the engine once persisted state has been touched;
they are recorded on the step, the run and in an ``error`` event.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agentrun.coordinator.emitter import Emit, create_persisted_emitter
from agentrun.events import create_event
from agentrun.exceptions import AgentRunError, StepExecutionError
from agentrun.logging import get_logger, log_context
from agentrun.persistence.event_log import EventLog
from agentrun.persistence.runs import RunStore
from agentrun.types import AgentType, Run, RunStatus, Step, StepStatus

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

StepOutput = BaseModel | dict[str, Any]
StepHandler = Callable[["StepContext"], Awaitable[StepOutput]]
ResultBuilder = Callable[[BaseModel, dict[str, StepOutput]], dict[str, Any]]


@dataclass(frozen=True)
class StepDefinition:
    """One step of a pipeline.

    Attributes:
        name: Persisted step name, unique within the workflow.
        handler: ``async (StepContext) -> output``.
        output_model: Validates the handler's output at the step boundary.
        description: Human-readable label used in the ``stage`` event.
    """

    name: str
    handler: StepHandler
    output_model: type[BaseModel] | None = None
    description: str = ""


@dataclass(frozen=True)
class WorkflowDefinition:
    """The fixed shape of a workflow: input model plus ordered steps."""

    agent_type: AgentType
    input_model: type[BaseModel]
    steps: tuple[StepDefinition, ...]
    build_result: ResultBuilder | None = None

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def step(self, name: str) -> StepDefinition:
        for definition in self.steps:
            if definition.name == name:
                return definition
        raise StepExecutionError(
            f"Workflow {self.agent_type.value} has no step {name}",
            context={"step": name},
        )


def error_message(error: Exception) -> str:
    """Message recorded on the step, the run and the error event."""
    if isinstance(error, AgentRunError):
        return error.message
    return str(error) or type(error).__name__


def dump_output(output: StepOutput) -> dict[str, Any]:
    """JSON-ready form of a step output (camelCase for models)."""
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json", by_alias=True)
    return dict(output)


def require_input(value: BaseModel, model: type[M]) -> M:
    """Narrow a validated run input to the model its workflow declared.

    Raises:
        StepExecutionError: If the input is of another model.
    """
    if not isinstance(value, model):
        raise StepExecutionError(
            f"Expected {model.__name__} input, got {type(value).__name__}",
            context={"model": model.__name__},
        )
    return value


@dataclass
class StepContext:
    """Everything a step handler receives."""

    run_id: int
    step: Step
    input: BaseModel
    outputs: dict[str, StepOutput]
    emit: Emit
    total_steps: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def step_id(self) -> str:
        return self.step.step_name

    def request(self, model: type[M]) -> M:
        """The run input, typed as ``model``."""
        return require_input(self.input, model)

    def output(self, name: str, model: type[M]) -> M:
        """Typed access to a prior step's output.

        Raises:
            StepExecutionError: If the step has no output or it does not fit.
        """
        value = self.outputs.get(name)
        if value is None:
            raise StepExecutionError(
                f"No output from step {name}", context={"step": self.step_id}
            )
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(dump_output(value))
        except PydanticValidationError as e:
            raise StepExecutionError(
                f"Output of step {name} is not a valid {model.__name__}",
                context={"step": self.step_id},
            ) from e


@dataclass
class RunHandle:
    """In-memory guard for one executing run.

    Carries the cooperative cancellation flag and makes terminal
    finalization single-shot.
    """

    run_id: int
    emit: Emit | None = None
    task: asyncio.Task[RunStatus] | None = None
    finalized: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> None:
        self.cancel_event.set()


class WorkflowEngine:
    """Runs workflow definitions against persisted runs."""

    def __init__(self, run_store: RunStore, event_log: EventLog) -> None:
        self.run_store = run_store
        self.event_log = event_log

    async def execute(
        self,
        definition: WorkflowDefinition,
        run: Run,
        steps: Sequence[Step],
        emit: Emit,
        handle: RunHandle,
    ) -> RunStatus:
        """Execute a run to completion, failure or cancellation.

        Returns:
            The run's status when execution stopped.

        Raises:
            asyncio.CancelledError: If the task itself was cancelled; the run
                is marked failed first.
        """
        started = time.monotonic()
        with log_context(run_id=run.id, workflow=definition.agent_type.value):
            try:
                return await self._run_steps(definition, run, steps, emit, handle, started)
            except asyncio.CancelledError:
                logger.warning("Run interrupted")
                await self._finalize(
                    handle, emit, RunStatus.FAILED, error="Run interrupted"
                )
                raise
            except Exception as e:
                logger.exception("Workflow execution failed", error=str(e))
                return await self._finalize(
                    handle, emit, RunStatus.FAILED, error=error_message(e)
                )

    async def cancel(self, handle: RunHandle, reason: str = "Run cancelled") -> RunStatus:
        """Request cooperative cancellation and finalize the run as cancelled.

        An in-flight step handler keeps running; its outcome no longer
        changes the run.
        """
        handle.request_cancel()
        emit = handle.emit or create_persisted_emitter(self.event_log, handle.run_id)
        with log_context(run_id=handle.run_id):
            logger.info("Cancelling run", reason=reason)
            return await self._finalize(
                handle, emit, RunStatus.CANCELLED, error=reason, code="cancelled"
            )

    async def _run_steps(
        self,
        definition: WorkflowDefinition,
        run: Run,
        steps: Sequence[Step],
        emit: Emit,
        handle: RunHandle,
        started: float,
    ) -> RunStatus:
        try:
            validated = definition.input_model.model_validate(run.input)
        except PydanticValidationError as e:
            error = e.errors()[0]
            field_name = ".".join(str(p) for p in error["loc"]) or "input"
            message = f"Invalid input: {field_name}: {error['msg']}"
            logger.warning("Run input rejected", error=message)
            return await self._finalize(handle, emit, RunStatus.FAILED, error=message)

        ordered = sorted(steps, key=lambda s: s.step_order)
        total = len(ordered)
        outputs: dict[str, StepOutput] = {}

        logger.info("Starting workflow", steps=[s.step_name for s in ordered])

        for index, step in enumerate(ordered):
            if handle.cancel_requested:
                return await self._status(run.id)
            current = await self.run_store.get_status(run.id)
            if current is None or current.is_terminal:
                return current or RunStatus.FAILED

            step_def = definition.step(step.step_name)

            with log_context(step=step.step_name):
                # Run before step, so a refused transition leaves no step RUNNING.
                if index == 0:
                    if not await self.run_store.update_run_status(run.id, RunStatus.RUNNING):
                        return await self._status(run.id)
                step = await self.run_store.update_step_status(step.id, StepStatus.RUNNING)

                ctx = StepContext(
                    run_id=run.id,
                    step=step,
                    input=validated,
                    outputs=outputs,
                    emit=emit,
                    total_steps=total,
                )
                step_started = time.monotonic()
                logger.info("Step started", order=step.step_order, total=total)

                try:
                    await emit(
                        create_event(
                            "stage",
                            stage=f"{definition.agent_type.value}.{step.step_name}",
                            progress=step.step_order / total,
                            message=step_def.description or step.step_name.replace("_", " "),
                        )
                    )
                    output = self._check_output(step_def, await step_def.handler(ctx))
                except Exception as e:
                    message = error_message(e)
                    logger.error("Step failed", error=message)
                    await self.run_store.update_step_status(
                        step.id,
                        StepStatus.FAILED,
                        error=message,
                        metadata=ctx.metadata or None,
                    )
                    return await self._finalize(
                        handle,
                        emit,
                        RunStatus.FAILED,
                        error=message,
                        step_id=step.step_name,
                    )

                await self.run_store.update_step_status(
                    step.id,
                    StepStatus.COMPLETED,
                    output=dump_output(output),
                    metadata=ctx.metadata or None,
                )
                outputs[step.step_name] = output
                logger.info(
                    "Step completed",
                    duration_ms=int((time.monotonic() - step_started) * 1000),
                )

            if handle.cancel_requested:
                return await self._status(run.id)

        if definition.build_result is not None:
            result = definition.build_result(validated, outputs)
        else:
            result = dump_output(outputs[ordered[-1].step_name])

        return await self._finalize(
            handle,
            emit,
            RunStatus.COMPLETED,
            output=result,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _check_output(self, step_def: StepDefinition, raw: Any) -> StepOutput:
        """Validate a handler's return value at the step boundary."""
        model = step_def.output_model
        if model is None:
            if isinstance(raw, (BaseModel, dict)):
                return raw
            raise StepExecutionError(
                f"Step {step_def.name} returned {type(raw).__name__}, expected a mapping",
                context={"step": step_def.name},
            )

        if isinstance(raw, model):
            return raw
        try:
            return model.model_validate(dump_output(raw) if isinstance(raw, BaseModel) else raw)
        except PydanticValidationError as e:
            raise StepExecutionError(
                f"Step {step_def.name} returned invalid output: {e.errors()[0]['msg']}",
                context={"step": step_def.name},
            ) from e

    async def _status(self, run_id: int) -> RunStatus:
        status = await self.run_store.get_status(run_id)
        return status or RunStatus.FAILED

    async def _finalize(
        self,
        handle: RunHandle,
        emit: Emit,
        status: RunStatus,
        *,
        error: str | None = None,
        output: dict[str, Any] | None = None,
        step_id: str | None = None,
        code: str | None = None,
        duration_ms: int = 0,
    ) -> RunStatus:
        """Move the run to a terminal status, at most once per handle.

        The terminal event is appended before the status is written, so a
        live reader that sees a terminal status has already been able to
        read the terminal event.
        """
        async with handle.lock:
            if handle.finalized:
                return await self._status(handle.run_id)

            try:
                current = await self.run_store.get_status(handle.run_id)
            except Exception as e:
                logger.error("Could not read run status", error=str(e))
                current = None
            if current is not None and current.is_terminal:
                handle.finalized = True
                return current

            if status is RunStatus.COMPLETED:
                event = create_event("complete", result=output, duration=duration_ms)
            else:
                event = create_event(
                    "error",
                    message=error or status.value,
                    recoverable=False,
                    step_id=step_id,
                    code=code,
                )

            try:
                await emit(event)
            except Exception as e:
                logger.error("Failed to append terminal event", error=str(e))

            try:
                await self.run_store.update_run_status(
                    handle.run_id, status, error=error, output=output
                )
            except Exception as e:
                logger.error("Failed to write terminal status", error=str(e))

            handle.finalized = True

        if status is RunStatus.COMPLETED:
            logger.info("Run completed", duration_ms=duration_ms)
        else:
            logger.warning("Run finished", status=status.value, error=error)
        return status
