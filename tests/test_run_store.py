"""
Tests for the run store.
"""

from __future__ import annotations

import pytest

from agentrun.exceptions import InvalidTransitionError, RunNotFoundError, ValidationError
from agentrun.persistence import RunStore
from agentrun.types import AgentType, RunStatus, StepStatus

STEPS = ["fetch_data", "parallel_analysis", "synthesize_consensus"]


class TestCreateRun:
    """Tests for creating runs with their steps."""

    @pytest.mark.asyncio
    async def test_creates_pending_run_and_steps(self, run_store: RunStore) -> None:
        """Test that a run and all its steps start pending."""
        run, steps = await run_store.create_run(
            AgentType.CONSENSUS, {"stockSymbol": "AAPL"}, STEPS
        )

        assert run.id > 0
        assert run.status is RunStatus.PENDING
        assert run.input == {"stockSymbol": "AAPL"}
        assert run.started_at is None
        assert run.completed_at is None
        assert [s.step_name for s in steps] == STEPS
        assert [s.step_order for s in steps] == [1, 2, 3]
        assert all(s.status is StepStatus.PENDING for s in steps)

    @pytest.mark.asyncio
    async def test_requires_steps(self, run_store: RunStore) -> None:
        """Test that a run without steps is rejected."""
        with pytest.raises(ValidationError):
            await run_store.create_run(AgentType.CONSENSUS, {}, [])

    @pytest.mark.asyncio
    async def test_rejects_duplicate_step_names(self, run_store: RunStore) -> None:
        """Test that step names must be unique."""
        with pytest.raises(ValidationError):
            await run_store.create_run(AgentType.CONSENSUS, {}, ["a", "a"])
        assert await run_store.list_runs() == []


class TestGetRun:
    """Tests for reading runs."""

    @pytest.mark.asyncio
    async def test_get_missing_run(self, run_store: RunStore) -> None:
        assert await run_store.get_run(999) is None
        assert await run_store.get_status(999) is None

    @pytest.mark.asyncio
    async def test_require_missing_run(self, run_store: RunStore) -> None:
        """Test that require_run raises with the standard message."""
        with pytest.raises(RunNotFoundError) as exc_info:
            await run_store.require_run(999)
        assert exc_info.value.message == "runId not found"

    @pytest.mark.asyncio
    async def test_list_runs_most_recent_first(self, run_store: RunStore) -> None:
        """Test ordering and filters of list_runs."""
        first, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        second, _ = await run_store.create_run(AgentType.RESEARCH, {}, ["fetch_data"])
        third, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        await run_store.update_run_status(third.id, RunStatus.CANCELLED)

        assert [r.id for r in await run_store.list_runs()] == [third.id, second.id, first.id]
        assert [r.id for r in await run_store.list_runs(limit=1)] == [third.id]
        assert [
            r.id for r in await run_store.list_runs(agent_type=AgentType.CONSENSUS)
        ] == [third.id, first.id]
        assert [
            r.id for r in await run_store.list_runs(statuses=[RunStatus.PENDING])
        ] == [second.id, first.id]


class TestRunTransitions:
    """Tests for the run state machine."""

    @pytest.mark.asyncio
    async def test_running_sets_started_at(self, run_store: RunStore) -> None:
        run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)

        assert await run_store.update_run_status(run.id, RunStatus.RUNNING)

        updated = await run_store.require_run(run.id)
        assert updated.status is RunStatus.RUNNING
        assert updated.started_at is not None
        assert updated.completed_at is None

    @pytest.mark.asyncio
    async def test_completion_sets_output(self, run_store: RunStore) -> None:
        """Test that a terminal status records completed_at and output."""
        run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        await run_store.update_run_status(run.id, RunStatus.RUNNING)

        assert await run_store.update_run_status(
            run.id, RunStatus.COMPLETED, output={"report": {"title": "x"}}
        )

        updated = await run_store.require_run(run.id)
        assert updated.status is RunStatus.COMPLETED
        assert updated.output == {"report": {"title": "x"}}
        assert updated.completed_at is not None
        assert updated.is_terminal

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, run_store: RunStore) -> None:
        """Test that a terminal run never changes again."""
        run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        await run_store.update_run_status(run.id, RunStatus.FAILED, error="boom")

        assert not await run_store.update_run_status(run.id, RunStatus.COMPLETED)
        assert not await run_store.update_run_status(run.id, RunStatus.CANCELLED)

        updated = await run_store.require_run(run.id)
        assert updated.status is RunStatus.FAILED
        assert updated.error == "boom"

    @pytest.mark.asyncio
    async def test_running_cannot_return_to_pending(self, run_store: RunStore) -> None:
        run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        await run_store.update_run_status(run.id, RunStatus.RUNNING)

        assert not await run_store.update_run_status(run.id, RunStatus.PENDING)

    @pytest.mark.asyncio
    async def test_pending_can_be_cancelled(self, run_store: RunStore) -> None:
        """Test that a run can be cancelled before it ever runs."""
        run, _ = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)

        assert await run_store.update_run_status(run.id, RunStatus.CANCELLED)
        assert (await run_store.require_run(run.id)).started_at is None


class TestStepTransitions:
    """Tests for the step state machine."""

    @pytest.mark.asyncio
    async def test_step_lifecycle(self, run_store: RunStore) -> None:
        """Test PENDING -> RUNNING -> COMPLETED with output and metadata."""
        _, steps = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        step = steps[0]

        running = await run_store.update_step_status(step.id, StepStatus.RUNNING)
        assert running.status is StepStatus.RUNNING
        assert running.started_at is not None

        done = await run_store.update_step_status(
            step.id,
            StepStatus.COMPLETED,
            output={"snapshotId": "s-1"},
            metadata={"requested": ["a"]},
        )
        assert done.status is StepStatus.COMPLETED
        assert done.output == {"snapshotId": "s-1"}
        assert done.metadata == {"requested": ["a"]}
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_cannot_skip_running(self, run_store: RunStore) -> None:
        """Test that a pending step cannot complete directly."""
        _, steps = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)

        with pytest.raises(InvalidTransitionError):
            await run_store.update_step_status(steps[0].id, StepStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_terminal_step_is_final(self, run_store: RunStore) -> None:
        _, steps = await run_store.create_run(AgentType.CONSENSUS, {}, STEPS)
        await run_store.update_step_status(steps[0].id, StepStatus.RUNNING)
        await run_store.update_step_status(steps[0].id, StepStatus.FAILED, error="boom")

        with pytest.raises(InvalidTransitionError):
            await run_store.update_step_status(steps[0].id, StepStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_missing_step(self, run_store: RunStore) -> None:
        with pytest.raises(InvalidTransitionError):
            await run_store.update_step_status(999, StepStatus.RUNNING)
