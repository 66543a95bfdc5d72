"""
Parallel sub-task execution inside a single step.

A step such as the consensus ``parallel_analysis`` runs several branches
(one per model) concurrently. Every branch is awaited whether it succeeds
or fails, ``branch-status`` events report each transition, and a per-step
QuorumPolicy decides whether the partial results are enough.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from agentrun.coordinator.emitter import Emit
from agentrun.events import create_event
from agentrun.exceptions import InsufficientResultsError
from agentrun.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class QuorumPolicy:
    """How many branches must succeed for the step to succeed.

    Both thresholds apply. The default accepts any single success.
    """

    min_successes: int = 1
    min_success_rate: float = 0.0

    def shortfall(self, succeeded: int, total: int) -> str | None:
        """Reason the policy is not met, or None when it is."""
        if succeeded < self.min_successes:
            return (
                f"only {succeeded} of {total} succeeded, "
                f"need at least {self.min_successes}"
            )
        rate = succeeded / total if total else 0.0
        if rate < self.min_success_rate:
            return (
                f"success rate {rate:.0%} is below the required "
                f"{self.min_success_rate:.0%}"
            )
        return None


@dataclass
class BranchOutcome(Generic[T]):
    """Result of one branch."""

    id: str
    value: T | None = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FanOutResult(Generic[T]):
    """All branch outcomes, in the order the branches were given."""

    outcomes: list[BranchOutcome[T]] = field(default_factory=list)

    @property
    def successes(self) -> list[BranchOutcome[T]]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failures(self) -> list[BranchOutcome[T]]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def values(self) -> list[T]:
        return [o.value for o in self.outcomes if o.ok and o.value is not None]

    def metadata(self) -> dict[str, Any]:
        """Step metadata: requested branches, failures and durations."""
        return {
            "requested": [o.id for o in self.outcomes],
            "failures": [{"id": o.id, "error": o.error} for o in self.failures],
            "durations": [
                {"id": o.id, "durationMs": o.duration_ms} for o in self.outcomes
            ],
        }

    def require(self, policy: QuorumPolicy) -> None:
        """Raise InsufficientResultsError unless the policy is met."""
        reason = policy.shortfall(len(self.successes), len(self.outcomes))
        if reason:
            raise InsufficientResultsError(
                f"Insufficient successful branches: {reason}",
                context={
                    "succeeded": len(self.successes),
                    "total": len(self.outcomes),
                },
            )


Branch = tuple[str, Callable[[], Awaitable[T]]]


async def gather_branches(
    branches: Sequence[Branch[T]],
    emit: Emit,
    max_concurrency: int = 4,
) -> FanOutResult[T]:
    """Run branches concurrently and collect every outcome.

    A failing branch never cancels the others. Errors raised while emitting
    (a failed durable append) are re-raised once all branches have finished.

    Args:
        branches: (branch id, zero-arg coroutine factory) pairs.
        emit: The run's event emitter.
        max_concurrency: Maximum branches in flight at once.
    """
    semaphore = asyncio.Semaphore(max_concurrency)

    await emit(
        create_event(
            "branch-status",
            branches=[{"id": branch_id, "status": "pending"} for branch_id, _ in branches],
        )
    )

    async def run_one(branch_id: str, factory: Callable[[], Awaitable[T]]) -> BranchOutcome[T]:
        async with semaphore:
            await emit(
                create_event("branch-status", branches=[{"id": branch_id, "status": "running"}])
            )
            started = time.monotonic()
            try:
                value = await factory()
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.warning("Branch failed", branch=branch_id, error=str(e))
                await emit(
                    create_event(
                        "branch-status",
                        branches=[
                            {"id": branch_id, "status": "failed", "durationMs": duration_ms}
                        ],
                    )
                )
                return BranchOutcome(
                    id=branch_id,
                    error=str(e) or type(e).__name__,
                    duration_ms=duration_ms,
                )

            duration_ms = int((time.monotonic() - started) * 1000)
            await emit(
                create_event(
                    "branch-status",
                    branches=[
                        {"id": branch_id, "status": "completed", "durationMs": duration_ms}
                    ],
                )
            )
            return BranchOutcome(id=branch_id, value=value, duration_ms=duration_ms)

    gathered = await asyncio.gather(
        *[run_one(branch_id, factory) for branch_id, factory in branches],
        return_exceptions=True,
    )
    for item in gathered:
        if isinstance(item, BaseException):
            raise item

    return FanOutResult(outcomes=list(gathered))  # type: ignore[arg-type]


async def run_branches(
    branches: Sequence[Branch[T]],
    emit: Emit,
    policy: QuorumPolicy | None = None,
    max_concurrency: int = 4,
) -> FanOutResult[T]:
    """Run branches concurrently and enforce the quorum policy.

    Returns:
        FanOutResult with every branch's outcome.

    Raises:
        InsufficientResultsError: If the policy is not met.
    """
    result = await gather_branches(branches, emit, max_concurrency)
    result.require(policy or QuorumPolicy())
    return result
