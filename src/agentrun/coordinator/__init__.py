"""Run coordination: emitter, engine, fan-out, registry and run service."""

from agentrun.coordinator.emitter import Emit, LiveEmitter, create_persisted_emitter
from agentrun.coordinator.engine import (
    RunHandle,
    StepContext,
    StepDefinition,
    WorkflowDefinition,
    WorkflowEngine,
)
from agentrun.coordinator.fanout import (
    FanOutResult,
    QuorumPolicy,
    gather_branches,
    run_branches,
)

__all__ = [
    "Emit",
    "FanOutResult",
    "LiveEmitter",
    "QuorumPolicy",
    "RunHandle",
    "StepContext",
    "StepDefinition",
    "WorkflowDefinition",
    "WorkflowEngine",
    "create_persisted_emitter",
    "gather_branches",
    "run_branches",
]
