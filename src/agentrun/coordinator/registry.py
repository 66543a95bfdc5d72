"""
Workflow registry: AgentType -> WorkflowDefinition.

Built explicitly at startup and passed to the RunService, so tests and the
CLI can wire their own services into the same pipeline shapes.
"""

from __future__ import annotations

from agentrun.config import Settings
from agentrun.coordinator.engine import WorkflowDefinition
from agentrun.exceptions import WorkflowNotFoundError
from agentrun.types import AgentType
from agentrun.workflows.consensus import build_consensus_workflow
from agentrun.workflows.research import build_research_workflow
from agentrun.workflows.services import WorkflowServices


class WorkflowRegistry:
    """Holds one workflow definition per agent type."""

    def __init__(self) -> None:
        self._workflows: dict[AgentType, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition) -> None:
        self._workflows[definition.agent_type] = definition

    def get(self, agent_type: AgentType) -> WorkflowDefinition:
        """Look up a workflow.

        Raises:
            WorkflowNotFoundError: If nothing is registered for the type.
        """
        try:
            return self._workflows[agent_type]
        except KeyError:
            raise WorkflowNotFoundError(
                f"No workflow registered for {agent_type.value}",
                context={"agent_type": agent_type.value},
            ) from None

    def step_names(self, agent_type: AgentType) -> list[str]:
        return self.get(agent_type).step_names

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._workflows

    @property
    def agent_types(self) -> list[AgentType]:
        return list(self._workflows)


def build_default_registry(
    services: WorkflowServices, settings: Settings
) -> WorkflowRegistry:
    """Registry with the consensus and research pipelines."""
    registry = WorkflowRegistry()
    registry.register(build_consensus_workflow(services, settings))
    registry.register(build_research_workflow(services, settings))
    return registry
