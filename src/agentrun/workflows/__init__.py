"""Pipeline declarations, their typed step models and step services."""

from agentrun.workflows.consensus import build_consensus_workflow
from agentrun.workflows.dry_run import build_dry_run_services
from agentrun.workflows.research import build_research_workflow
from agentrun.workflows.services import WorkflowServices

__all__ = [
    "WorkflowServices",
    "build_consensus_workflow",
    "build_dry_run_services",
    "build_research_workflow",
]
