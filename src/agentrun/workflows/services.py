"""
Collaborators the pipeline steps call out to.

The steps only orchestrate: market data, web context, model analysis,
synthesis, planning, research and writing all sit behind these protocols.
``agentrun.workflows.dry_run`` provides offline implementations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from agentrun.workflows.models import (
    ConsensusReport,
    ContextSource,
    FetchedData,
    MarketSnapshot,
    ModelAnalysis,
    ResearchFinding,
    ResearchInput,
    ResearchPlan,
    ResearchReport,
    ResearchTask,
)


class SnapshotProvider(Protocol):
    async def get_snapshot(
        self, symbol: str, exchange: str, *, force_refresh: bool = False
    ) -> MarketSnapshot: ...


class ContextSearch(Protocol):
    """A search provider queried for background context."""

    name: str

    async def search(self, query: str, *, max_results: int = 6) -> list[ContextSource]: ...


class AnalysisModel(Protocol):
    async def analyze(self, model_id: str, data: FetchedData) -> ModelAnalysis: ...


class ConsensusSynthesizer(Protocol):
    async def synthesize(
        self, data: FetchedData, analyses: list[ModelAnalysis]
    ) -> ConsensusReport: ...


class ResearchPlanner(Protocol):
    async def plan(
        self, request: ResearchInput, data: FetchedData, max_tasks: int
    ) -> ResearchPlan: ...


class Researcher(Protocol):
    async def research(self, task: ResearchTask, data: FetchedData) -> ResearchFinding: ...


class ReportWriter(Protocol):
    async def write(
        self,
        request: ResearchInput,
        plan: ResearchPlan,
        findings: list[ResearchFinding],
    ) -> ResearchReport: ...


@dataclass
class WorkflowServices:
    """Everything the default pipelines need."""

    snapshots: SnapshotProvider
    analyst: AnalysisModel
    synthesizer: ConsensusSynthesizer
    planner: ResearchPlanner
    researcher: Researcher
    writer: ReportWriter
    context_search: list[ContextSearch] = field(default_factory=list)
