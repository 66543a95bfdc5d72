"""
Typed step inputs and outputs for the consensus and research pipelines.

Each model is validated at the step boundary that produces it and again
when a later step reads it. Field names serialize as camelCase so that
persisted step outputs and ``complete`` results match the event wire format.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

Stance = Literal["bullish", "bearish", "neutral"]
Level = Literal["high", "medium", "low"]

Ticker = Annotated[
    str, StringConstraints(strip_whitespace=True, to_upper=True, min_length=1, max_length=20)
]


class WorkflowModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


# ============== Requests ==============


class ConsensusInput(WorkflowModel):
    """Request for a multi-model consensus report."""

    stock_symbol: Ticker
    exchange_acronym: Ticker
    force_refresh: bool = False


class ResearchInput(ConsensusInput):
    """Request for a research report, optionally focused on a question."""

    query: Annotated[str, StringConstraints(strip_whitespace=True, max_length=2000)] | None = None


# ============== fetch_data ==============


class MarketSnapshot(WorkflowModel):
    """Point-in-time market facts for one listing."""

    snapshot_id: str
    symbol: str
    exchange: str
    name: str | None = None
    sector: str | None = None
    industry: str | None = None
    currency: str | None = None
    price: float | None = None
    metrics: dict[str, float] = Field(default_factory=dict)
    fetched_at: datetime


class ContextSource(WorkflowModel):
    """A web/context search hit used as background for analysis."""

    title: str | None = None
    url: str | None = None
    source_type: str | None = None
    snippet: str | None = None


class FetchedData(WorkflowModel):
    snapshot: MarketSnapshot
    context_sources: list[ContextSource] = Field(default_factory=list)


# ============== consensus ==============


class ModelAnalysis(WorkflowModel):
    """One model's independent view of the stock."""

    model_id: str
    stance: Stance
    stance_summary: str
    key_points: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=100.0)
    analysis: str


class AnalysisSet(WorkflowModel):
    analyses: list[ModelAnalysis] = Field(min_length=1)

    @property
    def model_ids(self) -> list[str]:
        return [a.model_id for a in self.analyses]


class ConsensusPoint(WorkflowModel):
    point: str
    agreement_level: Literal["unanimous", "majority", "split"]
    supporting_models: list[str] = Field(default_factory=list)


class DisagreementPosition(WorkflowModel):
    stance: Stance
    models: list[str]
    rationale: str


class DisagreementPoint(WorkflowModel):
    topic: str
    positions: list[DisagreementPosition]


class ConsensusReport(WorkflowModel):
    """Synthesis of the model analyses."""

    title: str
    overall_stance: Stance
    overall_summary: str
    consensus_points: list[ConsensusPoint] = Field(default_factory=list)
    disagreement_points: list[DisagreementPoint] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)
    overall_confidence: float = Field(ge=0.0, le=100.0)


# ============== research ==============


class ResearchTask(WorkflowModel):
    task_id: str
    question: str
    role: str
    priority: Level = "medium"


class ResearchPlan(WorkflowModel):
    main_question: str
    tasks: list[ResearchTask] = Field(min_length=1)
    expected_deliverables: list[str] = Field(default_factory=list)


class Evidence(WorkflowModel):
    claim: str
    source: str
    confidence: Level
    data_point: str | None = None


class ResearchFinding(WorkflowModel):
    """Result of one research task."""

    task_id: str
    role: str
    summary: str
    findings: list[str] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)


class ReportSection(WorkflowModel):
    heading: str
    content: str
    evidence: list[Evidence] = Field(default_factory=list)


class ResearchReport(WorkflowModel):
    title: str
    executive_summary: str
    sections: list[ReportSection] = Field(default_factory=list)
    conclusion: str
    limitations: list[str] = Field(default_factory=list)
    suggested_follow_up: list[str] = Field(default_factory=list)


class ResearchOutcome(WorkflowModel):
    """Output of the research ``create_plan`` step."""

    plan: ResearchPlan
    findings: list[ResearchFinding]
    report: ResearchReport
