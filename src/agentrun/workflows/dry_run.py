"""
Offline step services.

Deterministic stand-ins for the market data, search and model providers.
Output depends only on the request (symbol, exchange, model id, task), so
runs are reproducible. Used when ``DRY_RUN`` is set, by the default server
wiring and the test suite, which can also ask individual models or tasks to
fail.
"""

from __future__ import annotations

import asyncio
import hashlib
import random
from collections import Counter
from typing import Iterable

from agentrun.types import utc_now
from agentrun.workflows.models import (
    ConsensusPoint,
    ConsensusReport,
    ContextSource,
    DisagreementPoint,
    DisagreementPosition,
    Evidence,
    FetchedData,
    MarketSnapshot,
    ModelAnalysis,
    ReportSection,
    ResearchFinding,
    ResearchInput,
    ResearchPlan,
    ResearchReport,
    ResearchTask,
)
from agentrun.workflows.services import WorkflowServices

_STANCES = ("bullish", "neutral", "bearish")

# role -> question template
_RESEARCH_ROLES = {
    "fundamentals": "How durable are {name}'s revenue growth and margins?",
    "competition": "How is {name} positioned against its main competitors?",
    "valuation": "Is {name} attractively valued relative to peers and history?",
    "risks": "What are the most material downside risks for {name}?",
    "catalysts": "Which near-term catalysts could re-rate {name}?",
}


def _rng(*parts: str) -> random.Random:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return random.Random(int(digest[:16], 16))


async def _pause(delay: float) -> None:
    if delay > 0:
        await asyncio.sleep(delay)


class DryRunSnapshotProvider:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay

    async def get_snapshot(
        self, symbol: str, exchange: str, *, force_refresh: bool = False
    ) -> MarketSnapshot:
        await _pause(self.delay)
        if self.fail:
            raise RuntimeError(f"Snapshot unavailable for {symbol}:{exchange}")

        rng = _rng("snapshot", symbol, exchange)
        return MarketSnapshot(
            snapshot_id=f"dry-{symbol.lower()}-{exchange.lower()}",
            symbol=symbol,
            exchange=exchange,
            name=f"{symbol.title()} Holdings",
            sector="Technology",
            industry="Application Software",
            currency="USD",
            price=round(rng.uniform(20, 400), 2),
            metrics={
                "peRatio": round(rng.uniform(8, 45), 1),
                "revenueGrowth": round(rng.uniform(-0.05, 0.35), 3),
                "grossMargin": round(rng.uniform(0.3, 0.8), 3),
                "debtToEquity": round(rng.uniform(0.0, 1.5), 2),
            },
            fetched_at=utc_now(),
        )


class DryRunContextSearch:
    def __init__(self, name: str = "dry.search", fail: bool = False) -> None:
        self.name = name
        self.fail = fail

    async def search(self, query: str, *, max_results: int = 6) -> list[ContextSource]:
        if self.fail:
            raise RuntimeError(f"{self.name} unavailable")
        slug = hashlib.sha256(query.encode("utf-8")).hexdigest()[:8]
        return [
            ContextSource(
                title=f"{query} ({self.name} result {i})",
                url=f"https://example.com/{self.name}/{slug}/{i}",
                source_type="web",
            )
            for i in range(1, min(max_results, 2) + 1)
        ]


class DryRunAnalysisModel:
    def __init__(self, fail_models: Iterable[str] = (), delay: float = 0.0) -> None:
        self.fail_models = set(fail_models)
        self.delay = delay

    async def analyze(self, model_id: str, data: FetchedData) -> ModelAnalysis:
        await _pause(self.delay)
        if model_id in self.fail_models:
            raise RuntimeError(f"{model_id} timed out")

        snapshot = data.snapshot
        rng = _rng("analysis", model_id, snapshot.symbol, snapshot.exchange)
        stance = rng.choice(_STANCES)
        growth = snapshot.metrics.get("revenueGrowth", 0.0)
        return ModelAnalysis(
            model_id=model_id,
            stance=stance,
            stance_summary=f"{model_id} is {stance} on {snapshot.symbol}",
            key_points=[
                f"Revenue growth of {growth:.1%}",
                f"P/E of {snapshot.metrics.get('peRatio', 0.0)}",
                f"{len(data.context_sources)} context sources reviewed",
            ],
            risks=["Multiple compression", "Execution risk"],
            confidence=round(rng.uniform(40, 90), 1),
            analysis=f"## {snapshot.symbol}\n\nOffline analysis by {model_id}.",
        )


class DryRunSynthesizer:
    async def synthesize(
        self, data: FetchedData, analyses: list[ModelAnalysis]
    ) -> ConsensusReport:
        by_stance: dict[str, list[str]] = {}
        for analysis in sorted(analyses, key=lambda a: a.model_id):
            by_stance.setdefault(analysis.stance, []).append(analysis.model_id)

        counts = Counter({stance: len(models) for stance, models in by_stance.items()})
        overall, top = counts.most_common(1)[0]
        if top == len(analyses):
            agreement = "unanimous"
        elif top * 2 > len(analyses):
            agreement = "majority"
        else:
            agreement = "split"

        disagreements = []
        if len(by_stance) > 1:
            disagreements.append(
                DisagreementPoint(
                    topic="Direction over the next 12 months",
                    positions=[
                        DisagreementPosition(
                            stance=stance,
                            models=models,
                            rationale=f"{len(models)} model(s) lean {stance}",
                        )
                        for stance, models in sorted(by_stance.items())
                    ],
                )
            )

        symbol = data.snapshot.symbol
        confidence = sum(a.confidence for a in analyses) / len(analyses)
        return ConsensusReport(
            title=f"{symbol} consensus view",
            overall_stance=overall,
            overall_summary=(
                f"{top} of {len(analyses)} models are {overall} on {symbol}."
            ),
            consensus_points=[
                ConsensusPoint(
                    point=f"Overall stance is {overall}",
                    agreement_level=agreement,
                    supporting_models=by_stance[overall],
                )
            ],
            disagreement_points=disagreements,
            action_items=[f"Verify {symbol} revenue growth assumptions"],
            overall_confidence=round(confidence, 1),
        )


class DryRunResearchPlanner:
    async def plan(
        self, request: ResearchInput, data: FetchedData, max_tasks: int
    ) -> ResearchPlan:
        name = data.snapshot.name or data.snapshot.symbol
        main_question = request.query or f"What is the investment outlook for {name}?"
        tasks = [
            ResearchTask(
                task_id=f"t{i}",
                question=template.format(name=name),
                role=role,
                priority="high" if i <= 2 else "medium",
            )
            for i, (role, template) in enumerate(_RESEARCH_ROLES.items(), start=1)
        ]
        return ResearchPlan(
            main_question=main_question,
            tasks=tasks[:max_tasks],
            expected_deliverables=["Executive summary", "Evidence by theme"],
        )


class DryRunResearcher:
    def __init__(self, fail_tasks: Iterable[str] = (), delay: float = 0.0) -> None:
        self.fail_tasks = set(fail_tasks)
        self.delay = delay

    async def research(self, task: ResearchTask, data: FetchedData) -> ResearchFinding:
        await _pause(self.delay)
        if task.task_id in self.fail_tasks:
            raise RuntimeError(f"Research task {task.task_id} failed")

        snapshot = data.snapshot
        return ResearchFinding(
            task_id=task.task_id,
            role=task.role,
            summary=f"{task.role.title()} review of {snapshot.symbol} complete",
            findings=[f"{task.question} Offline answer for {snapshot.symbol}."],
            evidence=[
                Evidence(
                    claim=f"{snapshot.symbol} trades at {snapshot.price} {snapshot.currency}",
                    source=f"snapshot:{snapshot.snapshot_id}",
                    confidence="high",
                )
            ],
            limitations=["Offline data only"],
        )


class DryRunReportWriter:
    async def write(
        self,
        request: ResearchInput,
        plan: ResearchPlan,
        findings: list[ResearchFinding],
    ) -> ResearchReport:
        return ResearchReport(
            title=f"{request.stock_symbol} research report",
            executive_summary=f"{len(findings)} research threads on: {plan.main_question}",
            sections=[
                ReportSection(
                    heading=finding.role.title(),
                    content=finding.summary,
                    evidence=finding.evidence,
                )
                for finding in findings
            ],
            conclusion=f"See sections for the {request.stock_symbol} outlook.",
            limitations=sorted({item for f in findings for item in f.limitations}),
            suggested_follow_up=[t.question for t in plan.tasks[:2]],
        )


def build_dry_run_services(
    *,
    fail_models: Iterable[str] = (),
    fail_tasks: Iterable[str] = (),
    delay: float = 0.0,
) -> WorkflowServices:
    """Offline services for every pipeline step."""
    return WorkflowServices(
        snapshots=DryRunSnapshotProvider(delay=delay),
        analyst=DryRunAnalysisModel(fail_models=fail_models, delay=delay),
        synthesizer=DryRunSynthesizer(),
        planner=DryRunResearchPlanner(),
        researcher=DryRunResearcher(fail_tasks=fail_tasks, delay=delay),
        writer=DryRunReportWriter(),
        context_search=[DryRunContextSearch()],
    )
