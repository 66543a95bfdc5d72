"""
Consensus pipeline.

1. fetch_data - Market snapshot plus optional web context
2. parallel_analysis - Every configured model analyses the stock independently
3. synthesize_consensus - One report of where the models agree and disagree
"""

from __future__ import annotations

from functools import partial
from typing import Any

from pydantic import BaseModel

from agentrun.config import Settings
from agentrun.coordinator.engine import (
    StepContext,
    StepDefinition,
    StepOutput,
    WorkflowDefinition,
    dump_output,
    require_input,
)
from agentrun.coordinator.fanout import QuorumPolicy, gather_branches
from agentrun.events import create_event
from agentrun.logging import get_logger
from agentrun.types import AgentType
from agentrun.workflows.fetch import FETCH_DATA, build_fetch_data_step
from agentrun.workflows.models import (
    AnalysisSet,
    ConsensusInput,
    ConsensusReport,
    FetchedData,
)
from agentrun.workflows.services import WorkflowServices

logger = get_logger(__name__)

PARALLEL_ANALYSIS = "parallel_analysis"
SYNTHESIZE_CONSENSUS = "synthesize_consensus"


def build_consensus_workflow(
    services: WorkflowServices, settings: Settings
) -> WorkflowDefinition:
    """Declare the consensus pipeline over the given services."""
    models = sorted(settings.CONSENSUS_MODELS)
    quorum = QuorumPolicy(min_successes=settings.CONSENSUS_MIN_ANALYSES)

    async def parallel_analysis(ctx: StepContext) -> AnalysisSet:
        data = ctx.output(FETCH_DATA, FetchedData)

        await ctx.emit(
            create_event(
                "progress",
                step_id=ctx.step_id,
                percent=0,
                message="Starting parallel_analysis",
            )
        )
        await ctx.emit(create_event("thinking", message="Analyzing market data..."))

        result = await gather_branches(
            [(model_id, partial(services.analyst.analyze, model_id, data)) for model_id in models],
            ctx.emit,
            max_concurrency=settings.MAX_CONCURRENT_BRANCHES,
        )
        ctx.metadata.update(result.metadata())
        result.require(quorum)

        analyses = sorted(result.values, key=lambda a: a.model_id)
        logger.info(
            "Model analyses collected",
            succeeded=len(analyses),
            failed=len(result.failures),
        )

        await ctx.emit(
            create_event(
                "sources",
                sources=[
                    {"title": f"{a.model_id} analysis", "source_type": "model"}
                    for a in analyses
                ],
            )
        )
        for analysis in analyses:
            await ctx.emit(
                create_event(
                    "artifact",
                    step_id=ctx.step_id,
                    artifact_type="stance",
                    data={
                        "modelId": analysis.model_id,
                        "stance": analysis.stance,
                        "confidence": analysis.confidence,
                        "stanceSummary": analysis.stance_summary,
                    },
                )
            )
        await ctx.emit(
            create_event(
                "step-summary",
                step_id=ctx.step_id,
                summary=f"Completed {len(analyses)} of {len(models)} model analyses",
            )
        )
        await ctx.emit(
            create_event(
                "progress",
                step_id=ctx.step_id,
                percent=100,
                message="Completed parallel_analysis",
            )
        )

        return AnalysisSet(analyses=analyses)

    async def synthesize_consensus(ctx: StepContext) -> ConsensusReport:
        data = ctx.output(FETCH_DATA, FetchedData)
        analyses = ctx.output(PARALLEL_ANALYSIS, AnalysisSet).analyses

        await ctx.emit(
            create_event(
                "progress",
                step_id=ctx.step_id,
                percent=0,
                message="Starting synthesize_consensus",
            )
        )
        await ctx.emit(create_event("thinking", message="Synthesizing consensus view..."))

        report = await services.synthesizer.synthesize(data, analyses)

        await ctx.emit(
            create_event(
                "report",
                report_id=f"consensus-{ctx.run_id}",
                report_type="consensus",
                report=dump_output(report),
                run_id=ctx.run_id,
            )
        )
        await ctx.emit(
            create_event(
                "artifact",
                step_id=ctx.step_id,
                artifact_type="summary",
                data={
                    "stock": {
                        "symbol": data.snapshot.symbol,
                        "exchange": data.snapshot.exchange,
                        "name": data.snapshot.name,
                    },
                    "title": report.title,
                    "overallStance": report.overall_stance,
                    "overallConfidence": report.overall_confidence,
                    "overallSummary": report.overall_summary,
                },
            )
        )
        for disagreement in report.disagreement_points:
            views = sorted(
                (
                    {"analyst": model_id, "stance": p.stance, "reasoning": p.rationale}
                    for p in disagreement.positions
                    for model_id in p.models
                ),
                key=lambda v: v["analyst"],
            )
            await ctx.emit(create_event("divergence", topic=disagreement.topic, views=views))
        await ctx.emit(
            create_event(
                "progress",
                step_id=ctx.step_id,
                percent=100,
                message="Completed synthesize_consensus",
            )
        )

        return report

    def build_result(validated: BaseModel, outputs: dict[str, StepOutput]) -> dict[str, Any]:
        request = require_input(validated, ConsensusInput)
        fetched = FetchedData.model_validate(dump_output(outputs[FETCH_DATA]))
        analyses = AnalysisSet.model_validate(dump_output(outputs[PARALLEL_ANALYSIS]))
        return {
            "report": dump_output(outputs[SYNTHESIZE_CONSENSUS]),
            "modelAnalyses": [dump_output(a) for a in analyses.analyses],
            "stockSymbol": request.stock_symbol,
            "exchangeAcronym": request.exchange_acronym,
            "snapshotId": fetched.snapshot.snapshot_id,
        }

    return WorkflowDefinition(
        agent_type=AgentType.CONSENSUS,
        input_model=ConsensusInput,
        steps=(
            build_fetch_data_step(services),
            StepDefinition(
                name=PARALLEL_ANALYSIS,
                handler=parallel_analysis,
                output_model=AnalysisSet,
                description="Running parallel model analyses",
            ),
            StepDefinition(
                name=SYNTHESIZE_CONSENSUS,
                handler=synthesize_consensus,
                output_model=ConsensusReport,
                description="Synthesizing consensus report",
            ),
        ),
        build_result=build_result,
    )
