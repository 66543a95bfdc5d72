"""
Research pipeline.

1. fetch_data - Market snapshot plus optional web context
2. create_plan - Plan research tasks, work through them one round at a
   time, then write the report from the findings

Individual research tasks may fail; the run fails only when the share of
successful tasks drops below RESEARCH_MIN_SUCCESS_RATE.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel

from agentrun.config import Settings
from agentrun.coordinator.engine import (
    StepContext,
    StepDefinition,
    StepOutput,
    WorkflowDefinition,
    dump_output,
    error_message,
    require_input,
)
from agentrun.coordinator.fanout import BranchOutcome, FanOutResult, QuorumPolicy
from agentrun.events import create_event
from agentrun.logging import get_logger
from agentrun.types import AgentType
from agentrun.workflows.fetch import FETCH_DATA, build_fetch_data_step
from agentrun.workflows.models import (
    FetchedData,
    ResearchFinding,
    ResearchInput,
    ResearchOutcome,
)
from agentrun.workflows.services import WorkflowServices

logger = get_logger(__name__)

CREATE_PLAN = "create_plan"

MAX_REPORT_SOURCES = 20


def build_research_workflow(
    services: WorkflowServices, settings: Settings
) -> WorkflowDefinition:
    """Declare the research pipeline over the given services."""
    quorum = QuorumPolicy(
        min_successes=1, min_success_rate=settings.RESEARCH_MIN_SUCCESS_RATE
    )

    async def create_plan(ctx: StepContext) -> ResearchOutcome:
        request = ctx.request(ResearchInput)
        data = ctx.output(FETCH_DATA, FetchedData)

        await ctx.emit(
            create_event(
                "progress", step_id=ctx.step_id, percent=0, message="Starting create_plan"
            )
        )
        await ctx.emit(create_event("thinking", message="Planning research tasks..."))

        plan = await services.planner.plan(request, data, settings.RESEARCH_MAX_TASKS)
        plan = plan.model_copy(update={"tasks": plan.tasks[: settings.RESEARCH_MAX_TASKS]})
        tasks = plan.tasks

        await ctx.emit(
            create_event(
                "artifact",
                step_id=ctx.step_id,
                artifact_type="summary",
                data={
                    "mainQuestion": plan.main_question,
                    "tasks": [dump_output(t) for t in tasks],
                },
            )
        )

        branch_ids = [f"{t.role}:{t.task_id}" for t in tasks]
        await ctx.emit(
            create_event(
                "branch-status",
                branches=[{"id": b, "status": "pending"} for b in branch_ids],
            )
        )

        outcomes: list[BranchOutcome[ResearchFinding]] = []
        for round_number, (task, branch_id) in enumerate(zip(tasks, branch_ids), start=1):
            await ctx.emit(
                create_event(
                    "round",
                    round=round_number,
                    total_rounds=len(tasks),
                    speaker=task.role,
                    agenda=task.question,
                )
            )
            await ctx.emit(create_event("thinking", message=f"Researching: {task.question}"))
            await ctx.emit(
                create_event(
                    "progress",
                    step_id=ctx.step_id,
                    percent=round(100 * (round_number - 1) / len(tasks), 1),
                    message=f"Starting {task.role}",
                )
            )
            await ctx.emit(
                create_event("branch-status", branches=[{"id": branch_id, "status": "running"}])
            )

            started = time.monotonic()
            try:
                finding = await services.researcher.research(task, data)
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                message = error_message(e)
                logger.warning("Research task failed", task=task.task_id, error=message)
                outcomes.append(
                    BranchOutcome(id=branch_id, error=message, duration_ms=duration_ms)
                )
                await ctx.emit(
                    create_event(
                        "error", step_id=ctx.step_id, message=message, recoverable=True
                    )
                )
                await ctx.emit(
                    create_event(
                        "branch-status",
                        branches=[
                            {"id": branch_id, "status": "failed", "durationMs": duration_ms}
                        ],
                    )
                )
                continue

            duration_ms = int((time.monotonic() - started) * 1000)
            outcomes.append(BranchOutcome(id=branch_id, value=finding, duration_ms=duration_ms))
            await ctx.emit(
                create_event(
                    "artifact",
                    step_id=ctx.step_id,
                    artifact_type="evidence",
                    data={
                        "taskId": finding.task_id,
                        "role": finding.role,
                        "summary": finding.summary,
                        "evidence": [dump_output(e) for e in finding.evidence],
                        "limitations": finding.limitations,
                    },
                )
            )
            await ctx.emit(
                create_event("step-summary", step_id=ctx.step_id, summary=finding.summary)
            )
            await ctx.emit(
                create_event(
                    "branch-status",
                    branches=[
                        {"id": branch_id, "status": "completed", "durationMs": duration_ms}
                    ],
                )
            )

        result = FanOutResult(outcomes=outcomes)
        ctx.metadata.update(result.metadata())
        result.require(quorum)
        findings = result.values

        await ctx.emit(create_event("thinking", message="Compiling research findings..."))
        report = await services.writer.write(request, plan, findings)

        evidence_sources = [
            {"title": e.claim, "url": e.source, "source_type": "evidence"}
            for finding in findings
            for e in finding.evidence
        ]
        if evidence_sources:
            await ctx.emit(
                create_event("sources", sources=evidence_sources[:MAX_REPORT_SOURCES])
            )

        await ctx.emit(
            create_event(
                "report",
                report_id=f"research-{ctx.run_id}",
                report_type="research",
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
                    "summary": report.executive_summary,
                },
            )
        )
        await ctx.emit(
            create_event(
                "progress", step_id=ctx.step_id, percent=100, message="Completed create_plan"
            )
        )

        return ResearchOutcome(plan=plan, findings=findings, report=report)

    def build_result(validated: BaseModel, outputs: dict[str, StepOutput]) -> dict[str, Any]:
        request = require_input(validated, ResearchInput)
        fetched = FetchedData.model_validate(dump_output(outputs[FETCH_DATA]))
        outcome = dump_output(outputs[CREATE_PLAN])
        return {
            "report": outcome["report"],
            "plan": outcome["plan"],
            "findings": outcome["findings"],
            "stockSymbol": request.stock_symbol,
            "exchangeAcronym": request.exchange_acronym,
            "query": request.query,
            "snapshotId": fetched.snapshot.snapshot_id,
        }

    return WorkflowDefinition(
        agent_type=AgentType.RESEARCH,
        input_model=ResearchInput,
        steps=(
            build_fetch_data_step(services),
            StepDefinition(
                name=CREATE_PLAN,
                handler=create_plan,
                output_model=ResearchOutcome,
                description="Planning and running research tasks",
            ),
        ),
        build_result=build_result,
    )
