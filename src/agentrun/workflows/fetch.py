"""
``fetch_data``: the first step of both pipelines.

Fetches the market snapshot, then asks every configured context search
provider for background. A failing search provider is reported as a
recoverable error and skipped; a failing snapshot fails the step.
"""

from __future__ import annotations

import uuid

from agentrun.coordinator.engine import StepContext, StepDefinition
from agentrun.events import create_event
from agentrun.logging import get_logger
from agentrun.workflows.models import ConsensusInput, ContextSource, FetchedData
from agentrun.workflows.services import WorkflowServices

logger = get_logger(__name__)

FETCH_DATA = "fetch_data"


def _call_id(prefix: str, run_id: int) -> str:
    return f"{prefix}-{run_id}-{uuid.uuid4().hex[:8]}"


def build_fetch_data_step(services: WorkflowServices) -> StepDefinition:
    async def fetch_data(ctx: StepContext) -> FetchedData:
        request = ctx.request(ConsensusInput)
        symbol, exchange = request.stock_symbol, request.exchange_acronym

        await ctx.emit(
            create_event(
                "progress", step_id=ctx.step_id, percent=0, message="Starting fetch_data"
            )
        )

        call_id = _call_id("snapshot", ctx.run_id)
        await ctx.emit(
            create_event(
                "tool-call",
                tool_name="getStockSnapshot",
                call_id=call_id,
                args={
                    "stockSymbol": symbol,
                    "exchangeAcronym": exchange,
                    "forceRefresh": request.force_refresh,
                },
            )
        )
        snapshot = await services.snapshots.get_snapshot(
            symbol, exchange, force_refresh=request.force_refresh
        )
        await ctx.emit(
            create_event(
                "tool-result",
                call_id=call_id,
                result={
                    "snapshotId": snapshot.snapshot_id,
                    "fetchedAt": snapshot.fetched_at.isoformat(),
                },
            )
        )
        await ctx.emit(
            create_event(
                "sources",
                sources=[
                    {
                        "title": f"{snapshot.symbol} snapshot",
                        "url": f"snapshot:{snapshot.snapshot_id}",
                        "source_type": "snapshot",
                    }
                ],
            )
        )

        query = " ".join(
            part for part in (snapshot.symbol, snapshot.name, "analyst consensus outlook") if part
        )
        context_sources: list[ContextSource] = []

        for provider in services.context_search:
            call_id = _call_id(provider.name, ctx.run_id)
            await ctx.emit(
                create_event(
                    "tool-call",
                    tool_name=provider.name,
                    call_id=call_id,
                    args={"query": query},
                )
            )
            try:
                found = await provider.search(query, max_results=6)
            except Exception as e:
                logger.warning("Context search failed", provider=provider.name, error=str(e))
                await ctx.emit(
                    create_event(
                        "error",
                        step_id=ctx.step_id,
                        message=str(e) or f"{provider.name} search failed",
                        recoverable=True,
                    )
                )
                continue

            await ctx.emit(
                create_event("tool-result", call_id=call_id, result={"count": len(found)})
            )
            context_sources.extend(found)

        if context_sources:
            await ctx.emit(
                create_event(
                    "sources",
                    sources=[
                        {"title": s.title, "url": s.url, "source_type": s.source_type}
                        for s in context_sources
                    ],
                )
            )

        await ctx.emit(
            create_event(
                "artifact",
                step_id=ctx.step_id,
                artifact_type="summary",
                data={
                    "snapshotId": snapshot.snapshot_id,
                    "stock": {
                        "symbol": snapshot.symbol,
                        "exchange": snapshot.exchange,
                        "name": snapshot.name,
                        "sector": snapshot.sector,
                        "industry": snapshot.industry,
                    },
                },
            )
        )
        await ctx.emit(
            create_event(
                "progress", step_id=ctx.step_id, percent=100, message="Completed fetch_data"
            )
        )

        return FetchedData(snapshot=snapshot, context_sources=context_sources)

    return StepDefinition(
        name=FETCH_DATA,
        handler=fetch_data,
        output_model=FetchedData,
        description="Fetching market snapshot",
    )
