"""
Workflow event protocol.

Every event a running workflow reports is one of the models below. Events are
self-describing (each carries its ``type``) and timestamped by the producer in
epoch milliseconds. On the wire each event is one compact JSON object per line
(NDJSON) with camelCase field names, so consumers can parse a byte stream by
splitting on newlines and skip any type they do not know.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from agentrun.exceptions import ValidationError
from agentrun.types import epoch_ms


class BaseEvent(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    timestamp: int = Field(default_factory=epoch_ms)


class StageEvent(BaseEvent):
    """Named phase of a run with a coarse 0-1 progress fraction."""

    type: Literal["stage"] = "stage"
    stage: str
    progress: float = Field(ge=0.0, le=1.0)
    message: str | None = None


class ProgressEvent(BaseEvent):
    """Fine-grained progress of one step, in percent."""

    type: Literal["progress"] = "progress"
    step_id: str
    percent: float = Field(ge=0.0, le=100.0)
    message: str | None = None


class ArtifactEvent(BaseEvent):
    """Intermediate result a UI can show or collapse."""

    type: Literal["artifact"] = "artifact"
    step_id: str
    artifact_type: Literal["summary", "evidence", "comparison", "citation", "stance"]
    data: Any = None


class DeltaEvent(BaseEvent):
    type: Literal["delta"] = "delta"
    step_id: str
    chunk: str


class DivergenceView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    analyst: str
    stance: Literal["bullish", "bearish", "neutral"]
    reasoning: str


class DivergenceEvent(BaseEvent):
    """A topic the analysing models disagree on."""

    type: Literal["divergence"] = "divergence"
    topic: str
    views: list[DivergenceView]


class ToolCallEvent(BaseEvent):
    type: Literal["tool-call"] = "tool-call"
    tool_name: str
    call_id: str
    args: Any = None


class ToolResultEvent(BaseEvent):
    type: Literal["tool-result"] = "tool-result"
    call_id: str
    result: Any = None


class SourceRef(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str | None = None
    url: str | None = None
    source_type: str | None = None


class SourcesEvent(BaseEvent):
    type: Literal["sources"] = "sources"
    sources: list[SourceRef] | None = None


class BranchState(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None = None
    status: str | None = None
    duration_ms: int | None = None


class BranchStatusEvent(BaseEvent):
    """Status of parallel branches inside a step."""

    type: Literal["branch-status"] = "branch-status"
    branches: list[BranchState] | None = None


class ErrorEvent(BaseEvent):
    """A failure. Terminal for the run unless ``recoverable`` is true."""

    type: Literal["error"] = "error"
    message: str
    recoverable: bool
    step_id: str | None = None
    code: str | None = None


class CompleteEvent(BaseEvent):
    """Terminal event carrying the run's final result."""

    type: Literal["complete"] = "complete"
    result: Any = None
    duration: int = Field(ge=0)


class ThinkingEvent(BaseEvent):
    type: Literal["thinking"] = "thinking"
    message: str


class RoundEvent(BaseEvent):
    """One iteration of a multi-round research loop."""

    type: Literal["round"] = "round"
    round: int = Field(ge=0)
    total_rounds: int | None = Field(default=None, ge=1)
    speaker: str | None = None
    agenda: str | None = None


class StepSummaryEvent(BaseEvent):
    type: Literal["step-summary"] = "step-summary"
    summary: str
    step_id: str | None = None


class DecisionEvent(BaseEvent):
    type: Literal["decision"] = "decision"
    decision: str
    rationale: str | None = None


class ReportEvent(BaseEvent):
    type: Literal["report"] = "report"
    report_id: str | int | None = None
    report_type: str | None = None
    report: Any = None
    run_id: int | None = None


WorkflowEvent = Annotated[
    Union[
        StageEvent,
        ProgressEvent,
        ArtifactEvent,
        DeltaEvent,
        DivergenceEvent,
        ToolCallEvent,
        ToolResultEvent,
        SourcesEvent,
        BranchStatusEvent,
        ErrorEvent,
        CompleteEvent,
        ThinkingEvent,
        RoundEvent,
        StepSummaryEvent,
        DecisionEvent,
        ReportEvent,
    ],
    Field(discriminator="type"),
]

EVENT_MODELS: dict[str, type[BaseEvent]] = {
    model.model_fields["type"].default: model
    for model in (
        StageEvent,
        ProgressEvent,
        ArtifactEvent,
        DeltaEvent,
        DivergenceEvent,
        ToolCallEvent,
        ToolResultEvent,
        SourcesEvent,
        BranchStatusEvent,
        ErrorEvent,
        CompleteEvent,
        ThinkingEvent,
        RoundEvent,
        StepSummaryEvent,
        DecisionEvent,
        ReportEvent,
    )
}

TERMINAL_EVENT_TYPES = frozenset({"error", "complete"})

_adapter: TypeAdapter[Any] = TypeAdapter(WorkflowEvent)
_opaque: TypeAdapter[Any] = TypeAdapter(Any)

# Free-form fields whose contents are kept verbatim, nulls included.
OPAQUE_FIELDS: dict[str, tuple[tuple[str, str], ...]] = {
    event_type: tuple(
        (name, field.alias or name)
        for name, field in model.model_fields.items()
        if field.annotation is Any
    )
    for event_type, model in EVENT_MODELS.items()
}


def create_event(event_type: str, **data: Any) -> BaseEvent:
    """Build a validated event stamped with the current time.

    No I/O is performed. ``timestamp`` may be passed explicitly to override
    the producer clock.

    Raises:
        ValidationError: If the type is unknown or the data does not fit it.
    """
    model = EVENT_MODELS.get(event_type)
    if model is None:
        raise ValidationError(
            f"Unknown event type: {event_type}", context={"field": "type"}
        )

    known = set(model.model_fields)
    known.update(f.alias for f in model.model_fields.values() if f.alias)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(
            f"Unexpected fields for {event_type} event: {', '.join(unknown)}",
            context={"field": unknown[0]},
        )

    try:
        return model.model_validate({**data, "type": event_type})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {event_type} event: {e.errors()[0]['msg']}",
            context={"field": ".".join(str(p) for p in e.errors()[0]["loc"])},
        ) from e


def event_to_payload(event: BaseEvent) -> dict[str, Any]:
    """JSON-ready dict of an event as persisted and sent on the wire.

    Unset optional fields are omitted; free-form data is dumped as is.
    """
    payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    for name, alias in OPAQUE_FIELDS.get(getattr(event, "type", ""), ()):
        value = getattr(event, name)
        if value is not None:
            payload[alias] = _opaque.dump_python(value, mode="json")
    return payload


def serialize_event(event: BaseEvent) -> str:
    """Render an event as one newline-terminated JSON line."""
    return orjson.dumps(event_to_payload(event)).decode("utf-8") + "\n"


def payload_to_event(payload: dict[str, Any]) -> BaseEvent | None:
    """Validate a decoded payload; None if it is not a known, valid event."""
    try:
        return _adapter.validate_python(payload)
    except PydanticValidationError:
        return None


def parse_event(line: str | bytes) -> BaseEvent | None:
    """Parse one NDJSON line back into an event.

    Returns None for blank lines, malformed JSON, unknown event types or
    payloads that do not match their schema, so readers can skip them.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None

    try:
        data = orjson.loads(line)
    except orjson.JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None

    return payload_to_event(data)


def is_terminal_payload(payload: dict[str, Any]) -> bool:
    """Whether a persisted payload marks the end of a run."""
    event_type = payload.get("type")
    if event_type == "complete":
        return True
    if event_type == "error":
        return payload.get("recoverable") is False
    return False
