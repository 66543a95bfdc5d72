"""
Request parameter parsing shared by the live and replay streams.

Parameters arrive as raw query-string values; anything that is not a
well-formed number in range raises ValidationError before a stream opens.
"""

from __future__ import annotations

import math
import re
from typing import Any

from agentrun.exceptions import ValidationError

_INTEGER = re.compile(r"-?[0-9]+")


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(
            f"{field} must be an integer", context={"field": field, "value": value}
        )
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if _INTEGER.fullmatch(text):
            return int(text)
    raise ValidationError(
        f"{field} must be an integer", context={"field": field, "value": value}
    )


def _as_float(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(
            f"{field} must be a number", context={"field": field, "value": value}
        )
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    raise ValidationError(
        f"{field} must be a number", context={"field": field, "value": value}
    )


def parse_run_id(value: Any) -> int:
    """A positive integer run id."""
    if value is None or value == "":
        raise ValidationError("runId is required", context={"field": "runId"})
    run_id = _as_int(value, "runId")
    if run_id <= 0:
        raise ValidationError(
            "runId must be positive", context={"field": "runId", "value": value}
        )
    return run_id


def parse_cursor(value: Any) -> int:
    """A non-negative sequence cursor; missing means from the start."""
    if value is None or value == "":
        return 0
    cursor = _as_int(value, "cursor")
    if cursor < 0:
        raise ValidationError(
            "cursor must be non-negative", context={"field": "cursor", "value": value}
        )
    return cursor


def parse_speed(value: Any) -> float | None:
    """Replay speed as given; clamping to a usable value happens later."""
    if value is None or value == "":
        return None
    return _as_float(value, "speed")


def parse_max_delay_ms(value: Any) -> float | None:
    """A non-negative, finite delay cap in milliseconds."""
    if value is None or value == "":
        return None
    delay = _as_float(value, "maxDelayMs")
    if math.isnan(delay) or math.isinf(delay) or delay < 0:
        raise ValidationError(
            "maxDelayMs must be a non-negative number",
            context={"field": "maxDelayMs", "value": value},
        )
    return delay
