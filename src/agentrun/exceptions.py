"""
Custom exception hierarchy for the workflow run engine.

All exceptions inherit from AgentRunError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class AgentRunError(Exception):
    """Base exception for all workflow run errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(AgentRunError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(AgentRunError):
    """Raised when request parameters or run input fail validation.

    Always raised before any persisted state is touched.

    Context should include:
        - field: The field that failed validation
        - value: The invalid value
    """

    pass


class RunNotFoundError(AgentRunError):
    """Raised when a run id does not exist.

    Context should include:
        - run_id: The requested run id
    """

    pass


class WorkflowNotFoundError(AgentRunError):
    """Raised when no workflow is registered for an agent type."""

    pass


class RunAlreadyStartedError(AgentRunError):
    """Raised when a run is started twice or is no longer pending.

    Context should include:
        - run_id: The run id
        - status: The run's current status
    """

    pass


class InvalidTransitionError(AgentRunError):
    """Raised when a step status change violates its state machine.

    Context should include:
        - step_id: The step id
        - current: The current status
        - target: The requested status
    """

    pass


class EventLogError(AgentRunError):
    """Raised when an event cannot be durably appended.

    Context should include:
        - run_id: The run the event belonged to
        - event_type: The event type
    """

    pass


class StepExecutionError(AgentRunError):
    """Raised when a step produces output that fails its boundary check.

    Context should include:
        - step: The step name
    """

    pass


class InsufficientResultsError(AgentRunError):
    """Raised when too few parallel branches of a step succeeded.

    Context should include:
        - succeeded: Number of successful branches
        - total: Number of branches run
    """

    pass
