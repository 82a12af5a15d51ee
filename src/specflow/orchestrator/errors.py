"""Exception taxonomy for the orchestration engine.

Two families live here:

- Caller-facing errors raised by control operations (``ConflictError``,
  ``ValidationError``, ``InvalidTransitionError`` ...). These propagate to the
  caller and never leave a partial mutation behind.
- Routed failures (``RoutedFailure`` subclasses). The engine raises them
  internally while driving a step and converts them into a
  ``needs_attention`` status with a recovery context. They never escape to
  callers of the public API.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""


class ConflictError(OrchestrationError):
    """Raised when a project already has an active execution."""

    def __init__(self, project_id: str, active_execution_id: str):
        self.project_id = project_id
        self.active_execution_id = active_execution_id
        super().__init__(
            f"Project {project_id!r} already has an active execution "
            f"({active_execution_id}); cancel or finish it first"
        )


class ValidationError(OrchestrationError):
    """Raised when orchestration configuration is malformed."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        self.errors = errors or []
        super().__init__(message)


class ConfigValidationError(ValidationError):
    """Raised when the orchestration YAML file cannot be loaded."""


class InvalidTransitionError(OrchestrationError):
    """Raised when a control operation is not valid for the current status."""

    def __init__(self, operation: str, status: str, detail: str | None = None):
        self.operation = operation
        self.status = status
        message = f"Cannot {operation} an execution in status {status!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ExecutionNotFoundError(OrchestrationError):
    """Raised when an execution id is unknown to the state store."""


class StoreError(OrchestrationError):
    """Raised when a persisted state document is corrupted or unreadable."""


class StaleStateError(StoreError):
    """Raised when a compare-and-swap write sees an unexpected version."""

    def __init__(self, project_id: str, expected: int, actual: int):
        self.project_id = project_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State for {project_id!r} is at version {actual}, expected {expected}"
        )


class GatewayError(OrchestrationError):
    """Raised when the task executor cannot start, poll or cancel a job."""


# =============================================================================
# Routed failures
# =============================================================================


class RoutedFailure(OrchestrationError):
    """A step failure the engine turns into ``needs_attention``.

    Attributes:
        issue: Machine-readable issue code stored in the recovery context.
        ref: Executor reference of the job that failed, if any.
    """

    issue = "execution_failed"

    def __init__(
        self,
        message: str,
        *,
        ref: str | None = None,
        issue: str | None = None,
        detail: dict[str, Any] | None = None,
    ):
        self.ref = ref
        if issue is not None:
            self.issue = issue
        self.detail = detail or {}
        super().__init__(message)


class ExecutionFailure(RoutedFailure):
    """The executor reported failure or dual confirmation timed out."""

    issue = "execution_failed"


class BudgetExceeded(RoutedFailure):
    """Starting the next job would exceed a configured budget cap."""

    issue = "budget_exceeded"


class ProcessDied(RoutedFailure):
    """The job behind an active execution is gone."""

    issue = "process_died"


class HealFailure(RoutedFailure):
    """Auto-healing is exhausted or disabled for a failed batch."""

    issue = "heal_failed"


__all__ = [
    "OrchestrationError",
    "ConflictError",
    "ValidationError",
    "ConfigValidationError",
    "InvalidTransitionError",
    "ExecutionNotFoundError",
    "StoreError",
    "StaleStateError",
    "GatewayError",
    "RoutedFailure",
    "ExecutionFailure",
    "BudgetExceeded",
    "ProcessDied",
    "HealFailure",
]
