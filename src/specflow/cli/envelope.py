"""One-line JSON output for ``specflow orchestrate ... --json``.

Every command prints exactly one object as its last stdout line, so scripts
can read the result with ``tail -n 1``. The payload under ``data`` is the
command's own shape: an execution record for start/status/resume/merge, the
batch plan for ``plan``, findings for ``doctor``.

Failures carry an ``error_code`` chosen from the exception that ended the
command; see ``ERROR_CODES``.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from specflow.orchestrator.errors import (
    ConflictError,
    ExecutionNotFoundError,
    GatewayError,
    InvalidTransitionError,
    OrchestrationError,
    StoreError,
    ValidationError,
)

CONTRACT_VERSION = "1.0.0"
COMMAND_PREFIX = "orchestrate."

# Checked in order; subclasses first
ERROR_CODES: tuple[tuple[type[OrchestrationError], str], ...] = (
    (ConflictError, "CONFLICT"),
    (ValidationError, "VALIDATION_FAILED"),
    (InvalidTransitionError, "INVALID_TRANSITION"),
    (ExecutionNotFoundError, "NOT_FOUND"),
    (StoreError, "STATE_ERROR"),
    (GatewayError, "GATEWAY_ERROR"),
)


def make_envelope(
    command: str,
    success: bool,
    data: dict[str, Any],
    error_code: str | None = None,
) -> dict[str, Any]:
    """Wrap a command result. ``command`` is the subcommand, e.g. "resume"."""
    return {
        "contract_version": CONTRACT_VERSION,
        "command": COMMAND_PREFIX + command,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "correlation_id": f"corr-{uuid.uuid4().hex}",
        "success": success,
        "error_code": error_code,
        "data": data,
    }


def describe_error(exc: OrchestrationError) -> tuple[str, dict[str, Any]]:
    """Return the error code for ``exc`` and the fields it adds to ``data``."""
    code = next((c for kind, c in ERROR_CODES if isinstance(exc, kind)), "ORCHESTRATION_ERROR")
    data: dict[str, Any] = {"message": str(exc)}
    if isinstance(exc, ConflictError):
        data["active_execution_id"] = exc.active_execution_id
    elif isinstance(exc, ValidationError):
        data["errors"] = exc.errors
    elif isinstance(exc, InvalidTransitionError):
        data["status"] = exc.status
    return code, data


def dumps(envelope: dict[str, Any]) -> str:
    return json.dumps(envelope, sort_keys=True)
