"""Phase order, status transition matrix and transition validation.

Phases run in a fixed order (design -> analyze -> implement -> verify ->
merge -> complete). Skip flags in the config remove phases from that order;
merge and complete are never skipped.

Status changes are restricted to the pairs in ``ALLOWED_TRANSITIONS``.
Terminal statuses have no outgoing edges, which is what keeps a cancelled
execution from ever being resurrected.
"""

from __future__ import annotations

from .config import OrchestrationConfig
from .models import OrchestrationPhase, OrchestrationStatus

PHASE_ORDER: tuple[OrchestrationPhase, ...] = (
    OrchestrationPhase.DESIGN,
    OrchestrationPhase.ANALYZE,
    OrchestrationPhase.IMPLEMENT,
    OrchestrationPhase.VERIFY,
    OrchestrationPhase.MERGE,
    OrchestrationPhase.COMPLETE,
)

ACTIVE_STATUSES: frozenset[OrchestrationStatus] = frozenset(
    {
        OrchestrationStatus.RUNNING,
        OrchestrationStatus.PAUSED,
        OrchestrationStatus.WAITING_MERGE,
        OrchestrationStatus.NEEDS_ATTENTION,
    }
)

TERMINAL_STATUSES: frozenset[OrchestrationStatus] = frozenset(
    {
        OrchestrationStatus.COMPLETED,
        OrchestrationStatus.FAILED,
        OrchestrationStatus.CANCELLED,
    }
)

_S = OrchestrationStatus

ALLOWED_TRANSITIONS: frozenset[tuple[OrchestrationStatus, OrchestrationStatus]] = frozenset(
    {
        (_S.RUNNING, _S.PAUSED),
        (_S.RUNNING, _S.WAITING_MERGE),
        (_S.RUNNING, _S.NEEDS_ATTENTION),
        (_S.RUNNING, _S.COMPLETED),
        (_S.RUNNING, _S.FAILED),
        (_S.RUNNING, _S.CANCELLED),
        (_S.PAUSED, _S.RUNNING),
        (_S.PAUSED, _S.NEEDS_ATTENTION),
        (_S.PAUSED, _S.CANCELLED),
        (_S.WAITING_MERGE, _S.RUNNING),
        (_S.WAITING_MERGE, _S.CANCELLED),
        (_S.NEEDS_ATTENTION, _S.RUNNING),
        (_S.NEEDS_ATTENTION, _S.WAITING_MERGE),
        (_S.NEEDS_ATTENTION, _S.COMPLETED),
        (_S.NEEDS_ATTENTION, _S.FAILED),
        (_S.NEEDS_ATTENTION, _S.CANCELLED),
    }
)

# Phases that can be skipped, keyed to the config flag that skips them
_SKIP_FLAGS: dict[OrchestrationPhase, str] = {
    OrchestrationPhase.DESIGN: "skip_design",
    OrchestrationPhase.ANALYZE: "skip_analyze",
    OrchestrationPhase.IMPLEMENT: "skip_implement",
    OrchestrationPhase.VERIFY: "skip_verify",
}


def is_skipped(phase: OrchestrationPhase, config: OrchestrationConfig) -> bool:
    """Check whether the config skips ``phase``."""
    flag = _SKIP_FLAGS.get(phase)
    return bool(flag and getattr(config, flag))


def starting_phase(config: OrchestrationConfig) -> OrchestrationPhase:
    """First phase an execution runs, honoring skip flags."""
    for phase in PHASE_ORDER:
        if not is_skipped(phase, config):
            return phase
    return OrchestrationPhase.MERGE


def next_phase(
    current: OrchestrationPhase, config: OrchestrationConfig
) -> OrchestrationPhase:
    """Phase that follows ``current``, honoring skip flags.

    ``complete`` is its own successor.
    """
    if current is OrchestrationPhase.COMPLETE:
        return current
    index = PHASE_ORDER.index(current)
    for phase in PHASE_ORDER[index + 1 :]:
        if not is_skipped(phase, config):
            return phase
    return OrchestrationPhase.COMPLETE


def phase_index(phase: OrchestrationPhase) -> int:
    return PHASE_ORDER.index(phase)


def validate_status_transition(
    from_status: OrchestrationStatus, to_status: OrchestrationStatus
) -> tuple[bool, str | None]:
    """Validate a status change against the transition matrix.

    Returns:
        (ok, error_message) where error_message is None when ok
    """
    if from_status == to_status:
        return True, None
    if from_status in TERMINAL_STATUSES:
        return False, f"Execution is already {from_status}; no further transitions"
    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        return False, f"Illegal transition: {from_status} -> {to_status}"
    return True, None
