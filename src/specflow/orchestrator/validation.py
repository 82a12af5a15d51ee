"""Execution doctor: consistency checks over persisted executions.

Reports problems and recommends actions but NEVER modifies state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from .models import BatchStatus, OrchestrationExecution, OrchestrationStatus
from .phases import ACTIVE_STATUSES, TERMINAL_STATUSES


class Severity(StrEnum):
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Finding:
    """A single consistency finding."""

    severity: Severity
    code: str
    message: str
    recommended_action: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "severity": str(self.severity),
            "code": self.code,
            "message": self.message,
            "recommended_action": self.recommended_action,
        }


@dataclass
class DoctorResult:
    """Findings for one project."""

    project_id: str
    findings: list[Finding] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(f.severity == Severity.ERROR for f in self.findings)

    @property
    def is_healthy(self) -> bool:
        return len(self.findings) == 0


def validate_execution(execution: OrchestrationExecution) -> list[Finding]:
    """Check one execution for internal inconsistencies."""
    findings: list[Finding] = []

    def add(severity: Severity, code: str, message: str, action: str = "") -> None:
        findings.append(Finding(severity, code, f"{execution.id}: {message}", action))

    seen: set[str] = set()
    for position, batch in enumerate(execution.batches):
        if batch.index != position:
            add(Severity.ERROR, "BATCH_INDEX_MISMATCH",
                f"batch at position {position} has index {batch.index}")
        if not batch.task_ids:
            add(Severity.ERROR, "EMPTY_BATCH", f"batch {position} has no tasks")
        overlap = seen.intersection(batch.task_ids)
        if overlap:
            add(Severity.ERROR, "OVERLAPPING_BATCHES",
                f"tasks {', '.join(sorted(overlap))} appear in more than one batch")
        seen.update(batch.task_ids)
        if batch.heal_attempts > execution.config.max_heal_attempts:
            add(Severity.ERROR, "HEAL_ATTEMPTS_EXCEEDED",
                f"batch {position} has {batch.heal_attempts} heal attempts, "
                f"limit is {execution.config.max_heal_attempts}")

    if execution.current_batch_index > execution.total_batches:
        add(Severity.ERROR, "BATCH_CURSOR_OUT_OF_RANGE",
            f"current batch {execution.current_batch_index} exceeds "
            f"{execution.total_batches} batches")

    running = [b.index for b in execution.batches if b.status is BatchStatus.RUNNING]
    if len(running) > 1:
        add(Severity.WARNING, "MULTIPLE_RUNNING_BATCHES",
            f"batches {running} are all marked running")

    needs_attention = execution.status is OrchestrationStatus.NEEDS_ATTENTION
    if needs_attention and execution.recovery_context is None:
        add(Severity.ERROR, "MISSING_RECOVERY_CONTEXT",
            "needs attention but carries no recovery context",
            "Resume with --choice abort or cancel the execution")
    if not needs_attention and execution.recovery_context is not None:
        add(Severity.WARNING, "STALE_RECOVERY_CONTEXT",
            f"recovery context present while {execution.status}")

    if execution.status in TERMINAL_STATUSES and execution.completed_at is None:
        add(Severity.WARNING, "MISSING_COMPLETED_AT",
            f"{execution.status} without completed_at")
    if execution.status in ACTIVE_STATUSES and execution.completed_at is not None:
        add(Severity.WARNING, "UNEXPECTED_COMPLETED_AT",
            f"{execution.status} but completed_at is set")

    if execution.in_flight is not None and execution.status in (
        OrchestrationStatus.WAITING_MERGE,
        OrchestrationStatus.NEEDS_ATTENTION,
    ):
        add(Severity.WARNING, "ORPHAN_IN_FLIGHT_JOB",
            f"job {execution.in_flight.ref} recorded in flight while {execution.status}",
            "Run 'specflow orchestrate reconcile'")

    return findings


def run_doctor(project_id: str, executions: list[OrchestrationExecution]) -> DoctorResult:
    """Check every execution of a project, including single-flight."""
    result = DoctorResult(project_id=project_id)
    active = [e.id for e in executions if e.status in ACTIVE_STATUSES]
    if len(active) > 1:
        result.findings.append(
            Finding(
                Severity.ERROR,
                "MULTIPLE_ACTIVE_EXECUTIONS",
                f"{project_id}: {len(active)} active executions ({', '.join(active)})",
                "Cancel all but one execution",
            )
        )
    for execution in executions:
        result.findings.extend(validate_execution(execution))
    return result
