"""Startup reconciliation of executions left behind by an unclean shutdown.

For every execution that claims to be ``running`` or ``paused``:

- a job in flight that the executor still reports alive is left untouched
  and reported as adoptable, so the engine can resume polling it;
- a job that is gone, on an execution whose heartbeat is older than the
  staleness threshold, moves the execution to ``needs_attention`` with issue
  ``process_died`` (options retry/abort). The batch it was running is marked
  failed, never completed;
- a running execution with no job in flight and a stale heartbeat is
  surfaced the same way;
- anything with a recent heartbeat is left for the next pass.

Reconciliation is idempotent: a second pass over the same state changes
nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import EngineSettings
from .engine import mark_needs_attention
from .errors import GatewayError, ProcessDied
from .gateway import TaskExecutorGateway
from .models import BatchStatus, OrchestrationExecution, OrchestrationStatus, RecoveryOption
from .store import StateStore

logger = logging.getLogger(__name__)

_CHECKED_STATUSES = frozenset({OrchestrationStatus.RUNNING, OrchestrationStatus.PAUSED})


@dataclass
class ReconcileResult:
    """Result of a reconciliation pass."""

    checked: int = 0
    process_died: list[str] = field(default_factory=list)
    adoptable: list[str] = field(default_factory=list)
    left_alone: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def merge(self, other: ReconcileResult) -> None:
        self.checked += other.checked
        self.process_died.extend(other.process_died)
        self.adoptable.extend(other.adoptable)
        self.left_alone.extend(other.left_alone)
        self.details.extend(other.details)
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, object]:
        return {
            "checked": self.checked,
            "process_died": list(self.process_died),
            "adoptable": list(self.adoptable),
            "left_alone": list(self.left_alone),
            "details": list(self.details),
            "errors": list(self.errors),
        }


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Reconciler:
    """Resolves ambiguity in persisted executions at startup."""

    def __init__(
        self,
        store: StateStore,
        gateway: TaskExecutorGateway,
        *,
        staleness_threshold: float | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.gateway = gateway
        self.staleness_threshold = (
            staleness_threshold
            if staleness_threshold is not None
            else EngineSettings().staleness_threshold
        )
        self._now = now

    def _is_stale(self, execution: OrchestrationExecution, now: datetime) -> bool:
        last = _parse_ts(execution.heartbeat_at) or _parse_ts(execution.updated_at)
        if last is None:
            return True
        return (now - last).total_seconds() >= self.staleness_threshold

    def reconcile_project(self, project_id: str) -> ReconcileResult:
        result = ReconcileResult()
        for execution in self.store.list(project_id):
            if execution.status not in _CHECKED_STATUSES:
                continue
            result.checked += 1
            self._reconcile_one(execution, result)
        return result

    def reconcile_all(self) -> ReconcileResult:
        result = ReconcileResult()
        for project_id in self.store.project_ids():
            result.merge(self.reconcile_project(project_id))
        return result

    def _reconcile_one(self, execution: OrchestrationExecution, result: ReconcileResult) -> None:
        now = self._now()
        in_flight = execution.in_flight

        if in_flight is None:
            if execution.status is OrchestrationStatus.PAUSED or not self._is_stale(execution, now):
                result.left_alone.append(execution.id)
                return
            self._mark_died(execution, None, None, "No job in flight and no recent heartbeat", result)
            return

        ref = in_flight.ref
        alive = False
        if ref is not None:
            try:
                alive = self.gateway.is_alive(ref)
            except GatewayError as exc:
                result.errors.append(f"{execution.id}: liveness check for {ref} failed: {exc}")
                logger.warning("Liveness check for %s failed: %s", ref, exc)
                return

        if alive:
            if execution.status is OrchestrationStatus.RUNNING:
                result.adoptable.append(execution.id)
            else:
                result.left_alone.append(execution.id)
            result.details.append(f"{execution.id}: job {ref} still alive")
            return

        if not self._is_stale(execution, now):
            result.left_alone.append(execution.id)
            result.details.append(
                f"{execution.id}: job {ref} not alive but heartbeat is recent; re-check later"
            )
            return

        self._mark_died(execution, ref, in_flight.batch_index,
                        f"{in_flight.kind} job {ref or '(never started)'} is gone", result)

    def _mark_died(
        self,
        execution: OrchestrationExecution,
        ref: str | None,
        batch_index: int | None,
        reason: str,
        result: ReconcileResult,
    ) -> None:
        stamp = self._now().isoformat()
        expected_ref = ref

        def apply(e: OrchestrationExecution) -> bool:
            current_ref = e.in_flight.ref if e.in_flight else None
            if e.status not in _CHECKED_STATUSES or current_ref != expected_ref:
                return False
            if batch_index is not None:
                batch = e.batches[batch_index]
                if batch.status is BatchStatus.RUNNING:
                    batch.status = BatchStatus.FAILED
            mark_needs_attention(
                e, stamp, ProcessDied.issue,
                detail=reason,
                failed_ref=ref or e.last_execution_ref,
                batch_index=batch_index,
                options=[RecoveryOption.RETRY, RecoveryOption.ABORT],
            )
            return True

        _, changed = self.store.update(execution.project_id, execution.id, apply)
        if changed:
            result.process_died.append(execution.id)
            result.details.append(f"{execution.id}: {reason}")
            logger.warning("Execution %s: %s; needs attention", execution.id, reason)
        else:
            result.left_alone.append(execution.id)
