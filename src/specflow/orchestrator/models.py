"""Orchestration data model.

Defines the closed enums of the state machine (status, phase, batch status,
recovery options, step kinds) and the serializable records the engine
persists: BatchItem, DecisionLogEntry, RecoveryContext, InFlightJob,
CostLedger and OrchestrationExecution.

Every record round-trips through ``to_dict``/``from_dict``. Keys a record does
not know about are kept in ``extra`` and written back unchanged, so a newer
writer's fields survive a read-modify-write by an older reader.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .config import OrchestrationConfig


class OrchestrationStatus(StrEnum):
    """Lifecycle status of an orchestration execution."""

    RUNNING = "running"
    PAUSED = "paused"
    WAITING_MERGE = "waiting_merge"
    NEEDS_ATTENTION = "needs_attention"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrchestrationPhase(StrEnum):
    """Workflow phase an execution is in."""

    DESIGN = "design"
    ANALYZE = "analyze"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    MERGE = "merge"
    COMPLETE = "complete"


class BatchStatus(StrEnum):
    """Status of a single implement batch."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    HEALED = "healed"


class RecoveryOption(StrEnum):
    """Operator choices offered while an execution needs attention."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class StepKind(StrEnum):
    """Kind of job handed to the task executor."""

    DESIGN = "design"
    ANALYZE = "analyze"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    MERGE = "merge"
    HEAL = "heal"


DONE_BATCH_STATUSES: frozenset[BatchStatus] = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.HEALED}
)


def _extra(data: dict[str, Any], known: frozenset[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


# =============================================================================
# Batch items
# =============================================================================


@dataclass
class BatchItem:
    """One batch of the implement phase."""

    index: int
    section: str
    task_ids: list[str]
    status: BatchStatus = BatchStatus.PENDING
    executor_ref: str | None = None
    healer_refs: list[str] = field(default_factory=list)
    heal_attempts: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset(
        {
            "index",
            "section",
            "task_ids",
            "status",
            "executor_ref",
            "healer_refs",
            "heal_attempts",
            "started_at",
            "completed_at",
            "dependencies",
        }
    )

    @property
    def is_done(self) -> bool:
        return self.status in DONE_BATCH_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update(
            {
                "index": self.index,
                "section": self.section,
                "task_ids": list(self.task_ids),
                "status": str(self.status),
                "executor_ref": self.executor_ref,
                "healer_refs": list(self.healer_refs),
                "heal_attempts": self.heal_attempts,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
            }
        )
        if self.dependencies:
            d["dependencies"] = {k: list(v) for k, v in self.dependencies.items()}
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchItem:
        return cls(
            index=int(data["index"]),
            section=data["section"],
            task_ids=list(data["task_ids"]),
            status=BatchStatus(data.get("status", "pending")),
            executor_ref=data.get("executor_ref"),
            healer_refs=list(data.get("healer_refs", [])),
            heal_attempts=int(data.get("heal_attempts", 0)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            dependencies={
                k: list(v) for k, v in (data.get("dependencies") or {}).items()
            },
            extra=_extra(data, cls._KNOWN),
        )


# =============================================================================
# Decision log and recovery context
# =============================================================================


@dataclass(frozen=True)
class DecisionLogEntry:
    """An immutable audit record of one engine decision."""

    timestamp: str
    action: str
    reason: str
    data: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({"timestamp", "action", "reason", "data"})

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update(
            {
                "timestamp": self.timestamp,
                "action": self.action,
                "reason": self.reason,
            }
        )
        if self.data is not None:
            d["data"] = dict(self.data)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionLogEntry:
        return cls(
            timestamp=data["timestamp"],
            action=data["action"],
            reason=data.get("reason", ""),
            data=data.get("data"),
            extra=_extra(data, cls._KNOWN),
        )


@dataclass
class RecoveryContext:
    """Why an execution needs attention and what the operator may do."""

    issue: str
    options: list[RecoveryOption]
    failed_ref: str | None = None
    batch_index: int | None = None
    detail: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({"issue", "options", "failed_ref", "batch_index", "detail"})

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update(
            {
                "issue": self.issue,
                "options": [str(o) for o in self.options],
                "failed_ref": self.failed_ref,
                "batch_index": self.batch_index,
                "detail": self.detail,
            }
        )
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryContext:
        return cls(
            issue=data["issue"],
            options=[RecoveryOption(o) for o in data.get("options", [])],
            failed_ref=data.get("failed_ref"),
            batch_index=data.get("batch_index"),
            detail=data.get("detail"),
            extra=_extra(data, cls._KNOWN),
        )


@dataclass
class InFlightJob:
    """A gateway job whose terminal result has not been recorded yet.

    ``ref`` is None between reserving the slot and the executor handing back
    a reference.
    """

    ref: str | None
    kind: StepKind
    started_at: str
    batch_index: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({"ref", "kind", "started_at", "batch_index"})

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update(
            {
                "ref": self.ref,
                "kind": str(self.kind),
                "started_at": self.started_at,
                "batch_index": self.batch_index,
            }
        )
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InFlightJob:
        return cls(
            ref=data.get("ref"),
            kind=StepKind(data["kind"]),
            started_at=data["started_at"],
            batch_index=data.get("batch_index"),
            extra=_extra(data, cls._KNOWN),
        )


# =============================================================================
# Cost ledger
# =============================================================================


@dataclass
class CostLedger:
    """Accumulated spend in USD, by batch, by phase and for healing."""

    total: float = 0.0
    per_batch: dict[int, float] = field(default_factory=dict)
    per_phase: dict[str, float] = field(default_factory=dict)
    heal: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({"total", "per_batch", "per_phase", "heal"})

    def record(
        self,
        amount: float,
        phase: OrchestrationPhase,
        *,
        batch_index: int | None = None,
        heal: bool = False,
    ) -> None:
        if amount <= 0:
            return
        self.total = round(self.total + amount, 6)
        key = str(phase)
        self.per_phase[key] = round(self.per_phase.get(key, 0.0) + amount, 6)
        if batch_index is not None:
            self.per_batch[batch_index] = round(
                self.per_batch.get(batch_index, 0.0) + amount, 6
            )
        if heal:
            self.heal = round(self.heal + amount, 6)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        # JSON object keys are strings
        d.update(
            {
                "total": self.total,
                "per_batch": {str(k): v for k, v in sorted(self.per_batch.items())},
                "per_phase": dict(self.per_phase),
                "heal": self.heal,
            }
        )
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CostLedger:
        return cls(
            total=float(data.get("total", 0.0)),
            per_batch={int(k): float(v) for k, v in (data.get("per_batch") or {}).items()},
            per_phase={k: float(v) for k, v in (data.get("per_phase") or {}).items()},
            heal=float(data.get("heal", 0.0)),
            extra=_extra(data, cls._KNOWN),
        )


# =============================================================================
# Execution
# =============================================================================


@dataclass
class OrchestrationExecution:
    """One orchestration run for a project, active or historical."""

    id: str
    project_id: str
    status: OrchestrationStatus
    phase: OrchestrationPhase
    config: OrchestrationConfig
    started_at: str
    updated_at: str
    batches: list[BatchItem] = field(default_factory=list)
    current_batch_index: int = 0
    cost: CostLedger = field(default_factory=CostLedger)
    decision_log: list[DecisionLogEntry] = field(default_factory=list)
    last_execution_ref: str | None = None
    in_flight: InFlightJob | None = None
    pause_requested: bool = False
    recovery_context: RecoveryContext | None = None
    error_message: str | None = None
    completed_at: str | None = None
    heartbeat_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset(
        {
            "id",
            "project_id",
            "status",
            "phase",
            "config",
            "started_at",
            "updated_at",
            "batches",
            "total_batches",
            "current_batch_index",
            "cost",
            "decision_log",
            "last_execution_ref",
            "in_flight",
            "pause_requested",
            "recovery_context",
            "error_message",
            "completed_at",
            "heartbeat_at",
        }
    )

    @property
    def total_batches(self) -> int:
        return len(self.batches)

    @property
    def current_batch(self) -> BatchItem | None:
        if 0 <= self.current_batch_index < len(self.batches):
            return self.batches[self.current_batch_index]
        return None

    @property
    def is_active(self) -> bool:
        from .phases import ACTIVE_STATUSES

        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        from .phases import TERMINAL_STATUSES

        return self.status in TERMINAL_STATUSES

    def log(
        self,
        timestamp: str,
        action: str,
        reason: str,
        data: dict[str, Any] | None = None,
    ) -> DecisionLogEntry:
        """Append a decision log entry and return it."""
        entry = DecisionLogEntry(
            timestamp=timestamp, action=action, reason=reason, data=data
        )
        self.decision_log.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update(
            {
                "id": self.id,
                "project_id": self.project_id,
                "status": str(self.status),
                "phase": str(self.phase),
                "config": self.config.to_dict(),
                "started_at": self.started_at,
                "updated_at": self.updated_at,
                "completed_at": self.completed_at,
                "heartbeat_at": self.heartbeat_at,
                "batches": [b.to_dict() for b in self.batches],
                "total_batches": self.total_batches,
                "current_batch_index": self.current_batch_index,
                "cost": self.cost.to_dict(),
                "decision_log": [e.to_dict() for e in self.decision_log],
                "last_execution_ref": self.last_execution_ref,
                "in_flight": self.in_flight.to_dict() if self.in_flight else None,
                "pause_requested": self.pause_requested,
                "recovery_context": (
                    self.recovery_context.to_dict() if self.recovery_context else None
                ),
                "error_message": self.error_message,
            }
        )
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationExecution:
        in_flight = data.get("in_flight")
        recovery = data.get("recovery_context")
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            status=OrchestrationStatus(data["status"]),
            phase=OrchestrationPhase(data["phase"]),
            config=OrchestrationConfig.from_dict(data.get("config") or {}),
            started_at=data["started_at"],
            updated_at=data.get("updated_at", data["started_at"]),
            completed_at=data.get("completed_at"),
            heartbeat_at=data.get("heartbeat_at"),
            batches=[BatchItem.from_dict(b) for b in data.get("batches", [])],
            current_batch_index=int(data.get("current_batch_index", 0)),
            cost=CostLedger.from_dict(data.get("cost") or {}),
            decision_log=[
                DecisionLogEntry.from_dict(e) for e in data.get("decision_log", [])
            ],
            last_execution_ref=data.get("last_execution_ref"),
            in_flight=InFlightJob.from_dict(in_flight) if in_flight else None,
            pause_requested=bool(data.get("pause_requested", False)),
            recovery_context=RecoveryContext.from_dict(recovery) if recovery else None,
            error_message=data.get("error_message"),
            extra=_extra(data, cls._KNOWN),
        )
