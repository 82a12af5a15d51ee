"""Orchestration engine.

Drives one execution per project through
design -> analyze -> implement -> verify -> merge -> complete.

Each execution gets a background asyncio task (its "driver") that:
1. Re-reads the persisted execution and stops unless it is ``running``.
2. Runs the unit of work the current phase calls for: one job for design,
   analyze, verify and merge; one job per batch during implement.
3. Waits for dual confirmation: the executor reports success AND the
   independent probe agrees. Disagreement is polled until the step timeout,
   then counts as failure.
4. Records the outcome through the state store and loops.

Batch failures go through bounded healing. Anything that exhausts a bound
(heal attempts, budget, timeouts, dead processes) parks the execution in
``needs_attention`` with a recovery context until an operator resumes it.

Every state change goes through ``StateStore.update`` and re-checks the
persisted status first, so an operator's ``cancel()`` always wins over a
result that arrives later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any, TypeVar

from ulid import ULID

from .config import EngineSettings, OrchestrationConfig
from .errors import (
    BudgetExceeded,
    ExecutionFailure,
    GatewayError,
    HealFailure,
    InvalidTransitionError,
    ProcessDied,
    RoutedFailure,
    ValidationError,
)
from .gateway import JobOutcome, TaskExecutorGateway, build_step_request, wait_for_job
from .healing import (
    FailureContext,
    HealingCoordinator,
    HealOutcome,
    HealStatus,
    healing_summary,
)
from .models import (
    BatchItem,
    BatchStatus,
    InFlightJob,
    OrchestrationExecution,
    OrchestrationPhase,
    OrchestrationStatus,
    RecoveryContext,
    RecoveryOption,
    StepKind,
)
from .phases import next_phase, phase_index, starting_phase
from .planner import BatchPlan, Task, TaskSource, plan_batches, summarize_plan
from .probe import StateProbe
from .store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_SKIP_ABORT = (RecoveryOption.RETRY, RecoveryOption.SKIP, RecoveryOption.ABORT)

RECOVERY_OPTIONS: dict[str, tuple[RecoveryOption, ...]] = {
    ExecutionFailure.issue: _RETRY_SKIP_ABORT,
    "timeout": _RETRY_SKIP_ABORT,
    HealFailure.issue: _RETRY_SKIP_ABORT,
    BudgetExceeded.issue: (RecoveryOption.ABORT,),
    ProcessDied.issue: (RecoveryOption.RETRY, RecoveryOption.ABORT),
    "engine_error": (RecoveryOption.RETRY, RecoveryOption.ABORT),
}

GO_BACK_PHASES: frozenset[OrchestrationPhase] = frozenset(
    {
        OrchestrationPhase.DESIGN,
        OrchestrationPhase.ANALYZE,
        OrchestrationPhase.IMPLEMENT,
        OrchestrationPhase.VERIFY,
    }
)

_S = OrchestrationStatus


def _now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# State helpers (pure; applied inside store mutators)
# =============================================================================


def batches_from_plan(plan: BatchPlan) -> list[BatchItem]:
    return [
        BatchItem(
            index=i,
            section=planned.name,
            task_ids=list(planned.task_ids),
            dependencies=dict(planned.dependencies),
        )
        for i, planned in enumerate(plan.batches)
    ]


def check_budget(
    execution: OrchestrationExecution,
    estimate: float,
    category_cap: float | None = None,
    category: str = "step",
) -> str | None:
    """Return why the next job may not start, or None if it fits the budget.

    A cap that recorded spending has already met counts as exhausted.
    """
    budget = execution.config.budget
    total = execution.cost.total
    if total + estimate > budget.max_total or (
        budget.max_total > 0 and total >= budget.max_total
    ):
        return (
            f"Total spend ${total:.2f} leaves no room under max_total "
            f"${budget.max_total:.2f} for the next {category}"
        )
    if category_cap is not None and estimate > category_cap:
        return (
            f"Estimated {category} cost ${estimate:.2f} exceeds its cap "
            f"${category_cap:.2f}"
        )
    return None


def mark_needs_attention(
    execution: OrchestrationExecution,
    now: str,
    issue: str,
    *,
    detail: str | None = None,
    failed_ref: str | None = None,
    batch_index: int | None = None,
    options: Iterable[RecoveryOption] | None = None,
) -> None:
    """Park an execution until an operator picks a recovery option."""
    chosen = list(options if options is not None else RECOVERY_OPTIONS.get(issue, _RETRY_SKIP_ABORT))
    execution.status = _S.NEEDS_ATTENTION
    execution.in_flight = None
    execution.pause_requested = False
    execution.error_message = detail
    execution.recovery_context = RecoveryContext(
        issue=issue,
        options=chosen,
        failed_ref=failed_ref,
        batch_index=batch_index,
        detail=detail,
    )
    execution.log(
        now,
        "needs_attention",
        detail or issue,
        {
            "issue": issue,
            "options": [str(o) for o in chosen],
            "failed_ref": failed_ref,
            "batch_index": batch_index,
        },
    )


def advance_phase(execution: OrchestrationExecution, now: str) -> OrchestrationPhase:
    """Move to the next phase and set the status that phase starts in."""
    current = execution.phase
    target = next_phase(current, execution.config)
    execution.phase = target

    if target is OrchestrationPhase.COMPLETE:
        execution.status = _S.COMPLETED
        execution.completed_at = now
        execution.log(now, "complete", f"All phases finished after {current}")
    elif target is OrchestrationPhase.MERGE and not execution.config.auto_merge:
        execution.status = _S.WAITING_MERGE
        execution.log(now, "wait_merge", "Merge requires an explicit trigger")
    else:
        execution.status = _S.RUNNING
        execution.log(now, "transition", f"{current} -> {target}")
    return target


def apply_pause_request(execution: OrchestrationExecution, now: str) -> None:
    """Honor a pause requested while a job was in flight."""
    if not execution.pause_requested:
        return
    execution.pause_requested = False
    if execution.status is _S.RUNNING:
        execution.status = _S.PAUSED
        execution.log(now, "pause", "Paused after the in-flight job resolved")


# =============================================================================
# Engine
# =============================================================================


class OrchestrationEngine:
    """Runs and controls orchestration executions.

    Args:
        store: Durable execution state
        gateway: Task executor
        probe: Independent project state probe
        task_source: Supplies the task list snapshot at start
        healer: Healing coordinator (built from gateway and probe if omitted)
        settings: Polling and timeout settings
        clock: Returns the current time as an ISO-8601 string
        monotonic: Monotonic seconds, for timeouts
    """

    def __init__(
        self,
        store: StateStore,
        gateway: TaskExecutorGateway,
        probe: StateProbe,
        task_source: TaskSource,
        *,
        healer: HealingCoordinator | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], str] = _now_utc,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.gateway = gateway
        self.probe = probe
        self.task_source = task_source
        self.settings = settings or EngineSettings()
        self.healer = healer or HealingCoordinator(
            gateway, probe, self.settings, monotonic=monotonic
        )
        self._clock = clock
        self._monotonic = monotonic
        self._locks: dict[str, asyncio.Lock] = {}
        self._drivers: dict[str, asyncio.Task[None]] = {}
        self._projects: dict[str, str] = {}

    # -- plumbing -----------------------------------------------------------

    def _project_of(self, execution_id: str) -> str:
        project_id = self._projects.get(execution_id)
        if project_id is None:
            project_id = self.store.get(execution_id).project_id
            self._projects[execution_id] = project_id
        return project_id

    def _load(self, execution_id: str) -> OrchestrationExecution:
        return self.store.get(execution_id, self._project_of(execution_id))

    async def _mutate(
        self,
        execution_id: str,
        mutator: Callable[[OrchestrationExecution], T],
    ) -> tuple[OrchestrationExecution, T]:
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        async with lock:
            return self.store.update(self._project_of(execution_id), execution_id, mutator)

    def _ensure_driver(self, execution_id: str) -> None:
        previous = self._drivers.get(execution_id)
        if previous is not None and not previous.done():
            task = asyncio.create_task(self._drive_after(previous, execution_id))
        else:
            task = asyncio.create_task(self._drive(execution_id))
        self._drivers[execution_id] = task

    async def _drive_after(self, previous: asyncio.Task[None], execution_id: str) -> None:
        await asyncio.wait({previous})
        await self._drive(execution_id)

    def _is_cancelled(self, execution_id: str) -> bool:
        return self._load(execution_id).status is _S.CANCELLED

    # -- control surface ----------------------------------------------------

    async def start(
        self,
        project_id: str,
        config: OrchestrationConfig | dict[str, Any] | None = None,
        *,
        tasks: Iterable[Task] | None = None,
    ) -> str:
        """Start a new execution for ``project_id`` and begin driving it.

        Raises:
            ValidationError: If ``config`` is malformed (nothing is persisted)
            ConflictError: If the project already has an active execution
        """
        if config is None:
            config = OrchestrationConfig()
        elif isinstance(config, dict):
            config = OrchestrationConfig.from_dict(config)
        elif not isinstance(config, OrchestrationConfig):
            raise ValidationError(f"Unsupported config type {type(config).__name__}")

        task_list = list(tasks) if tasks is not None else self.task_source.load(project_id)
        plan = plan_batches(task_list, config.batch_size_fallback)

        now = self._clock()
        phase = starting_phase(config)
        execution = OrchestrationExecution(
            id=str(ULID()),
            project_id=project_id,
            status=_S.RUNNING,
            phase=phase,
            config=config,
            started_at=now,
            updated_at=now,
            heartbeat_at=now,
            batches=batches_from_plan(plan),
        )
        execution.log(
            now,
            "start",
            f"Starting at {phase}: {summarize_plan(plan)}",
            {"batches": len(plan.batches), "warnings": list(plan.warnings)},
        )
        if phase is OrchestrationPhase.MERGE and not config.auto_merge:
            execution.status = _S.WAITING_MERGE
            execution.log(now, "wait_merge", "Merge requires an explicit trigger")
        self.store.create(execution)
        self._projects[execution.id] = project_id
        logger.info(
            "Started execution %s for %s at %s (%d batches)",
            execution.id, project_id, phase, execution.total_batches,
        )
        self._ensure_driver(execution.id)
        return execution.id

    async def pause(self, execution_id: str) -> OrchestrationExecution:
        """Pause a running execution.

        With a job in flight the pause is recorded and applied once that job's
        outcome has been recorded; otherwise it applies immediately.
        """
        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            if e.status is not _S.RUNNING:
                raise InvalidTransitionError("pause", str(e.status))
            if e.in_flight is not None:
                e.pause_requested = True
                e.log(now, "pause_requested", "Pause applies once the in-flight job resolves",
                      {"ref": e.in_flight.ref})
                return
            e.status = _S.PAUSED
            e.log(now, "pause", "Paused by operator")

        execution, _ = await self._mutate(execution_id, apply)
        logger.info("Pause requested for %s (status %s)", execution_id, execution.status)
        return execution

    async def resume(
        self, execution_id: str, choice: RecoveryOption | str | None = None
    ) -> OrchestrationExecution:
        """Resume a paused execution or apply a recovery choice.

        Args:
            execution_id: Execution to resume
            choice: Required when the execution needs attention; must be one
                of ``recovery_context.options``

        Raises:
            InvalidTransitionError: If the execution is not paused or
                needs_attention, or the choice is missing or not offered
        """
        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            if e.status is _S.PAUSED:
                e.status = _S.RUNNING
                e.pause_requested = False
                e.log(now, "resume", "Resumed by operator")
                return
            if e.status is not _S.NEEDS_ATTENTION:
                raise InvalidTransitionError("resume", str(e.status))

            context = e.recovery_context
            offered = list(context.options) if context else list(_RETRY_SKIP_ABORT)
            if choice is None:
                raise InvalidTransitionError(
                    "resume", str(e.status),
                    "a recovery choice is required: " + ", ".join(offered),
                )
            try:
                option = RecoveryOption(choice)
            except ValueError:
                raise InvalidTransitionError(
                    "resume", str(e.status), f"unknown recovery choice {choice!r}"
                ) from None
            if option not in offered:
                raise InvalidTransitionError(
                    "resume", str(e.status),
                    f"{option} is not offered (options: {', '.join(offered)})",
                )
            self._apply_recovery(e, option, now)

        execution, _ = await self._mutate(execution_id, apply)
        logger.info("Resumed %s, now %s", execution_id, execution.status)
        if execution.status is _S.RUNNING:
            self._ensure_driver(execution_id)
        return execution

    def _apply_recovery(
        self, e: OrchestrationExecution, option: RecoveryOption, now: str
    ) -> None:
        context = e.recovery_context
        batch_index = context.batch_index if context else None
        issue = context.issue if context else None
        e.recovery_context = None
        e.error_message = None

        if option is RecoveryOption.ABORT:
            e.status = _S.FAILED
            e.completed_at = now
            e.log(now, "abort", f"Aborted by operator after {issue}")
            return

        batch = None
        if e.phase is OrchestrationPhase.IMPLEMENT and batch_index is not None:
            batch = e.batches[batch_index]

        if option is RecoveryOption.RETRY:
            e.status = _S.RUNNING
            if batch is not None:
                batch.status = BatchStatus.PENDING
                batch.completed_at = None
                e.current_batch_index = batch_index
            e.log(now, "retry", f"Retrying after {issue}", {"batch_index": batch_index})
            return

        # skip
        if batch is not None:
            batch.status = BatchStatus.FAILED
            e.current_batch_index = batch_index + 1
            e.status = _S.RUNNING
            e.log(now, "skip_batch", f"Skipping batch {batch_index} ({batch.section})",
                  {"task_ids": list(batch.task_ids)})
            return
        skipped = e.phase
        e.log(now, "skip_phase", f"Skipping {skipped} after {issue}")
        advance_phase(e, now)

    async def cancel(self, execution_id: str) -> OrchestrationExecution:
        """Cancel an active execution.

        Returns immediately; the in-flight job, if any, gets a best-effort
        cancel. Everything recorded so far is kept.
        """
        now = self._clock()

        def apply(e: OrchestrationExecution) -> str | None:
            if not e.is_active:
                raise InvalidTransitionError("cancel", str(e.status))
            ref = e.in_flight.ref if e.in_flight else None
            e.status = _S.CANCELLED
            e.completed_at = now
            e.pause_requested = False
            e.recovery_context = None
            e.log(now, "cancel", "Cancelled by operator", {"in_flight_ref": ref})
            return ref

        execution, ref = await self._mutate(execution_id, apply)
        if ref is not None:
            await self._cancel_job(ref)
        logger.info("Cancelled %s", execution_id)
        return execution

    async def _cancel_job(self, ref: str) -> None:
        try:
            await self.gateway.cancel(ref)
        except GatewayError as exc:
            logger.warning("Could not cancel job %s: %s", ref, exc)

    async def trigger_merge(self, execution_id: str) -> OrchestrationExecution:
        """Start the merge step of an execution waiting for it."""
        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            if e.status is not _S.WAITING_MERGE:
                raise InvalidTransitionError("trigger merge for", str(e.status))
            e.status = _S.RUNNING
            e.phase = OrchestrationPhase.MERGE
            e.log(now, "merge_triggered", "Merge triggered by operator")

        execution, _ = await self._mutate(execution_id, apply)
        self._ensure_driver(execution_id)
        return execution

    async def go_back(
        self, execution_id: str, phase: OrchestrationPhase | str
    ) -> OrchestrationExecution:
        """Return an idle execution to an earlier phase.

        Going back to implement or earlier re-plans batches from the current
        task list. Recorded cost is kept.
        """
        try:
            target = OrchestrationPhase(phase)
        except ValueError:
            raise ValidationError(f"Unknown phase {phase!r}") from None
        if target not in GO_BACK_PHASES:
            raise ValidationError(f"Cannot go back to {target}")

        replan = phase_index(target) <= phase_index(OrchestrationPhase.IMPLEMENT)
        batches: list[BatchItem] | None = None
        if replan:
            project_id = self._project_of(execution_id)
            current = self._load(execution_id)
            plan = plan_batches(
                self.task_source.load(project_id), current.config.batch_size_fallback
            )
            batches = batches_from_plan(plan)
        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            if e.status not in (_S.PAUSED, _S.NEEDS_ATTENTION, _S.WAITING_MERGE):
                raise InvalidTransitionError("go back with", str(e.status))
            if phase_index(target) > phase_index(e.phase):
                raise InvalidTransitionError(
                    "go back with", str(e.status), f"{target} is ahead of {e.phase}"
                )
            previous = e.phase
            e.phase = target
            e.status = _S.RUNNING
            e.recovery_context = None
            e.error_message = None
            e.pause_requested = False
            data: dict[str, Any] = {"from": str(previous), "to": str(target)}
            if batches is not None:
                e.batches = batches
                e.current_batch_index = 0
                data["batches"] = len(batches)
            e.log(now, "go_back", f"Returning from {previous} to {target}", data)

        execution, _ = await self._mutate(execution_id, apply)
        self._ensure_driver(execution_id)
        return execution

    def status(self, execution_id: str) -> OrchestrationExecution:
        return self._load(execution_id)

    def list(self, project_id: str) -> list[OrchestrationExecution]:
        return self.store.list(project_id)

    def adopt(self, execution_id: str) -> bool:
        """Resume driving a running execution, e.g. after a restart.

        Must be called from within a running event loop.

        Returns:
            True if a driver was started
        """
        execution = self._load(execution_id)
        if execution.status is not _S.RUNNING:
            return False
        self._ensure_driver(execution_id)
        return True

    async def wait(self, execution_id: str) -> OrchestrationExecution:
        """Wait until the execution's driver stops, then return its state.

        Re-raises an unexpected error that stopped the driver.
        """
        while True:
            task = self._drivers.get(execution_id)
            if task is None:
                break
            if not task.done():
                await asyncio.wait({task})
                continue
            task.result()
            break
        return self._load(execution_id)

    async def close(self) -> None:
        """Stop all drivers without changing persisted state."""
        tasks = [t for t in self._drivers.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- driving loop -------------------------------------------------------

    async def _drive(self, execution_id: str) -> None:
        while True:
            execution = self._load(execution_id)
            if execution.status is not _S.RUNNING:
                return
            try:
                await self._step(execution)
            except RoutedFailure as failure:
                await self._route_failure(execution_id, failure)
            except Exception as exc:
                logger.exception("Driver for %s stopped on an unexpected error", execution_id)
                await self._route_failure(
                    execution_id,
                    ExecutionFailure(f"Engine error: {exc}", issue="engine_error"),
                )
                raise

    async def _route_failure(self, execution_id: str, failure: RoutedFailure) -> None:
        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            if e.status not in (_S.RUNNING, _S.PAUSED):
                e.log(now, "failure_ignored", str(failure), {"issue": failure.issue})
                return
            mark_needs_attention(
                e, now, failure.issue,
                detail=str(failure),
                failed_ref=failure.ref,
                batch_index=failure.detail.get("batch_index"),
            )

        await self._mutate(execution_id, apply)
        logger.warning("Execution %s needs attention: %s (%s)", execution_id, failure, failure.issue)

    async def _step(self, execution: OrchestrationExecution) -> None:
        in_flight = execution.in_flight
        if in_flight is not None and in_flight.ref is None:
            await self._discard_unstarted(execution.id)
            return
        if in_flight is not None and in_flight.kind is StepKind.HEAL:
            await self._adopt_heal(execution, in_flight)
            return

        if execution.phase is OrchestrationPhase.COMPLETE:
            now = self._clock()

            def finish(e: OrchestrationExecution) -> None:
                if e.status is _S.RUNNING:
                    e.status = _S.COMPLETED
                    e.completed_at = now
                    e.log(now, "complete", "Execution complete")

            await self._mutate(execution.id, finish)
        elif execution.phase is OrchestrationPhase.IMPLEMENT:
            await self._step_implement(execution)
        else:
            await self._step_phase(execution)

    async def _discard_unstarted(self, execution_id: str) -> None:
        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            if e.in_flight is not None and e.in_flight.ref is None:
                e.log(now, "discard_unstarted", "Job start was interrupted; starting again",
                      {"kind": str(e.in_flight.kind)})
                e.in_flight = None

        await self._mutate(execution_id, apply)

    # -- job lifecycle --------------------------------------------------------

    async def _run_job(
        self,
        execution: OrchestrationExecution,
        kind: StepKind,
        *,
        confirm: Callable[[], Awaitable[bool]],
        request_factory: Callable[[], Any],
        batch_index: int | None = None,
        category_cap: float | None = None,
        category: str = "step",
    ) -> JobOutcome | None:
        """Start (or adopt) a job and wait for dual confirmation.

        Returns:
            The job outcome, or None if the execution stopped running before
            the job could start
        """
        in_flight = execution.in_flight
        if (
            in_flight is not None
            and in_flight.ref is not None
            and in_flight.kind is kind
            and in_flight.batch_index == batch_index
        ):
            logger.info("Adopting in-flight %s job %s", kind, in_flight.ref)
            return await self._wait(execution.id, in_flight.ref, confirm)

        ref = await self._start_job(
            execution.id, kind, request_factory(),
            batch_index=batch_index, category_cap=category_cap, category=category,
        )
        if ref is None:
            return None
        return await self._wait(execution.id, ref, confirm)

    async def _start_job(
        self,
        execution_id: str,
        kind: StepKind,
        request: Any,
        *,
        batch_index: int | None,
        category_cap: float | None,
        category: str,
    ) -> str | None:
        now = self._clock()
        estimate = self.settings.estimated_step_cost

        def reserve(e: OrchestrationExecution) -> bool:
            if e.status is not _S.RUNNING:
                return False
            reason = check_budget(e, estimate, category_cap, category)
            if reason is not None:
                raise BudgetExceeded(reason, detail={"batch_index": batch_index})
            e.in_flight = InFlightJob(ref=None, kind=kind, started_at=now, batch_index=batch_index)
            if kind is StepKind.IMPLEMENT and batch_index is not None:
                batch = e.batches[batch_index]
                batch.status = BatchStatus.RUNNING
                batch.started_at = now
            return True

        _, reserved = await self._mutate(execution_id, reserve)
        if not reserved:
            return None

        try:
            ref = await self.gateway.start(request)
        except GatewayError as exc:
            def release(e: OrchestrationExecution) -> None:
                e.in_flight = None

            await self._mutate(execution_id, release)
            raise ExecutionFailure(
                f"Could not start {kind} job: {exc}", detail={"batch_index": batch_index}
            ) from exc

        started = self._clock()

        def record(e: OrchestrationExecution) -> bool:
            if e.in_flight is not None:
                e.in_flight.ref = ref
            e.last_execution_ref = ref
            e.heartbeat_at = started
            if kind is StepKind.IMPLEMENT and batch_index is not None:
                e.batches[batch_index].executor_ref = ref
            e.log(started, "spawn", f"Started {kind} job",
                  {"ref": ref, "batch_index": batch_index})
            return e.status is _S.RUNNING

        _, still_running = await self._mutate(execution_id, record)
        if not still_running:
            # Cancelled while the job was starting
            await self._cancel_job(ref)
        return ref

    async def _wait(
        self,
        execution_id: str,
        ref: str,
        confirm: Callable[[], Awaitable[bool]],
    ) -> JobOutcome:
        last_beat = self._monotonic()

        def heartbeat(_result: Any) -> None:
            nonlocal last_beat
            if self._monotonic() - last_beat < self.settings.heartbeat_interval:
                return
            last_beat = self._monotonic()
            beat = self._clock()

            def touch(e: OrchestrationExecution) -> None:
                e.heartbeat_at = beat

            self.store.update(self._project_of(execution_id), execution_id, touch)

        outcome = await wait_for_job(
            self.gateway,
            ref,
            confirm=confirm,
            timeout=self.settings.step_timeout,
            poll_interval=self.settings.poll_interval,
            should_stop=lambda: self._is_cancelled(execution_id),
            on_poll=heartbeat,
            monotonic=self._monotonic,
        )
        if outcome.timed_out:
            # The job must be gone before its failure is routed
            logger.warning("Job %s timed out after %ss; cancelling", ref, self.settings.step_timeout)
            await self._cancel_job(ref)
        return outcome

    def _late_result(self, e: OrchestrationExecution, now: str, outcome: JobOutcome) -> None:
        e.log(
            now,
            "late_result",
            f"Job finished after the execution became {e.status}; recorded for audit only",
            {"ref": outcome.ref, "succeeded": outcome.succeeded, "error": outcome.error},
        )

    # -- non-batched phases ---------------------------------------------------

    async def _step_phase(self, execution: OrchestrationExecution) -> None:
        phase = execution.phase
        kind = StepKind(str(phase))
        project_id = execution.project_id

        async def confirm() -> bool:
            return await self.probe.phase_complete(project_id, phase)

        def request_factory():
            return build_step_request(
                kind,
                project_id=project_id,
                execution_id=execution.id,
                additional_context=execution.config.additional_context,
            )

        outcome = await self._run_job(
            execution, kind, confirm=confirm, request_factory=request_factory
        )
        if outcome is None:
            return

        now = self._clock()

        def apply(e: OrchestrationExecution) -> None:
            e.in_flight = None
            e.cost.record(outcome.cost_usd, phase)
            if e.status is not _S.RUNNING:
                self._late_result(e, now, outcome)
                return
            if outcome.succeeded:
                e.log(now, "phase_completed", f"{phase} confirmed by executor and project state",
                      {"ref": outcome.ref, "cost_usd": outcome.cost_usd})
                advance_phase(e, now)
                apply_pause_request(e, now)
                return
            mark_needs_attention(
                e, now, "timeout" if outcome.timed_out else "execution_failed",
                detail=f"{phase} failed: {outcome.error}",
                failed_ref=outcome.ref,
            )

        execution, _ = await self._mutate(execution.id, apply)
        logger.info("Phase %s of %s finished; status %s", phase, execution.id, execution.status)

    # -- implement phase ------------------------------------------------------

    async def _step_implement(self, execution: OrchestrationExecution) -> None:
        index = execution.current_batch_index
        now = self._clock()

        if index >= execution.total_batches:
            def finish(e: OrchestrationExecution) -> None:
                if e.status is not _S.RUNNING:
                    return
                reason = (
                    f"All {e.total_batches} batches done"
                    if e.batches
                    else "No incomplete tasks; nothing to implement"
                )
                e.log(now, "implement_complete", reason)
                advance_phase(e, now)
                apply_pause_request(e, now)

            await self._mutate(execution.id, finish)
            return

        batch = execution.batches[index]
        if batch.is_done or (batch.status is BatchStatus.FAILED and execution.in_flight is None):
            def skip_done(e: OrchestrationExecution) -> None:
                if e.status is _S.RUNNING and e.current_batch_index == index:
                    e.current_batch_index = index + 1

            await self._mutate(execution.id, skip_done)
            return

        project_id = execution.project_id
        task_ids = tuple(batch.task_ids)

        async def confirm() -> bool:
            done = await self.probe.completed_tasks(project_id, task_ids)
            return len(done) == len(task_ids)

        def request_factory():
            return build_step_request(
                StepKind.IMPLEMENT,
                project_id=project_id,
                execution_id=execution.id,
                additional_context=execution.config.additional_context,
                task_ids=task_ids,
                section=batch.section,
                max_budget_usd=execution.config.budget.max_per_batch,
            )

        outcome = await self._run_job(
            execution, StepKind.IMPLEMENT,
            confirm=confirm,
            request_factory=request_factory,
            batch_index=index,
            category_cap=execution.config.budget.max_per_batch,
            category="batch",
        )
        if outcome is None:
            return

        now = self._clock()

        def record(e: OrchestrationExecution) -> bool:
            e.in_flight = None
            e.cost.record(outcome.cost_usd, OrchestrationPhase.IMPLEMENT, batch_index=index)
            if e.status is not _S.RUNNING:
                self._late_result(e, now, outcome)
                return False
            if outcome.succeeded:
                b = e.batches[index]
                b.status = BatchStatus.COMPLETED
                b.completed_at = now
                e.current_batch_index = index + 1
                e.log(now, "batch_completed", f"Batch {index} ({b.section}) confirmed complete",
                      {"ref": outcome.ref, "cost_usd": outcome.cost_usd})
                self._after_batch(e, now)
                return False
            e.error_message = outcome.error
            e.log(now, "batch_failed", f"Batch {index} failed: {outcome.error}",
                  {"ref": outcome.ref, "timed_out": outcome.timed_out})
            return True

        _, failed = await self._mutate(execution.id, record)
        if not failed:
            return

        done = await self.probe.completed_tasks(project_id, task_ids)
        failure = FailureContext(
            error_message=outcome.error or "Batch failed",
            section=batch.section,
            attempted_task_ids=task_ids,
            completed_task_ids=tuple(t for t in task_ids if t in done),
            remaining_task_ids=tuple(t for t in task_ids if t not in done),
            stderr=outcome.stderr,
            failed_ref=outcome.ref,
        )
        await self._heal_batch(execution.id, index, failure)

    def _after_batch(self, e: OrchestrationExecution, now: str) -> None:
        more = e.current_batch_index < e.total_batches
        if more and e.config.pause_between_batches:
            e.pause_requested = False
            e.status = _S.PAUSED
            e.log(now, "pause", "Pausing between batches")
            return
        apply_pause_request(e, now)

    async def _heal_batch(self, execution_id: str, index: int, failure: FailureContext) -> None:
        """Run healing attempts until the batch heals or attempts run out."""
        while True:
            execution = self._load(execution_id)
            if execution.status is not _S.RUNNING:
                return
            config = execution.config
            batch = execution.batches[index]
            now = self._clock()

            if not config.auto_heal or batch.heal_attempts >= config.max_heal_attempts:
                attempts = batch.heal_attempts

                def give_up(e: OrchestrationExecution) -> None:
                    if e.status is not _S.RUNNING:
                        return
                    e.batches[index].status = BatchStatus.FAILED
                    issue = HealFailure.issue if attempts else ExecutionFailure.issue
                    mark_needs_attention(
                        e, now, issue,
                        detail=(
                            f"Batch {index} ({failure.section}) failed after "
                            f"{attempts} heal attempt(s): {failure.error_message}"
                        ),
                        failed_ref=failure.failed_ref,
                        batch_index=index,
                    )

                await self._mutate(execution_id, give_up)
                return

            if execution.pause_requested:
                def pause(e: OrchestrationExecution) -> None:
                    apply_pause_request(e, now)

                await self._mutate(execution_id, pause)
                return

            estimate = self.settings.estimated_step_cost

            def reserve(e: OrchestrationExecution) -> bool:
                if e.status is not _S.RUNNING:
                    return False
                reason = check_budget(e, estimate, e.config.budget.healing_budget, "heal")
                if reason is not None:
                    # Raising would abort the write, so park the batch here
                    e.batches[index].status = BatchStatus.FAILED
                    mark_needs_attention(
                        e, now, BudgetExceeded.issue,
                        detail=reason,
                        failed_ref=failure.failed_ref,
                        batch_index=index,
                    )
                    return False
                b = e.batches[index]
                b.heal_attempts += 1
                e.in_flight = InFlightJob(ref=None, kind=StepKind.HEAL,
                                          started_at=now, batch_index=index)
                e.log(now, "heal_attempt",
                      f"Healing batch {index}, attempt {b.heal_attempts} of "
                      f"{e.config.max_heal_attempts}",
                      {"remaining": list(failure.remaining_task_ids)})
                return True

            execution, reserved = await self._mutate(execution_id, reserve)
            if not reserved:
                return

            async def on_start(ref: str) -> None:
                started = self._clock()

                def record(e: OrchestrationExecution) -> bool:
                    if e.in_flight is not None:
                        e.in_flight.ref = ref
                    e.last_execution_ref = ref
                    e.heartbeat_at = started
                    e.batches[index].healer_refs.append(ref)
                    return e.status is _S.RUNNING

                _, running = await self._mutate(execution_id, record)
                if not running:
                    await self._cancel_job(ref)

            outcome = await self.healer.heal(
                execution, index, failure,
                on_start=on_start,
                should_stop=lambda: self._is_cancelled(execution_id),
            )
            if await self._record_heal(execution_id, index, outcome):
                return
            failure = outcome.context

    async def _record_heal(self, execution_id: str, index: int, outcome: HealOutcome) -> bool:
        """Record a heal attempt. Returns True when healing should stop."""
        now = self._clock()

        def apply(e: OrchestrationExecution) -> bool:
            e.in_flight = None
            e.cost.record(outcome.cost_usd, OrchestrationPhase.IMPLEMENT,
                          batch_index=index, heal=True)
            summary = healing_summary(outcome)
            if e.status is not _S.RUNNING:
                e.log(now, "late_result", f"Heal finished after the execution became "
                      f"{e.status}; recorded for audit only: {summary}", {"ref": outcome.ref})
                return True
            if outcome.healed:
                b = e.batches[index]
                b.status = BatchStatus.HEALED
                b.completed_at = now
                e.current_batch_index = index + 1
                e.error_message = None
                e.log(now, "batch_healed", summary, {"ref": outcome.ref})
                self._after_batch(e, now)
                return True
            e.log(now, "heal_failed", summary,
                  {"ref": outcome.ref, "remaining": list(outcome.remaining_task_ids)})
            return False

        _, stop = await self._mutate(execution_id, apply)
        return stop

    async def _adopt_heal(self, execution: OrchestrationExecution, in_flight: InFlightJob) -> None:
        """Finish waiting on a heal job that outlived a previous engine."""
        index = in_flight.batch_index if in_flight.batch_index is not None else execution.current_batch_index
        batch = execution.batches[index]
        project_id = execution.project_id
        task_ids = tuple(batch.task_ids)
        done_before = set(await self.probe.completed_tasks(project_id, task_ids))
        remaining = tuple(t for t in task_ids if t not in done_before)

        async def confirm() -> bool:
            done = await self.probe.completed_tasks(project_id, remaining)
            return len(done) == len(remaining)

        logger.info("Adopting in-flight heal job %s for batch %s", in_flight.ref, index)
        job = await self._wait(execution.id, in_flight.ref, confirm)
        done_after = set(await self.probe.completed_tasks(project_id, task_ids))
        context = FailureContext(
            error_message=job.error or execution.error_message or "Batch failed",
            section=batch.section,
            attempted_task_ids=task_ids,
            completed_task_ids=tuple(t for t in task_ids if t in done_after),
            remaining_task_ids=tuple(t for t in task_ids if t not in done_after),
            stderr=job.stderr,
            failed_ref=job.ref,
        )
        outcome = HealOutcome(
            healed=job.succeeded,
            status=(
                HealStatus.FIXED if job.succeeded
                else HealStatus.PARTIAL if done_after - done_before
                else HealStatus.FAILED
            ),
            context=context,
            ref=job.ref,
            cost_usd=job.cost_usd,
            error=job.error,
            newly_completed=[t for t in remaining if t in done_after],
        )
        if not await self._record_heal(execution.id, index, outcome):
            await self._heal_batch(execution.id, index, context)
