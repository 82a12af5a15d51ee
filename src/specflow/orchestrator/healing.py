"""Bounded auto-healing of failed batches.

When a batch fails, the engine asks the ``HealingCoordinator`` for exactly
one recovery attempt scoped to the tasks of that batch that are still
incomplete. The coordinator builds a recovery request, runs one ``heal`` job
under the healing budget, and reports whether the batch is now healed.

The coordinator never loops and never touches attempt counters: the engine
decides whether another attempt is allowed and increments
``heal_attempts`` before each call.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from .config import EngineSettings
from .errors import GatewayError
from .gateway import TaskExecutorGateway, build_step_request, wait_for_job
from .models import OrchestrationExecution, StepKind
from .probe import StateProbe

logger = logging.getLogger(__name__)

STDERR_LIMIT = 2000


class HealStatus(StrEnum):
    FIXED = "fixed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class FailureContext:
    """What is known about a failed batch."""

    error_message: str
    section: str
    attempted_task_ids: tuple[str, ...]
    completed_task_ids: tuple[str, ...] = ()
    remaining_task_ids: tuple[str, ...] = ()
    stderr: str = ""
    failed_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_message": self.error_message,
            "section": self.section,
            "attempted_task_ids": list(self.attempted_task_ids),
            "completed_task_ids": list(self.completed_task_ids),
            "remaining_task_ids": list(self.remaining_task_ids),
            "failed_ref": self.failed_ref,
        }


@dataclass
class HealOutcome:
    """Result of one healing attempt."""

    healed: bool
    status: HealStatus
    context: FailureContext
    ref: str | None = None
    cost_usd: float = 0.0
    error: str | None = None
    newly_completed: list[str] = field(default_factory=list)

    @property
    def remaining_task_ids(self) -> tuple[str, ...]:
        return self.context.remaining_task_ids


def build_heal_prompt(failure: FailureContext) -> str:
    """Markdown recovery request for the healer."""
    completed = ", ".join(failure.completed_task_ids) or "None"
    remaining = ", ".join(failure.remaining_task_ids)
    lines = [
        "# Auto-Heal Request",
        "",
        "A batch implementation failed and needs recovery. "
        "Complete the remaining tasks.",
        "",
        "## Failure Details",
        "",
        f"**Section**: {failure.section}",
        f"**Error**: {failure.error_message}",
    ]
    if failure.stderr:
        lines += ["", "**Stderr**:", "```", failure.stderr[:STDERR_LIMIT], "```"]
    lines += [
        "",
        "## Task Status",
        "",
        f"**Attempted Tasks**: {', '.join(failure.attempted_task_ids)}",
        f"**Completed Before Failure**: {completed}",
        f"**Tasks Needing Completion**: {remaining}",
        "",
        "## Instructions",
        "",
        "1. Analyze the error and fix its root cause.",
        "2. Implement only the tasks listed as needing completion.",
        "3. Verify the fix; do not introduce new failures.",
        "",
        f"Focus ONLY on: {remaining}",
        "Do NOT re-implement already completed tasks.",
    ]
    return "\n".join(lines)


def healing_summary(outcome: HealOutcome) -> str:
    if outcome.status is HealStatus.FIXED:
        return f"Healed: completed {len(outcome.newly_completed)} tasks"
    if outcome.status is HealStatus.PARTIAL:
        return (
            f"Partial: completed {len(outcome.newly_completed)}, "
            f"remaining {len(outcome.remaining_task_ids)}"
        )
    return f"Failed: {outcome.error or 'unknown reason'}"


class HealingCoordinator:
    """Runs single, budget-capped healing attempts."""

    def __init__(
        self,
        gateway: TaskExecutorGateway,
        probe: StateProbe,
        settings: EngineSettings | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.probe = probe
        self.settings = settings or EngineSettings()
        self._monotonic = monotonic

    async def heal(
        self,
        execution: OrchestrationExecution,
        batch_index: int,
        failure: FailureContext,
        *,
        on_start: Callable[[str], Awaitable[None]] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> HealOutcome:
        """Make one healing attempt for ``execution.batches[batch_index]``.

        Args:
            execution: Snapshot of the execution being healed
            batch_index: Index of the failed batch
            failure: Failure context; ``remaining_task_ids`` scopes the attempt
            on_start: Awaited with the job ref right after the job starts
            should_stop: Returns True once the result is no longer wanted

        Returns:
            HealOutcome with ``healed`` True only when the job succeeded and
            the probe confirms every remaining task complete
        """
        remaining = tuple(failure.remaining_task_ids)
        if not remaining:
            return HealOutcome(healed=True, status=HealStatus.FIXED, context=failure)

        project_id = execution.project_id
        request = build_step_request(
            StepKind.HEAL,
            project_id=project_id,
            execution_id=execution.id,
            additional_context=execution.config.additional_context,
            task_ids=remaining,
            section=failure.section,
            max_budget_usd=execution.config.budget.healing_budget,
            body=build_heal_prompt(failure),
        )

        try:
            ref = await self.gateway.start(request)
        except GatewayError as exc:
            logger.warning("Could not start healer for batch %s: %s", batch_index, exc)
            return HealOutcome(
                healed=False, status=HealStatus.FAILED, context=failure, error=str(exc)
            )

        logger.info(
            "Healing batch %s of %s with job %s (%d tasks)",
            batch_index, execution.id, ref, len(remaining),
        )
        if on_start is not None:
            await on_start(ref)

        async def confirm() -> bool:
            done = await self.probe.completed_tasks(project_id, remaining)
            return len(done) == len(remaining)

        outcome = await wait_for_job(
            self.gateway,
            ref,
            confirm=confirm,
            timeout=self.settings.step_timeout,
            poll_interval=self.settings.poll_interval,
            should_stop=should_stop,
            monotonic=self._monotonic,
        )
        if outcome.timed_out:
            logger.warning("Healer %s for batch %s timed out; cancelling", ref, batch_index)
            try:
                await self.gateway.cancel(ref)
            except GatewayError as exc:
                logger.warning("Could not cancel healer %s: %s", ref, exc)

        done = set(await self.probe.completed_tasks(project_id, remaining))
        newly_completed = [tid for tid in remaining if tid in done]
        still_remaining = tuple(tid for tid in remaining if tid not in done)
        context = replace(
            failure,
            completed_task_ids=tuple(failure.completed_task_ids) + tuple(newly_completed),
            remaining_task_ids=still_remaining,
            error_message=outcome.error or failure.error_message,
            stderr=outcome.stderr or failure.stderr,
            failed_ref=ref,
        )

        if outcome.succeeded:
            status = HealStatus.FIXED
        elif newly_completed:
            status = HealStatus.PARTIAL
        else:
            status = HealStatus.FAILED

        result = HealOutcome(
            healed=outcome.succeeded,
            status=status,
            context=context,
            ref=ref,
            cost_usd=outcome.cost_usd,
            error=outcome.error,
            newly_completed=newly_completed,
        )
        logger.info("Batch %s: %s", batch_index, healing_summary(result))
        return result
