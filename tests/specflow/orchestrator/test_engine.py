"""End-to-end tests for the orchestration engine.

Each test drives the engine inside ``asyncio.run`` against the scripted
gateway from conftest.py; jobs finish on their first poll unless scripted
otherwise.
"""

from __future__ import annotations

import asyncio

import pytest

from specflow.orchestrator.config import BudgetConfig, EngineSettings, OrchestrationConfig
from specflow.orchestrator.engine import OrchestrationEngine
from specflow.orchestrator.errors import (
    ConflictError,
    GatewayError,
    InvalidTransitionError,
    ValidationError,
)
from specflow.orchestrator.gateway import JobStatus
from specflow.orchestrator.models import (
    BatchStatus,
    OrchestrationPhase,
    OrchestrationStatus,
    RecoveryOption,
    StepKind,
)
from specflow.orchestrator.planner import Task
from specflow.orchestrator.testing import ScriptedGateway, ScriptedJob

IMPLEMENT_ONLY = {"skip_design": True, "skip_analyze": True}


def actions(execution) -> list[str]:
    return [entry.action for entry in execution.decision_log]


def kinds(gateway: ScriptedGateway) -> list[StepKind]:
    return [request.kind for request in gateway.requests]


class TestHappyPath:
    def test_full_run_stops_at_waiting_merge_then_merges(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)

        async def scenario():
            execution_id = await engine.start(project_id)
            settled = await engine.wait(execution_id)
            merged = await engine.trigger_merge(execution_id)
            assert merged.status is OrchestrationStatus.RUNNING
            return settled, await engine.wait(execution_id)

        settled, final = asyncio.run(scenario())

        assert settled.status is OrchestrationStatus.WAITING_MERGE
        assert settled.phase is OrchestrationPhase.MERGE
        assert [b.section for b in settled.batches] == ["Setup", "Core"]
        assert all(b.status is BatchStatus.COMPLETED for b in settled.batches)
        assert final.status is OrchestrationStatus.COMPLETED
        assert final.phase is OrchestrationPhase.COMPLETE
        assert final.completed_at is not None
        assert kinds(gateway) == [
            StepKind.DESIGN,
            StepKind.ANALYZE,
            StepKind.IMPLEMENT,
            StepKind.IMPLEMENT,
            StepKind.VERIFY,
            StepKind.MERGE,
        ]
        assert "merge_triggered" in actions(final)

    def test_batches_are_scoped_to_their_section(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "additional_context": "Run ruff before finishing."}
            )
            return await engine.wait(execution_id)

        asyncio.run(scenario())

        first, second = gateway.requests_for(StepKind.IMPLEMENT)
        assert first.task_ids == ("T002", "T003")
        assert first.section == "Setup"
        assert 'Execute only the "Setup" section (T002, T003)' in first.prompt
        assert first.prompt.endswith("Run ruff before finishing.")
        assert second.task_ids == ("T004", "T005")

    def test_auto_merge_completes_without_operator(self, engine, source, project_id, section_tasks):
        source.set(project_id, section_tasks)

        async def scenario():
            execution_id = await engine.start(project_id, {"auto_merge": True})
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.COMPLETED
        assert "wait_merge" not in actions(final)

    def test_cost_is_recorded_per_batch_and_phase(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.DESIGN, ScriptedJob(cost_usd=0.25))
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(cost_usd=1.0), ScriptedJob(cost_usd=2.0))

        async def scenario():
            execution_id = await engine.start(project_id)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.cost.total == 3.25
        assert final.cost.per_batch == {0: 1.0, 1: 2.0}
        assert final.cost.per_phase == {"design": 0.25, "implement": 3.0}

    def test_projects_run_independently(self, engine, source, section_tasks, three_sections):
        source.set("alpha", section_tasks)
        source.set("beta", three_sections)

        async def scenario():
            first = await engine.start("alpha", IMPLEMENT_ONLY)
            second = await engine.start("beta", IMPLEMENT_ONLY)
            return await engine.wait(first), await engine.wait(second)

        alpha, beta = asyncio.run(scenario())

        assert alpha.status is OrchestrationStatus.WAITING_MERGE
        assert beta.status is OrchestrationStatus.WAITING_MERGE
        assert beta.total_batches == 3


class TestBoundaries:
    def test_empty_task_list_completes_implement_with_zero_batches(
        self, engine, gateway, source, project_id
    ):
        source.set(project_id, [Task("T001", "done", completed=True)])

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.total_batches == 0
        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert kinds(gateway) == [StepKind.VERIFY]
        assert "implement_complete" in actions(final)

    def test_skip_design_and_analyze_starts_at_implement(
        self, engine, store, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            started = store.get(execution_id)
            await engine.wait(execution_id)
            return started

        started = asyncio.run(scenario())

        assert started.phase is OrchestrationPhase.IMPLEMENT

    def test_all_phases_skipped_waits_for_merge_at_start(self, engine, gateway, project_id):
        config = {
            "skip_design": True,
            "skip_analyze": True,
            "skip_implement": True,
            "skip_verify": True,
        }

        async def scenario():
            execution_id = await engine.start(project_id, config)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert gateway.requests == []

    def test_zero_heal_attempts_goes_straight_to_needs_attention(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE, error="boom"))

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "max_heal_attempts": 0}
            )
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.NEEDS_ATTENTION
        assert final.recovery_context.issue == "execution_failed"
        assert final.recovery_context.batch_index == 0
        assert final.batches[0].heal_attempts == 0
        assert final.batches[0].status is BatchStatus.FAILED
        assert gateway.requests_for(StepKind.HEAL) == []

    def test_invalid_config_persists_nothing(self, engine, store, project_id):
        async def scenario():
            await engine.start(project_id, {"max_heal_attempts": 99})

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

        assert store.list(project_id) == []


class TestHealing:
    def test_failed_batch_is_healed_and_execution_continues(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(
            StepKind.IMPLEMENT,
            ScriptedJob(status=JobStatus.FAILURE, error="tests failed", completes=["T002"]),
        )

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.batches[0].status is BatchStatus.HEALED
        assert final.batches[0].heal_attempts == 1
        assert final.batches[0].healer_refs == ["job-2"]
        assert final.batches[1].status is BatchStatus.COMPLETED
        assert final.status is OrchestrationStatus.WAITING_MERGE

        (heal,) = gateway.requests_for(StepKind.HEAL)
        assert heal.task_ids == ("T003",)
        assert "# Auto-Heal Request" in heal.prompt
        assert "**Completed Before Failure**: T002" in heal.prompt

    def test_unconfirmed_success_times_out_and_is_healed(
        self, store, gateway, probe, source, project_id, section_tasks
    ):
        settings = EngineSettings(poll_interval=0, step_timeout=0, heartbeat_interval=3600)
        engine = OrchestrationEngine(store, gateway, probe, source, settings=settings)
        source.set(project_id, section_tasks)
        # Executor claims success but no task gets checked off
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.SUCCESS, completes=()))

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        failed = next(e for e in final.decision_log if e.action == "batch_failed")
        assert failed.data["timed_out"] is True
        assert final.batches[0].status is BatchStatus.HEALED
        assert gateway.requests_for(StepKind.HEAL)[0].task_ids == ("T002", "T003")

    def test_timed_out_job_is_cancelled_before_healing(
        self, store, gateway, probe, source, project_id
    ):
        settings = EngineSettings(poll_interval=0, step_timeout=0, heartbeat_interval=3600)
        engine = OrchestrationEngine(store, gateway, probe, source, settings=settings)
        source.set(project_id, [Task("T001", "Wire the parser", section="Core")])
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(hold=True))

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert gateway.cancelled == ["job-1"]
        assert not gateway.is_alive("job-1")
        assert final.batches[0].status is BatchStatus.HEALED
        assert kinds(gateway) == [StepKind.IMPLEMENT, StepKind.HEAL, StepKind.VERIFY]

    def test_heal_without_progress_needs_attention_then_skip(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(
            StepKind.IMPLEMENT,
            ScriptedJob(),
            ScriptedJob(status=JobStatus.FAILURE, error="boom"),
        )
        gateway.script(StepKind.HEAL, ScriptedJob(status=JobStatus.FAILURE, error="still broken"))

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            stuck = await engine.wait(execution_id)
            await engine.resume(execution_id, "skip")
            return stuck, await engine.wait(execution_id)

        stuck, final = asyncio.run(scenario())

        assert stuck.status is OrchestrationStatus.NEEDS_ATTENTION
        assert stuck.recovery_context.issue == "heal_failed"
        assert stuck.recovery_context.options == [
            RecoveryOption.RETRY,
            RecoveryOption.SKIP,
            RecoveryOption.ABORT,
        ]
        assert stuck.batches[1].heal_attempts == 1
        assert stuck.batches[1].status is BatchStatus.FAILED

        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert final.batches[1].status is BatchStatus.FAILED
        assert final.recovery_context is None
        assert "skip_batch" in actions(final)
        assert gateway.requests_for(StepKind.VERIFY)

    def test_heal_attempts_never_exceed_the_limit(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))
        gateway.default = ScriptedJob(status=JobStatus.FAILURE, error="no luck")

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "max_heal_attempts": 2}
            )
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.batches[0].heal_attempts == 2
        assert len(gateway.requests_for(StepKind.HEAL)) == 2
        assert final.recovery_context.issue == "heal_failed"

    def test_auto_heal_disabled(self, engine, gateway, source, project_id, section_tasks):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))

        async def scenario():
            execution_id = await engine.start(project_id, {**IMPLEMENT_ONLY, "auto_heal": False})
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.NEEDS_ATTENTION
        assert gateway.requests_for(StepKind.HEAL) == []


class TestBudget:
    def test_budget_exhausted_before_third_batch(
        self, engine, gateway, source, project_id, three_sections
    ):
        source.set(project_id, three_sections)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(cost_usd=1.5), ScriptedJob(cost_usd=1.5))
        config = OrchestrationConfig(
            skip_design=True, skip_analyze=True, budget=BudgetConfig(max_total=3.0)
        )

        async def scenario():
            execution_id = await engine.start(project_id, config)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.NEEDS_ATTENTION
        assert final.recovery_context.issue == "budget_exceeded"
        assert final.recovery_context.options == [RecoveryOption.ABORT]
        assert final.recovery_context.batch_index == 2
        assert final.batches[2].status is BatchStatus.PENDING
        assert len(gateway.requests_for(StepKind.IMPLEMENT)) == 2
        assert final.cost.total == 3.0

    def test_budget_exceeded_only_offers_abort(
        self, engine, gateway, source, project_id, three_sections
    ):
        source.set(project_id, three_sections)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(cost_usd=2.0))
        config = {**IMPLEMENT_ONLY, "budget": {"max_total": 2.0}}

        async def scenario():
            execution_id = await engine.start(project_id, config)
            await engine.wait(execution_id)
            with pytest.raises(InvalidTransitionError):
                await engine.resume(execution_id, "retry")
            return await engine.resume(execution_id, "abort")

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.FAILED
        assert final.completed_at is not None

    def test_heal_over_its_budget_fails_the_batch(
        self, store, gateway, probe, source, project_id, section_tasks
    ):
        settings = EngineSettings(poll_interval=0, step_timeout=60, heartbeat_interval=3600,
                                  estimated_step_cost=0.5)
        engine = OrchestrationEngine(store, gateway, probe, source, settings=settings)
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE, error="boom"))
        config = {**IMPLEMENT_ONLY, "budget": {"healing_budget": 0.1}}

        async def scenario():
            execution_id = await engine.start(project_id, config)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.NEEDS_ATTENTION
        assert final.recovery_context.issue == "budget_exceeded"
        assert final.recovery_context.batch_index == 0
        assert final.batches[0].status is BatchStatus.FAILED
        assert final.batches[0].heal_attempts == 0
        assert gateway.requests_for(StepKind.HEAL) == []


class TestOperatorControl:
    def test_second_start_conflicts(self, engine, gateway, project_id):
        gateway.script(StepKind.DESIGN, ScriptedJob(hold=True))

        async def scenario():
            execution_id = await engine.start(project_id)
            await gateway.wait_for_requests(1)
            with pytest.raises(ConflictError) as excinfo:
                await engine.start(project_id)
            await engine.cancel(execution_id)
            await engine.wait(execution_id)
            return execution_id, excinfo.value

        execution_id, error = asyncio.run(scenario())

        assert error.active_execution_id == execution_id

    def test_cancel_while_job_in_flight(self, engine, store, gateway, project_id):
        gateway.script(StepKind.DESIGN, ScriptedJob(hold=True))

        async def scenario():
            execution_id = await engine.start(project_id)
            await gateway.wait_for_requests(1)
            cancelled = await engine.cancel(execution_id)
            assert cancelled.status is OrchestrationStatus.CANCELLED
            gateway.release()
            final = await engine.wait(execution_id)
            with pytest.raises(InvalidTransitionError):
                await engine.resume(execution_id)
            with pytest.raises(InvalidTransitionError):
                await engine.trigger_merge(execution_id)
            return final

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.CANCELLED
        assert final.phase is OrchestrationPhase.DESIGN
        assert final.in_flight is None
        assert gateway.cancelled == ["job-1"]
        assert "late_result" in actions(final)
        assert len(gateway.requests) == 1

    def test_pause_with_job_in_flight_applies_after_it_resolves(
        self, engine, gateway, project_id
    ):
        gateway.script(StepKind.DESIGN, ScriptedJob(hold=True))

        async def scenario():
            execution_id = await engine.start(project_id)
            await gateway.wait_for_requests(1)
            requested = await engine.pause(execution_id)
            gateway.release()
            paused = await engine.wait(execution_id)
            await engine.resume(execution_id)
            return requested, paused, await engine.wait(execution_id)

        requested, paused, final = asyncio.run(scenario())

        assert requested.status is OrchestrationStatus.RUNNING
        assert requested.pause_requested is True
        assert paused.status is OrchestrationStatus.PAUSED
        assert paused.phase is OrchestrationPhase.ANALYZE
        assert paused.pause_requested is False
        assert final.status is OrchestrationStatus.WAITING_MERGE

    def test_pause_between_batches(self, engine, gateway, source, project_id, section_tasks):
        source.set(project_id, section_tasks)

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "pause_between_batches": True}
            )
            paused = await engine.wait(execution_id)
            await engine.resume(execution_id)
            return paused, await engine.wait(execution_id)

        paused, final = asyncio.run(scenario())

        assert paused.status is OrchestrationStatus.PAUSED
        assert paused.current_batch_index == 1
        assert len(gateway.requests_for(StepKind.IMPLEMENT)) == 2
        assert final.status is OrchestrationStatus.WAITING_MERGE

    def test_resume_outside_paused_or_needs_attention_is_rejected(
        self, engine, store, gateway, project_id
    ):
        gateway.script(StepKind.DESIGN, ScriptedJob(hold=True))

        async def scenario():
            execution_id = await engine.start(project_id)
            await gateway.wait_for_requests(1)
            version = store.version(project_id)
            with pytest.raises(InvalidTransitionError):
                await engine.resume(execution_id)
            unchanged = store.version(project_id) == version
            await engine.cancel(execution_id)
            await engine.wait(execution_id)
            return unchanged

        assert asyncio.run(scenario()) is True

    def test_needs_attention_requires_an_offered_choice(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "max_heal_attempts": 0}
            )
            await engine.wait(execution_id)
            errors = []
            for choice in (None, "later"):
                with pytest.raises(InvalidTransitionError) as excinfo:
                    await engine.resume(execution_id, choice)
                errors.append(str(excinfo.value))
            return errors

        missing, unknown = asyncio.run(scenario())

        assert "retry, skip, abort" in missing
        assert "later" in unknown

    def test_retry_reruns_the_failed_batch(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "max_heal_attempts": 0}
            )
            await engine.wait(execution_id)
            await engine.resume(execution_id, RecoveryOption.RETRY)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert final.batches[0].status is BatchStatus.COMPLETED
        assert [r.task_ids for r in gateway.requests_for(StepKind.IMPLEMENT)] == [
            ("T002", "T003"),
            ("T002", "T003"),
            ("T004", "T005"),
        ]

    def test_trigger_merge_outside_waiting_merge_changes_nothing(
        self, engine, store, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "max_heal_attempts": 0}
            )
            await engine.wait(execution_id)
            before = store.document(project_id).to_dict()
            with pytest.raises(InvalidTransitionError, match="needs_attention"):
                await engine.trigger_merge(execution_id)
            return before, store.document(project_id).to_dict()

        before, after = asyncio.run(scenario())

        assert before == after

    def test_go_back_to_implement_replans_and_keeps_cost(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.default = ScriptedJob(cost_usd=1.0)

        async def scenario():
            execution_id = await engine.start(project_id, IMPLEMENT_ONLY)
            first = await engine.wait(execution_id)
            source.set(project_id, [*section_tasks, Task("T006", "Polish docs", section="Polish")])
            await engine.go_back(execution_id, "implement")
            return first, await engine.wait(execution_id)

        first, final = asyncio.run(scenario())

        assert first.cost.total == 3.0
        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert [b.section for b in final.batches] == ["Setup", "Core", "Polish"]
        assert final.cost.total == 7.0
        assert "go_back" in actions(final)

    def test_go_back_rejects_merge_and_later_phases(
        self, engine, gateway, source, project_id, section_tasks
    ):
        source.set(project_id, section_tasks)
        gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))

        async def scenario():
            execution_id = await engine.start(
                project_id, {**IMPLEMENT_ONLY, "max_heal_attempts": 0}
            )
            await engine.wait(execution_id)
            with pytest.raises(ValidationError):
                await engine.go_back(execution_id, "merge")
            with pytest.raises(InvalidTransitionError, match="ahead"):
                await engine.go_back(execution_id, "verify")

        asyncio.run(scenario())


class TestFailureRouting:
    def test_gateway_start_failure_needs_attention(self, store, probe, source, project_id, settings):
        class BrokenGateway(ScriptedGateway):
            async def start(self, request):
                raise GatewayError("runner not installed")

        engine = OrchestrationEngine(store, BrokenGateway(probe), probe, source, settings=settings)

        async def scenario():
            execution_id = await engine.start(project_id)
            return await engine.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.NEEDS_ATTENTION
        assert final.recovery_context.issue == "execution_failed"
        assert "runner not installed" in final.recovery_context.detail
        assert final.in_flight is None

    def test_failed_phase_job(self, engine, gateway, project_id):
        gateway.script(StepKind.ANALYZE, ScriptedJob(status=JobStatus.FAILURE, error="no plan"))

        async def scenario():
            execution_id = await engine.start(project_id)
            stuck = await engine.wait(execution_id)
            await engine.resume(execution_id, "skip")
            return stuck, await engine.wait(execution_id)

        stuck, final = asyncio.run(scenario())

        assert stuck.phase is OrchestrationPhase.ANALYZE
        assert stuck.recovery_context.failed_ref == "job-2"
        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert "skip_phase" in actions(final)


class TestRestart:
    def test_new_engine_adopts_in_flight_job(
        self, store, gateway, probe, source, project_id, settings
    ):
        gateway.script(StepKind.DESIGN, ScriptedJob(hold=True))
        first = OrchestrationEngine(store, gateway, probe, source, settings=settings)
        second = OrchestrationEngine(store, gateway, probe, source, settings=settings)

        async def scenario():
            execution_id = await first.start(project_id)
            await gateway.wait_for_requests(1)
            await first.close()
            assert store.get(execution_id).in_flight.ref == "job-1"
            assert second.adopt(execution_id) is True
            gateway.release()
            return await second.wait(execution_id)

        final = asyncio.run(scenario())

        assert final.status is OrchestrationStatus.WAITING_MERGE
        assert len(gateway.requests_for(StepKind.DESIGN)) == 1

    def test_adopt_ignores_idle_executions(self, engine, gateway, source, project_id):
        gateway.script(StepKind.DESIGN, ScriptedJob(status=JobStatus.FAILURE))

        async def scenario():
            execution_id = await engine.start(project_id)
            await engine.wait(execution_id)
            return engine.adopt(execution_id)

        assert asyncio.run(scenario()) is False
