"""Tests for the state store and its backends."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from specflow.orchestrator.config import OrchestrationConfig
from specflow.orchestrator.errors import (
    ConflictError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    StaleStateError,
    StoreError,
)
from specflow.orchestrator.models import (
    BatchItem,
    OrchestrationExecution,
    OrchestrationPhase,
    OrchestrationStatus,
)
from specflow.orchestrator.store import FileBackend, MemoryBackend, StateStore

NOW = "2026-01-01T00:00:00+00:00"


def new_execution(execution_id: str, project_id: str = "demo", **overrides) -> OrchestrationExecution:
    fields = {
        "id": execution_id,
        "project_id": project_id,
        "status": OrchestrationStatus.RUNNING,
        "phase": OrchestrationPhase.DESIGN,
        "config": OrchestrationConfig(),
        "started_at": NOW,
        "updated_at": NOW,
        "batches": [BatchItem(index=0, section="Setup", task_ids=["T001"])],
    }
    fields.update(overrides)
    return OrchestrationExecution(**fields)


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path: Path) -> StateStore:
    if request.param == "memory":
        return StateStore(MemoryBackend(), clock=lambda: NOW)
    return StateStore(FileBackend(tmp_path / "state"), clock=lambda: NOW)


class TestCreateAndRead:
    def test_round_trip_preserves_status_and_decision_log(self, any_store: StateStore):
        execution = new_execution("exec-1")
        execution.log(NOW, "start", "Starting at design", {"batches": 1})
        execution.log(NOW, "spawn", "Started design job", {"ref": "job-1"})
        any_store.create(execution)

        loaded = any_store.get("exec-1")

        assert loaded.status is OrchestrationStatus.RUNNING
        assert loaded.decision_log == execution.decision_log
        assert loaded.to_dict() == execution.to_dict()

    def test_single_flight(self, any_store: StateStore):
        any_store.create(new_execution("exec-1"))

        with pytest.raises(ConflictError) as excinfo:
            any_store.create(new_execution("exec-2"))

        assert excinfo.value.active_execution_id == "exec-1"
        assert [e.id for e in any_store.list("demo")] == ["exec-1"]

    def test_terminal_execution_does_not_block_a_new_one(self, any_store: StateStore):
        any_store.create(new_execution("exec-1", status=OrchestrationStatus.COMPLETED))

        any_store.create(new_execution("exec-2"))

        assert any_store.find_active("demo").id == "exec-2"

    def test_projects_are_independent(self, any_store: StateStore):
        any_store.create(new_execution("exec-1", project_id="alpha"))
        any_store.create(new_execution("exec-2", project_id="beta"))

        assert sorted(any_store.project_ids()) == ["alpha", "beta"]
        assert any_store.get("exec-2").project_id == "beta"

    def test_unknown_execution(self, any_store: StateStore):
        with pytest.raises(ExecutionNotFoundError):
            any_store.get("missing", "demo")


class TestUpdate:
    def test_update_bumps_version_and_returns_mutator_result(self, any_store: StateStore):
        any_store.create(new_execution("exec-1"))
        before = any_store.version("demo")

        def mutate(e: OrchestrationExecution) -> str:
            e.status = OrchestrationStatus.PAUSED
            return "paused"

        execution, result = any_store.update("demo", "exec-1", mutate)

        assert result == "paused"
        assert execution.status is OrchestrationStatus.PAUSED
        assert any_store.version("demo") == before + 1
        assert any_store.get("exec-1").status is OrchestrationStatus.PAUSED

    def test_compare_and_swap(self, any_store: StateStore):
        any_store.create(new_execution("exec-1"))
        version = any_store.version("demo")

        any_store.update("demo", "exec-1", lambda e: None, expected_version=version)
        with pytest.raises(StaleStateError) as excinfo:
            any_store.update("demo", "exec-1", lambda e: None, expected_version=version)

        assert excinfo.value.expected == version
        assert excinfo.value.actual == version + 1

    def test_rejects_leaving_a_terminal_status(self, any_store: StateStore):
        any_store.create(new_execution("exec-1", status=OrchestrationStatus.CANCELLED))

        def revive(e: OrchestrationExecution) -> None:
            e.status = OrchestrationStatus.RUNNING

        with pytest.raises(InvalidTransitionError):
            any_store.update("demo", "exec-1", revive)

        assert any_store.get("exec-1").status is OrchestrationStatus.CANCELLED

    def test_mutator_error_aborts_the_write(self, any_store: StateStore):
        any_store.create(new_execution("exec-1"))
        version = any_store.version("demo")

        def broken(e: OrchestrationExecution) -> None:
            e.status = OrchestrationStatus.PAUSED
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            any_store.update("demo", "exec-1", broken)

        assert any_store.version("demo") == version
        assert any_store.get("exec-1").status is OrchestrationStatus.RUNNING


class TestNotifications:
    def test_listeners_see_every_write(self, any_store: StateStore):
        seen: list[tuple[str, int]] = []
        any_store.subscribe(lambda pid, doc: seen.append((pid, doc["version"])))

        any_store.create(new_execution("exec-1"))
        any_store.update("demo", "exec-1", lambda e: None)

        assert seen == [("demo", 1), ("demo", 2)]

    def test_failing_listener_does_not_block_persistence(self, any_store: StateStore):
        def explode(pid, doc):
            raise ValueError("listener bug")

        seen: list[str] = []
        any_store.subscribe(explode)
        any_store.subscribe(lambda pid, doc: seen.append(pid))

        any_store.create(new_execution("exec-1"))

        assert any_store.get("exec-1").id == "exec-1"
        assert seen == ["demo"]

    def test_unsubscribe(self, any_store: StateStore):
        seen: list[str] = []
        unsubscribe = any_store.subscribe(lambda pid, doc: seen.append(pid))
        unsubscribe()

        any_store.create(new_execution("exec-1"))

        assert seen == []


class TestFileBackend:
    def test_document_layout(self, tmp_path: Path):
        backend = FileBackend(tmp_path)
        store = StateStore(backend, clock=lambda: NOW)
        store.create(new_execution("exec-1"))

        raw = backend.path_for("demo").read_text(encoding="utf-8")
        data = json.loads(raw)

        assert raw.endswith("\n")
        assert data["schema_version"] == 1
        assert data["project_id"] == "demo"
        assert data["version"] == 1
        assert data["executions"][0]["id"] == "exec-1"
        assert not list(tmp_path.glob("*.tmp"))

    def test_unknown_keys_survive_a_write(self, tmp_path: Path):
        backend = FileBackend(tmp_path)
        store = StateStore(backend, clock=lambda: NOW)
        store.create(new_execution("exec-1"))

        path = backend.path_for("demo")
        data = json.loads(path.read_text(encoding="utf-8"))
        data["owner"] = "platform"
        data["executions"][0]["labels"] = ["nightly"]
        data["executions"][0]["batches"][0]["reviewer"] = "alice"
        record = data["executions"][0]
        record["decision_log"] = [
            {"timestamp": NOW, "action": "start", "reason": "Started", "actor": "operator-x"}
        ]
        record["cost"]["currency"] = "USD"
        record["in_flight"] = {
            "ref": "job-1", "kind": "design", "started_at": NOW, "batch_index": None, "pid": 4242,
        }
        record["recovery_context"] = {
            "issue": "timeout", "options": ["retry", "abort"], "ticket": "OPS-7",
        }
        path.write_text(json.dumps(data), encoding="utf-8")

        store.update("demo", "exec-1", lambda e: setattr(e, "status", OrchestrationStatus.PAUSED))

        data = json.loads(path.read_text(encoding="utf-8"))
        record = data["executions"][0]
        assert data["owner"] == "platform"
        assert record["labels"] == ["nightly"]
        assert record["batches"][0]["reviewer"] == "alice"
        assert record["status"] == "paused"
        assert record["decision_log"][0]["actor"] == "operator-x"
        assert record["cost"]["currency"] == "USD"
        assert record["in_flight"]["pid"] == 4242
        assert record["recovery_context"]["ticket"] == "OPS-7"

    def test_corrupt_document_raises_store_error(self, tmp_path: Path):
        backend = FileBackend(tmp_path)
        backend.path_for("demo").write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreError, match="Invalid JSON"):
            StateStore(backend).list("demo")

    def test_newer_schema_is_refused(self, tmp_path: Path):
        backend = FileBackend(tmp_path)
        backend.path_for("demo").write_text(
            json.dumps({"schema_version": 99, "project_id": "demo", "executions": []}),
            encoding="utf-8",
        )

        with pytest.raises(StoreError, match="schema_version"):
            StateStore(backend).list("demo")

    def test_project_id_is_sanitized_for_the_file_name(self, tmp_path: Path):
        backend = FileBackend(tmp_path)

        assert backend.path_for("team/app one").name == "team_app_one.json"
