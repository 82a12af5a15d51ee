"""Pytest fixtures for orchestrator tests.

Everything runs in memory: a MemoryBackend store, a ScriptedGateway whose
jobs update a FakeProbe, and a StaticTaskSource. Engine settings poll
without sleeping so scripted runs finish in a handful of event-loop ticks.
"""

from __future__ import annotations

import pytest

from specflow.orchestrator.config import EngineSettings
from specflow.orchestrator.engine import OrchestrationEngine
from specflow.orchestrator.planner import Task
from specflow.orchestrator.store import MemoryBackend, StateStore
from specflow.orchestrator.testing import FakeProbe, ScriptedGateway, StaticTaskSource

PROJECT_ID = "demo"


@pytest.fixture
def project_id() -> str:
    return PROJECT_ID


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        poll_interval=0,
        step_timeout=60,
        heartbeat_interval=3600,
        staleness_threshold=300,
    )


@pytest.fixture
def store() -> StateStore:
    return StateStore(MemoryBackend())


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def gateway(probe: FakeProbe) -> ScriptedGateway:
    return ScriptedGateway(probe)


@pytest.fixture
def source() -> StaticTaskSource:
    return StaticTaskSource()


@pytest.fixture
def engine(store, gateway, probe, source, settings) -> OrchestrationEngine:
    return OrchestrationEngine(store, gateway, probe, source, settings=settings)


@pytest.fixture
def section_tasks() -> list[Task]:
    """Two sections with two incomplete tasks each, plus one finished task."""
    return [
        Task("T001", "Create project skeleton", completed=True, section="Setup"),
        Task("T002", "Add configuration loader", section="Setup"),
        Task("T003", "Add settings model", section="Setup", dependencies=("T002",)),
        Task("T004", "Implement parser", section="Core"),
        Task("T005", "Implement writer", section="Core"),
    ]


@pytest.fixture
def three_sections() -> list[Task]:
    return [
        Task("T001", "Schema", section="Data"),
        Task("T002", "Handlers", section="API"),
        Task("T003", "Docs", section="Docs"),
    ]
