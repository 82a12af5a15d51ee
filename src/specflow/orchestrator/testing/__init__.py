"""Testing utilities for the orchestrator.

Example usage:
    from specflow.orchestrator.testing import FakeProbe, ScriptedGateway, ScriptedJob

    probe = FakeProbe()
    gateway = ScriptedGateway(probe)
    gateway.script(StepKind.IMPLEMENT, ScriptedJob(status=JobStatus.FAILURE))
"""

from __future__ import annotations

from specflow.orchestrator.testing.fakes import (
    FakeProbe,
    ScriptedGateway,
    ScriptedJob,
    StaticTaskSource,
)

__all__ = [
    "FakeProbe",
    "ScriptedGateway",
    "ScriptedJob",
    "StaticTaskSource",
]
