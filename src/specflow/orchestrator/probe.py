"""Independent project state probe.

The engine never trusts the executor's word alone. Before a step counts as
complete, a ``StateProbe`` reads project state the executor does not control
through the gateway: the step status file the workflow skills maintain and
the checkboxes in ``tasks.md``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Protocol

from .models import OrchestrationPhase
from .phases import PHASE_ORDER
from .planner import TaskSource

logger = logging.getLogger(__name__)

STATE_FILE = Path(".specflow") / "orchestration-state.json"
COMPLETE_STEP_STATUSES = frozenset({"complete", "completed"})


class StateProbe(Protocol):
    """Reads project state independently of the executor."""

    async def phase_complete(self, project_id: str, phase: OrchestrationPhase) -> bool: ...

    async def completed_tasks(self, project_id: str, task_ids: Iterable[str]) -> list[str]: ...


def is_phase_complete(state: dict[str, Any] | None, phase: OrchestrationPhase) -> bool:
    """Decide from a step status document whether ``phase`` has finished.

    A phase is complete once the recorded step has moved past it, or when
    the recorded step is that phase and its status is complete.
    """
    if phase is OrchestrationPhase.COMPLETE:
        return True
    if not state:
        return False

    step = (state.get("orchestration") or {}).get("step") or {}
    current = step.get("current")
    status = str(step.get("status") or "").lower()
    try:
        current_phase = OrchestrationPhase(current)
    except ValueError:
        return False

    if current_phase == phase:
        return status in COMPLETE_STEP_STATUSES
    return PHASE_ORDER.index(current_phase) > PHASE_ORDER.index(phase)


class ProjectStateProbe:
    """Probe backed by files in the project tree.

    Args:
        resolve_root: Maps a project id to its root directory
        task_source: Re-read on every call to see current checkbox state
    """

    def __init__(self, resolve_root: Callable[[str], Path], task_source: TaskSource):
        self._resolve_root = resolve_root
        self._task_source = task_source

    def read_state(self, project_id: str) -> dict[str, Any] | None:
        path = self._resolve_root(project_id) / STATE_FILE
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read step status %s: %s", path, exc)
            return None

    async def phase_complete(self, project_id: str, phase: OrchestrationPhase) -> bool:
        return is_phase_complete(self.read_state(project_id), phase)

    async def completed_tasks(self, project_id: str, task_ids: Iterable[str]) -> list[str]:
        done = {t.id for t in self._task_source.load(project_id) if t.completed}
        return [tid for tid in task_ids if tid in done]
