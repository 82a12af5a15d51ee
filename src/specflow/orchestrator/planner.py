"""Batch planning over a project's task list.

Pipeline:
1. ``parse_tasks_markdown`` turns ``tasks.md`` into ``Task`` records.
   ``## Heading`` lines open sections, ``- [ ] T001 ...`` lines are tasks,
   ``- [x]`` marks a task complete and ``[depends: T001, T002]`` declares
   dependencies.
2. ``plan_batches`` groups incomplete tasks into batches: one per section
   when sections exist, fixed-size chunks otherwise. Inside a batch tasks are
   ordered so dependencies come first.
3. ``MarkdownTaskSource`` locates the current ``tasks.md`` for a project and
   feeds step 1.

Batches are disjoint and together cover every incomplete task exactly once.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_SIZE = 15

TASK_PATTERN = re.compile(r"^\s*[-*]\s*\[([ xX])\]\s*(T\d{3,})\b\s*(.*)$")
SECTION_PATTERN = re.compile(r"^##\s+(.+?)\s*#*\s*$")
DEPENDENCY_PATTERN = re.compile(r"\[(?:depends?|dep|after):\s*([^\]]+)\]", re.IGNORECASE)
TASK_ID_PATTERN = re.compile(r"T\d{3,}")
SPEC_DIR_PATTERN = re.compile(r"^(\d{3,})-")


@dataclass(frozen=True)
class Task:
    """A single task line from the task list."""

    id: str
    description: str
    completed: bool = False
    section: str | None = None
    dependencies: tuple[str, ...] = ()


@dataclass
class PlannedBatch:
    """A batch produced by the planner, before it becomes a BatchItem."""

    name: str
    task_ids: list[str]
    dependencies: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class BatchPlan:
    """Result of planning.

    Attributes:
        batches: Batches in execution order
        used_fallback: True when tasks had no sections and were chunked
        fallback_size: Chunk size used for fallback batching
        total_incomplete: Number of incomplete tasks across all batches
        warnings: Dependency problems found while ordering tasks
    """

    batches: list[PlannedBatch] = field(default_factory=list)
    used_fallback: bool = False
    fallback_size: int = DEFAULT_FALLBACK_SIZE
    total_incomplete: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.batches

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches": [
                {"name": b.name, "task_ids": list(b.task_ids), "dependencies": b.dependencies}
                for b in self.batches
            ],
            "used_fallback": self.used_fallback,
            "fallback_size": self.fallback_size,
            "total_incomplete": self.total_incomplete,
            "warnings": list(self.warnings),
        }


# =============================================================================
# Parsing
# =============================================================================


def parse_tasks_markdown(content: str) -> list[Task]:
    """Parse a markdown task list.

    Tasks that appear before the first ``##`` heading have no section.
    Repeated task ids keep their first occurrence.
    """
    tasks: list[Task] = []
    seen: set[str] = set()
    section: str | None = None

    for line in content.splitlines():
        heading = SECTION_PATTERN.match(line)
        if heading:
            section = heading.group(1).strip()
            continue

        match = TASK_PATTERN.match(line)
        if not match:
            continue

        mark, task_id, rest = match.groups()
        if task_id in seen:
            logger.warning("Duplicate task id %s ignored", task_id)
            continue
        seen.add(task_id)

        deps: list[str] = []
        for dep_match in DEPENDENCY_PATTERN.finditer(rest):
            deps.extend(TASK_ID_PATTERN.findall(dep_match.group(1)))
        description = DEPENDENCY_PATTERN.sub("", rest).strip()

        tasks.append(
            Task(
                id=task_id,
                description=description,
                completed=mark.lower() == "x",
                section=section,
                dependencies=tuple(d for d in deps if d != task_id),
            )
        )

    return tasks


def parse_tasks_file(path: Path) -> list[Task]:
    return parse_tasks_markdown(path.read_text(encoding="utf-8"))


# =============================================================================
# Planning
# =============================================================================


def _order_by_dependencies(
    tasks: list[Task], all_ids: set[str], warnings: list[str]
) -> tuple[list[str], dict[str, list[str]]]:
    """Order tasks so in-batch dependencies come first (Kahn's algorithm).

    Dependencies on tasks outside the batch are ignored for ordering; those
    on tasks that do not exist at all produce a warning. A cycle keeps the
    file order.
    """
    batch_ids = [t.id for t in tasks]
    in_batch = set(batch_ids)
    deps: dict[str, list[str]] = {}

    for task in tasks:
        local = []
        for dep in task.dependencies:
            if dep in in_batch:
                local.append(dep)
            elif dep not in all_ids:
                warnings.append(f"{task.id} depends on unknown task {dep}")
        if local:
            deps[task.id] = local

    if not deps:
        return batch_ids, deps

    remaining = {tid: set(deps.get(tid, ())) for tid in batch_ids}
    ordered: list[str] = []
    while remaining:
        ready = [tid for tid in batch_ids if tid in remaining and not remaining[tid]]
        if not ready:
            cycle = ", ".join(tid for tid in batch_ids if tid in remaining)
            warnings.append(f"Dependency cycle among {cycle}; keeping file order")
            return batch_ids, deps
        for tid in ready:
            ordered.append(tid)
            del remaining[tid]
        for pending in remaining.values():
            pending.difference_update(ready)

    return ordered, deps


def plan_batches(
    tasks: Iterable[Task], fallback_size: int = DEFAULT_FALLBACK_SIZE
) -> BatchPlan:
    """Group incomplete tasks into batches.

    Args:
        tasks: Task snapshot in file order
        fallback_size: Chunk size when no task carries a section label

    Returns:
        BatchPlan; empty when every task is complete
    """
    if fallback_size < 1:
        raise ValueError("fallback_size must be >= 1")

    task_list = list(tasks)
    all_ids = {t.id for t in task_list}
    incomplete = [t for t in task_list if not t.completed]
    plan = BatchPlan(fallback_size=fallback_size, total_incomplete=len(incomplete))

    if not incomplete:
        return plan

    has_sections = any(t.section for t in task_list)
    groups: list[tuple[str, list[Task]]] = []

    if has_sections:
        by_section: dict[str, list[Task]] = {}
        for task in incomplete:
            # Unlabelled tasks ahead of the first heading form their own batch
            by_section.setdefault(task.section or "Tasks", []).append(task)
        groups = list(by_section.items())
    else:
        plan.used_fallback = True
        for start in range(0, len(incomplete), fallback_size):
            number = start // fallback_size + 1
            groups.append((f"Batch {number}", incomplete[start : start + fallback_size]))

    for name, members in groups:
        ordered, deps = _order_by_dependencies(members, all_ids, plan.warnings)
        plan.batches.append(PlannedBatch(name=name, task_ids=ordered, dependencies=deps))

    for warning in plan.warnings:
        logger.warning("Batch planning: %s", warning)

    return plan


def summarize_plan(plan: BatchPlan) -> str:
    """One-line human summary of a plan."""
    if plan.is_empty:
        return "No incomplete tasks found"
    count = len(plan.batches)
    noun = "batch" if count == 1 else "batches"
    mode = f"fallback chunks of {plan.fallback_size}" if plan.used_fallback else "sections"
    return f"{count} {noun} by {mode}, {plan.total_incomplete} incomplete tasks"


def incomplete_task_ids(tasks: Iterable[Task], task_ids: Iterable[str]) -> list[str]:
    """Return the ids from ``task_ids`` that are not complete in ``tasks``.

    Ids missing from ``tasks`` count as incomplete.
    """
    done = {t.id for t in tasks if t.completed}
    return [tid for tid in task_ids if tid not in done]


# =============================================================================
# Task sources
# =============================================================================


class TaskSource(Protocol):
    """Supplies a read-only task snapshot for a project."""

    def load(self, project_id: str) -> list[Task]: ...


def find_tasks_file(project_root: Path) -> Path | None:
    """Locate the current task list of a project.

    Prefers ``specs/NNN-*/tasks.md`` with the highest numeric prefix, then a
    ``tasks.md`` at the project root.
    """
    specs_dir = project_root / "specs"
    candidates: list[tuple[int, Path]] = []
    if specs_dir.is_dir():
        for child in specs_dir.iterdir():
            match = SPEC_DIR_PATTERN.match(child.name)
            if match and (child / "tasks.md").is_file():
                candidates.append((int(match.group(1)), child / "tasks.md"))
    if candidates:
        return max(candidates)[1]
    root_file = project_root / "tasks.md"
    return root_file if root_file.is_file() else None


class MarkdownTaskSource:
    """Task source backed by ``tasks.md`` files on disk.

    Args:
        resolve_root: Maps a project id to its root directory
    """

    def __init__(self, resolve_root: Callable[[str], Path]):
        self._resolve_root = resolve_root

    def tasks_file(self, project_id: str) -> Path | None:
        return find_tasks_file(self._resolve_root(project_id))

    def load(self, project_id: str) -> list[Task]:
        path = self.tasks_file(project_id)
        if path is None:
            logger.info("No tasks.md found for project %s", project_id)
            return []
        return parse_tasks_file(path)
