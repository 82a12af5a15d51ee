"""Orchestration state store.

One JSON document per project holds every execution of that project::

    {
      "schema_version": 1,
      "project_id": "demo",
      "version": 12,
      "updated_at": "2026-01-01T00:00:00+00:00",
      "executions": [ {...}, {...} ]
    }

All writes go through a single locked read-modify-write path
(``StateStore.update``), which:

- re-reads the latest document under an exclusive lock,
- optionally checks ``expected_version`` (compare-and-swap),
- applies the caller's mutator to a fresh ``OrchestrationExecution``,
- rejects status changes the transition matrix forbids,
- bumps ``version`` and writes the document atomically,
- notifies subscribers.

Keys this code does not know about are preserved at every level.

Backends:
    - MemoryBackend: process-local, used in tests
    - FileBackend: ``<state_dir>/<project>.json`` written via temp file and
      ``os.replace`` under an ``fcntl`` lock file
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, TypeVar

from .errors import (
    ConflictError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    StaleStateError,
    StoreError,
)
from .models import OrchestrationExecution
from .phases import validate_status_transition

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

T = TypeVar("T")
Listener = Callable[[str, dict[str, Any]], None]


def _now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Backends
# =============================================================================


class StorageBackend(Protocol):
    """Raw document storage keyed by project id."""

    def read(self, project_id: str) -> dict[str, Any] | None: ...

    def write(self, project_id: str, document: dict[str, Any]) -> None: ...

    def project_ids(self) -> list[str]: ...

    def locked(self, project_id: str) -> Any:
        """Context manager holding the project's exclusive write lock."""
        ...


class MemoryBackend:
    """In-memory backend. Documents are stored serialized so callers never
    share mutable state with the store."""

    def __init__(self) -> None:
        self._docs: dict[str, str] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def read(self, project_id: str) -> dict[str, Any] | None:
        raw = self._docs.get(project_id)
        return json.loads(raw) if raw is not None else None

    def write(self, project_id: str, document: dict[str, Any]) -> None:
        self._docs[project_id] = json.dumps(document, sort_keys=True)

    def project_ids(self) -> list[str]:
        return sorted(self._docs)

    @contextmanager
    def locked(self, project_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(project_id, threading.Lock())
        with lock:
            yield


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class FileBackend:
    """One JSON file per project under ``state_dir``."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self._thread_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def path_for(self, project_id: str) -> Path:
        name = _UNSAFE_CHARS.sub("_", project_id) or "_"
        return self.state_dir / f"{name}.json"

    def read(self, project_id: str) -> dict[str, Any] | None:
        path = self.path_for(project_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"Cannot read {path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"{path} does not hold a JSON object")
        return data

    def write(self, project_id: str, document: dict[str, Any]) -> None:
        path = self.path_for(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def project_ids(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        ids = []
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable state file %s: %s", path, exc)
                continue
            if isinstance(data, dict) and data.get("project_id"):
                ids.append(str(data["project_id"]))
        return ids

    @contextmanager
    def locked(self, project_id: str) -> Iterator[None]:
        with self._guard:
            thread_lock = self._thread_locks.setdefault(project_id, threading.Lock())
        lock_path = self.path_for(project_id).with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with thread_lock, open(lock_path, "a+", encoding="utf-8") as handle:
            if sys.platform == "win32":
                msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                if sys.platform == "win32":
                    msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


# =============================================================================
# Project document
# =============================================================================


@dataclass
class ProjectDocument:
    """Parsed per-project document."""

    project_id: str
    version: int = 0
    updated_at: str | None = None
    executions: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset(
        {"schema_version", "project_id", "version", "updated_at", "executions"}
    )

    def to_dict(self) -> dict[str, Any]:
        d = dict(self.extra)
        d.update(
            {
                "schema_version": SCHEMA_VERSION,
                "project_id": self.project_id,
                "version": self.version,
                "updated_at": self.updated_at,
                "executions": self.executions,
            }
        )
        return d

    @classmethod
    def from_dict(cls, project_id: str, data: dict[str, Any] | None) -> ProjectDocument:
        if data is None:
            return cls(project_id=project_id)
        schema = data.get("schema_version", SCHEMA_VERSION)
        if not isinstance(schema, int) or schema > SCHEMA_VERSION:
            raise StoreError(
                f"State for {project_id!r} has unsupported schema_version {schema!r}"
            )
        executions = data.get("executions", [])
        if not isinstance(executions, list):
            raise StoreError(f"State for {project_id!r} has malformed executions")
        return cls(
            project_id=data.get("project_id", project_id),
            version=int(data.get("version", 0)),
            updated_at=data.get("updated_at"),
            executions=executions,
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def index_of(self, execution_id: str) -> int:
        for i, raw in enumerate(self.executions):
            if raw.get("id") == execution_id:
                return i
        raise ExecutionNotFoundError(
            f"Execution {execution_id} not found for project {self.project_id!r}"
        )


def _parse(raw: dict[str, Any]) -> OrchestrationExecution:
    try:
        return OrchestrationExecution.from_dict(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreError(f"Malformed execution record {raw.get('id')!r}: {exc}") from exc


# =============================================================================
# State store
# =============================================================================


class StateStore:
    """Durable, serialized access to orchestration executions."""

    def __init__(
        self,
        backend: StorageBackend,
        clock: Callable[[], str] = _now_utc,
    ):
        self.backend = backend
        self._clock = clock
        self._listeners: list[Listener] = []

    # -- notifications ------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(project_id, document)`` for every write.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, project_id: str, document: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(project_id, document)
            except Exception as exc:
                logger.warning("State listener %r failed: %s", listener, exc)

    # -- reads --------------------------------------------------------------

    def document(self, project_id: str) -> ProjectDocument:
        return ProjectDocument.from_dict(project_id, self.backend.read(project_id))

    def version(self, project_id: str) -> int:
        return self.document(project_id).version

    def list(self, project_id: str) -> list[OrchestrationExecution]:
        """All executions of a project, oldest first."""
        return [_parse(raw) for raw in self.document(project_id).executions]

    def project_ids(self) -> list[str]:
        return self.backend.project_ids()

    def find_active(self, project_id: str) -> OrchestrationExecution | None:
        for execution in self.list(project_id):
            if execution.is_active:
                return execution
        return None

    def get(self, execution_id: str, project_id: str | None = None) -> OrchestrationExecution:
        """Load one execution.

        Raises:
            ExecutionNotFoundError: If no project holds ``execution_id``
        """
        projects = [project_id] if project_id is not None else self.project_ids()
        for pid in projects:
            for raw in self.document(pid).executions:
                if raw.get("id") == execution_id:
                    return _parse(raw)
        raise ExecutionNotFoundError(f"Execution {execution_id} not found")

    # -- writes -------------------------------------------------------------

    def _write(self, doc: ProjectDocument) -> dict[str, Any]:
        doc.version += 1
        doc.updated_at = self._clock()
        data = doc.to_dict()
        self.backend.write(doc.project_id, data)
        self._notify(doc.project_id, data)
        return data

    def create(self, execution: OrchestrationExecution) -> OrchestrationExecution:
        """Persist a new execution, enforcing single-flight.

        Raises:
            ConflictError: If the project already has an active execution
        """
        with self.backend.locked(execution.project_id):
            doc = self.document(execution.project_id)
            for raw in doc.executions:
                existing = _parse(raw)
                if existing.is_active:
                    raise ConflictError(execution.project_id, existing.id)
            doc.executions.append(execution.to_dict())
            self._write(doc)
        logger.info("Created execution %s for %s", execution.id, execution.project_id)
        return execution

    def update(
        self,
        project_id: str,
        execution_id: str,
        mutator: Callable[[OrchestrationExecution], T],
        *,
        expected_version: int | None = None,
    ) -> tuple[OrchestrationExecution, T]:
        """Atomically read, mutate and write one execution.

        The mutator receives a fresh copy of the latest persisted execution
        and edits it in place. Raising from the mutator aborts the write.

        Returns:
            (updated execution, mutator return value)

        Raises:
            StaleStateError: If ``expected_version`` does not match
            InvalidTransitionError: If the status change is not allowed
        """
        with self.backend.locked(project_id):
            doc = self.document(project_id)
            if expected_version is not None and doc.version != expected_version:
                raise StaleStateError(project_id, expected_version, doc.version)

            index = doc.index_of(execution_id)
            execution = _parse(doc.executions[index])
            before = execution.status

            result = mutator(execution)

            ok, error = validate_status_transition(before, execution.status)
            if not ok:
                raise InvalidTransitionError("update", str(before), error)

            execution.updated_at = self._clock()
            doc.executions[index] = execution.to_dict()
            self._write(doc)
        return execution, result
