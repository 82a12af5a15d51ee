"""Task executor gateway.

The engine never talks to the skill runner directly. It hands a
``StepRequest`` to a ``TaskExecutorGateway`` and gets back an opaque job
reference it can poll, cancel, or probe for liveness.

This module provides:
    - TaskExecutorGateway Protocol
    - StepRequest / PollResult / JobOutcome dataclasses
    - build_step_request(): canonical skill plus verbatim extra context
    - wait_for_job(): the dual-confirmation polling loop shared by the
      engine and the healing coordinator
    - SubprocessGateway: runs the configured skill runner as a subprocess
      and keeps per-job records on disk so another process can still poll
      a job or check whether it is alive
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from ulid import ULID

from .errors import GatewayError
from .models import StepKind

logger = logging.getLogger(__name__)


class JobStatus(StrEnum):
    """Status a job reports through ``poll()``."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


# Canonical skill each step kind invokes
STEP_SKILLS: dict[StepKind, str] = {
    StepKind.DESIGN: "/specflow.design",
    StepKind.ANALYZE: "/specflow.analyze",
    StepKind.IMPLEMENT: "/specflow.implement",
    StepKind.VERIFY: "/specflow.verify",
    StepKind.MERGE: "/specflow.merge",
    StepKind.HEAL: "/specflow.heal",
}


@dataclass(frozen=True)
class StepRequest:
    """Everything the executor needs to run one job."""

    kind: StepKind
    project_id: str
    execution_id: str
    prompt: str
    task_ids: tuple[str, ...] = ()
    section: str | None = None
    max_budget_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "project_id": self.project_id,
            "execution_id": self.execution_id,
            "prompt": self.prompt,
            "task_ids": list(self.task_ids),
            "section": self.section,
            "max_budget_usd": self.max_budget_usd,
        }


@dataclass(frozen=True)
class PollResult:
    """Snapshot of a job's progress."""

    status: JobStatus
    cost_usd: float = 0.0
    artifacts: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not JobStatus.RUNNING


@dataclass
class JobOutcome:
    """How waiting on a job ended.

    ``succeeded`` is True only when the job reported success and the
    independent check agreed before the timeout.
    """

    ref: str
    succeeded: bool
    cost_usd: float = 0.0
    error: str | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    timed_out: bool = False
    stopped: bool = False

    @property
    def stderr(self) -> str:
        return str(self.artifacts.get("stderr", ""))


class TaskExecutorGateway(Protocol):
    """Opaque task executor. All methods except ``is_alive`` are async."""

    async def start(self, request: StepRequest) -> str: ...

    async def poll(self, ref: str) -> PollResult: ...

    async def cancel(self, ref: str) -> None: ...

    def is_alive(self, ref: str) -> bool: ...


def build_step_request(
    kind: StepKind,
    *,
    project_id: str,
    execution_id: str,
    additional_context: str = "",
    task_ids: tuple[str, ...] = (),
    section: str | None = None,
    max_budget_usd: float | None = None,
    body: str | None = None,
) -> StepRequest:
    """Build the request for one step.

    The prompt is the step's canonical skill followed by optional scoping
    text and the caller's extra context, which is passed through verbatim.
    """
    parts = [STEP_SKILLS[kind]]
    if body:
        parts.append(body)
    elif kind is StepKind.IMPLEMENT and task_ids:
        label = section or "batch"
        parts.append(
            f'Execute only the "{label}" section ({", ".join(task_ids)}). '
            "Do NOT work on tasks from other sections."
        )
    if additional_context:
        parts.append(additional_context)
    return StepRequest(
        kind=kind,
        project_id=project_id,
        execution_id=execution_id,
        prompt="\n\n".join(parts),
        task_ids=tuple(task_ids),
        section=section,
        max_budget_usd=max_budget_usd,
    )


# =============================================================================
# Dual-confirmation wait loop
# =============================================================================


async def wait_for_job(
    gateway: TaskExecutorGateway,
    ref: str,
    *,
    confirm: Callable[[], Awaitable[bool]],
    timeout: float,
    poll_interval: float,
    should_stop: Callable[[], bool] | None = None,
    on_poll: Callable[[PollResult], None] | None = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> JobOutcome:
    """Poll a job until it ends and the independent check agrees.

    Args:
        gateway: Executor the job runs on
        ref: Job reference returned by ``gateway.start``
        confirm: Independent probe; only consulted once the job reports success
        timeout: Seconds before an unconfirmed job counts as failed
        poll_interval: Seconds to sleep between polls
        should_stop: Returns True when the caller no longer wants the result
        on_poll: Called with every poll result (heartbeats)

    Returns:
        JobOutcome. A reported success the probe never corroborates ends as
        a failure once ``timeout`` elapses.
    """
    deadline = monotonic() + timeout
    last = PollResult(status=JobStatus.RUNNING)
    disagreement = False

    while True:
        if should_stop is not None and should_stop():
            return JobOutcome(
                ref=ref, succeeded=False, cost_usd=last.cost_usd,
                error="stopped", artifacts=dict(last.artifacts), stopped=True,
            )

        last = await gateway.poll(ref)
        if on_poll is not None:
            on_poll(last)

        if last.status is JobStatus.FAILURE:
            return JobOutcome(
                ref=ref, succeeded=False, cost_usd=last.cost_usd,
                error=last.error or "Executor reported failure",
                artifacts=dict(last.artifacts),
            )

        if last.status is JobStatus.SUCCESS:
            if await confirm():
                return JobOutcome(
                    ref=ref, succeeded=True, cost_usd=last.cost_usd,
                    artifacts=dict(last.artifacts),
                )
            if not disagreement:
                logger.warning(
                    "Job %s reported success but project state disagrees; "
                    "polling until confirmed or timed out",
                    ref,
                )
                disagreement = True

        if monotonic() >= deadline:
            error = (
                "Executor reported success but project state never confirmed it"
                if disagreement
                else f"Job did not finish within {timeout:.0f}s"
            )
            return JobOutcome(
                ref=ref, succeeded=False, cost_usd=last.cost_usd, error=error,
                artifacts=dict(last.artifacts), timed_out=True,
            )

        await asyncio.sleep(poll_interval)


# =============================================================================
# Subprocess gateway
# =============================================================================


def _now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def parse_runner_output(stdout: str, stderr: str, exit_code: int) -> dict[str, Any]:
    """Turn raw runner output into a result record.

    The last line of stdout that parses as a JSON object may carry
    ``status``, ``cost_usd`` (or ``total_cost_usd``), ``is_error``,
    ``error`` and ``artifacts``. A non-zero exit code is always a failure.
    """
    data: dict[str, Any] = {}
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            data = parsed
            break

    if exit_code != 0:
        status = JobStatus.FAILURE
    elif data.get("status") in (JobStatus.SUCCESS, JobStatus.FAILURE):
        status = JobStatus(data["status"])
    elif data.get("is_error"):
        status = JobStatus.FAILURE
    else:
        status = JobStatus.SUCCESS

    error = data.get("error")
    if status is JobStatus.FAILURE and not error:
        error = stderr.strip().splitlines()[-1] if stderr.strip() else f"Runner exited with code {exit_code}"

    artifacts = dict(data.get("artifacts") or {})
    if stderr.strip():
        artifacts.setdefault("stderr", stderr[-4000:])

    return {
        "status": str(status),
        "exit_code": exit_code,
        "cost_usd": float(data.get("cost_usd", data.get("total_cost_usd", 0.0)) or 0.0),
        "error": error,
        "artifacts": artifacts,
        "finished_at": _now_utc(),
    }


class SubprocessGateway:
    """Runs each job as a skill-runner subprocess.

    Per job directory (``<jobs_dir>/<ref>/``):
        - request.json: the StepRequest
        - job.json: pid, command and start time
        - stdout.log / stderr.log: runner output
        - result.json: written once the runner exits

    Args:
        jobs_dir: Directory holding per-job records
        command: Runner argv; the prompt is written to its stdin
        resolve_root: Maps a project id to the runner's working directory
    """

    def __init__(
        self,
        jobs_dir: Path,
        command: list[str],
        resolve_root: Callable[[str], Path],
    ):
        if not command:
            raise GatewayError("Runner command is empty")
        self.jobs_dir = jobs_dir
        self.command = list(command)
        self._resolve_root = resolve_root
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}

    def _job_dir(self, ref: str) -> Path:
        return self.jobs_dir / ref

    def _read_json(self, path: Path) -> dict[str, Any] | None:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise GatewayError(f"Unreadable job record {path}: {exc}") from exc

    async def start(self, request: StepRequest) -> str:
        ref = str(ULID())
        job_dir = self._job_dir(ref)
        job_dir.mkdir(parents=True, exist_ok=False)
        _write_json_atomic(job_dir / "request.json", request.to_dict())

        env = dict(os.environ)
        env["SPECFLOW_STEP"] = str(request.kind)
        env["SPECFLOW_EXECUTION_ID"] = request.execution_id
        if request.max_budget_usd is not None:
            env["SPECFLOW_MAX_BUDGET_USD"] = f"{request.max_budget_usd:.2f}"

        stdout_f = open(job_dir / "stdout.log", "wb")
        stderr_f = open(job_dir / "stderr.log", "wb")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self._resolve_root(request.project_id)),
                stdin=asyncio.subprocess.PIPE,
                stdout=stdout_f,
                stderr=stderr_f,
                env=env,
            )
        except OSError as exc:
            stdout_f.close()
            stderr_f.close()
            raise GatewayError(f"Could not start runner {self.command[0]!r}: {exc}") from exc

        _write_json_atomic(
            job_dir / "job.json",
            {
                "ref": ref,
                "pid": proc.pid,
                "kind": str(request.kind),
                "command": self.command,
                "started_at": _now_utc(),
            },
        )
        self._processes[ref] = proc
        self._watchers[ref] = asyncio.create_task(
            self._watch(ref, proc, request.prompt, stdout_f, stderr_f)
        )
        logger.info("Started %s job %s (pid %s)", request.kind, ref, proc.pid)
        return ref

    async def _watch(self, ref, proc, prompt: str, stdout_f, stderr_f) -> None:
        try:
            await proc.communicate(input=prompt.encode("utf-8"))
        finally:
            stdout_f.close()
            stderr_f.close()
            self._processes.pop(ref, None)

        job_dir = self._job_dir(ref)
        stdout = (job_dir / "stdout.log").read_text(encoding="utf-8", errors="replace")
        stderr = (job_dir / "stderr.log").read_text(encoding="utf-8", errors="replace")
        result = parse_runner_output(stdout, stderr, proc.returncode or 0)
        _write_json_atomic(job_dir / "result.json", result)
        logger.info("Job %s finished: %s", ref, result["status"])

    async def poll(self, ref: str) -> PollResult:
        job_dir = self._job_dir(ref)
        if not job_dir.is_dir():
            raise GatewayError(f"Unknown job {ref}")

        result = self._read_json(job_dir / "result.json")
        if result is not None:
            return PollResult(
                status=JobStatus(result["status"]),
                cost_usd=float(result.get("cost_usd", 0.0)),
                artifacts=dict(result.get("artifacts") or {}),
                error=result.get("error"),
            )

        if self.is_alive(ref):
            return PollResult(status=JobStatus.RUNNING)

        return PollResult(
            status=JobStatus.FAILURE,
            error="Runner exited without writing a result",
        )

    async def cancel(self, ref: str) -> None:
        proc = self._processes.get(ref)
        if proc is not None and proc.returncode is None:
            proc.terminate()
            logger.info("Terminated job %s", ref)
            return

        record = self._read_json(self._job_dir(ref) / "job.json")
        if record is None or not self.is_alive(ref):
            return
        try:
            os.kill(int(record["pid"]), signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError as exc:
            raise GatewayError(f"Cannot signal job {ref}: {exc}") from exc
        logger.info("Sent SIGTERM to job %s (pid %s)", ref, record["pid"])

    def is_alive(self, ref: str) -> bool:
        watcher = self._watchers.get(ref)
        if watcher is not None and not watcher.done():
            return True

        job_dir = self._job_dir(ref)
        if (job_dir / "result.json").exists():
            return False
        record = self._read_json(job_dir / "job.json")
        if record is None:
            return False
        try:
            os.kill(int(record["pid"]), 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True
        return True
