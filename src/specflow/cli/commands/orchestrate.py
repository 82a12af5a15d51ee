"""Orchestrate command: drive a project from design to merge.

This module implements the ``specflow orchestrate`` command group:
    - start: plan batches and run a new execution in the foreground
    - status / list: show execution progress
    - pause / resume / cancel: operator control
    - merge / go-back: resume from waiting_merge or an earlier phase
    - attach: resume driving a running execution after a restart
    - reconcile / doctor: inspect and repair state after an unclean shutdown
    - plan: preview the batch plan without starting anything

Every command accepts ``--json`` and then prints one response envelope.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from specflow.cli.envelope import describe_error, dumps, make_envelope
from specflow.orchestrator.config import SpecflowSettings, load_settings
from specflow.orchestrator.engine import OrchestrationEngine
from specflow.orchestrator.errors import (
    ExecutionNotFoundError,
    InvalidTransitionError,
    OrchestrationError,
)
from specflow.orchestrator.gateway import SubprocessGateway
from specflow.orchestrator.models import (
    BatchStatus,
    OrchestrationExecution,
    OrchestrationStatus,
)
from specflow.orchestrator.planner import MarkdownTaskSource, plan_batches, summarize_plan
from specflow.orchestrator.probe import ProjectStateProbe
from specflow.orchestrator.reconcile import ReconcileResult, Reconciler
from specflow.orchestrator.store import FileBackend, StateStore
from specflow.orchestrator.validation import run_doctor

logger = logging.getLogger(__name__)

console = Console()

STATE_DIR = Path(".specflow") / "orchestration"
PROJECT_MARKERS = (".specflow", ".git")


# =============================================================================
# App Definition
# =============================================================================


app = typer.Typer(
    name="orchestrate",
    help="""
    Drive a project through design, analyze, implement, verify and merge.

    The implement phase runs as batches of tasks from tasks.md. A failed
    batch gets a bounded auto-heal attempt; anything the engine cannot
    resolve stops in needs_attention until you choose how to continue.

    \b
    USAGE EXAMPLES:
      specflow orchestrate plan
      specflow orchestrate start --auto-merge
      specflow orchestrate status
      specflow orchestrate resume --choice retry

    \b
    WORKFLOW:
      1. Write specs/NNN-feature/tasks.md
      2. Configure .specflow/orchestration.yaml (optional)
      3. Run: specflow orchestrate start
      4. Monitor progress: specflow orchestrate status
      5. If it needs attention: fix the issue and resume with a choice
    """,
    no_args_is_help=True,
)


# =============================================================================
# Helper Functions
# =============================================================================


def locate_project_root(start: Path | None = None) -> Path:
    """Walk up from ``start`` to the nearest directory holding a project marker.

    Falls back to ``start`` itself when no marker is found.
    """
    start = (start or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if any((candidate / marker).exists() for marker in PROJECT_MARKERS):
            return candidate
    return start


def format_elapsed(seconds: float) -> str:
    """Format elapsed time in human-readable format."""
    if seconds < 60:
        return f"{int(seconds)}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def _elapsed(execution: OrchestrationExecution) -> str:
    try:
        started = datetime.fromisoformat(execution.started_at)
        ended = (
            datetime.fromisoformat(execution.completed_at)
            if execution.completed_at
            else datetime.now(timezone.utc)
        )
    except ValueError:
        return "-"
    return format_elapsed(max((ended - started).total_seconds(), 0.0))


@dataclass
class Runtime:
    """Collaborators wired for one project on disk."""

    root: Path
    project_id: str
    settings: SpecflowSettings
    store: StateStore
    task_source: MarkdownTaskSource
    engine: OrchestrationEngine
    reconciler: Reconciler


def build_runtime(root: Path) -> Runtime:
    """Wire store, gateway, probe and engine for the project at ``root``."""
    settings = load_settings(root)

    def resolve_root(_project_id: str) -> Path:
        return root

    jobs_dir = Path(settings.runner.jobs_dir)
    if not jobs_dir.is_absolute():
        jobs_dir = root / jobs_dir

    store = StateStore(FileBackend(root / STATE_DIR))
    task_source = MarkdownTaskSource(resolve_root)
    gateway = SubprocessGateway(jobs_dir, settings.runner.command, resolve_root)
    probe = ProjectStateProbe(resolve_root, task_source)
    engine = OrchestrationEngine(
        store, gateway, probe, task_source, settings=settings.engine
    )
    reconciler = Reconciler(
        store, gateway, staleness_threshold=settings.engine.staleness_threshold
    )
    return Runtime(
        root=root,
        project_id=root.name,
        settings=settings,
        store=store,
        task_source=task_source,
        engine=engine,
        reconciler=reconciler,
    )


def _resolve_execution(rt: Runtime, execution_id: str | None) -> OrchestrationExecution:
    """The named execution, else the active one, else the most recent."""
    if execution_id:
        return rt.store.get(execution_id, rt.project_id)
    active = rt.store.find_active(rt.project_id)
    if active is not None:
        return active
    executions = rt.store.list(rt.project_id)
    if not executions:
        raise ExecutionNotFoundError(f"No executions recorded for {rt.project_id}")
    return executions[-1]


def _emit(command: str, data: dict[str, Any]) -> None:
    print(dumps(make_envelope(command, True, data)))


def _fail(command: str, json_output: bool, exc: OrchestrationError) -> None:
    if json_output:
        error_code, data = describe_error(exc)
        print(dumps(make_envelope(command, False, data, error_code)))
    else:
        console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(1)


@contextmanager
def _handle_errors(command: str, json_output: bool) -> Iterator[None]:
    """Turn an orchestration error into an error envelope and exit code 1."""
    try:
        yield
    except OrchestrationError as exc:
        _fail(command, json_output, exc)


def _recover(rt: Runtime) -> ReconcileResult:
    """Reconcile leftover state; adoptable executions get a driver again.

    Must run inside the event loop that will drive them.
    """
    result = rt.reconciler.reconcile_project(rt.project_id)
    for execution_id in result.process_died:
        logger.warning("Execution %s lost its job; it needs attention", execution_id)
    for execution_id in result.adoptable:
        if rt.engine.adopt(execution_id):
            logger.info("Adopted running execution %s", execution_id)
    return result


def _log_pause_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Pause request failed: %s", exc)


def _pause_on_interrupt(engine: OrchestrationEngine, execution_id: str) -> None:
    """First Ctrl-C requests a pause; the second one detaches."""
    loop = asyncio.get_running_loop()

    def request_pause() -> None:
        loop.remove_signal_handler(signal.SIGINT)
        console.print(
            "\n[yellow]Pause requested, finishing the current step "
            "(Ctrl-C again to detach)...[/yellow]"
        )
        task = loop.create_task(engine.pause(execution_id))
        task.add_done_callback(_log_pause_failure)

    try:
        loop.add_signal_handler(signal.SIGINT, request_pause)
    except NotImplementedError:
        logger.debug("Signal handlers are not supported here; Ctrl-C detaches")


async def _follow(rt: Runtime, execution_id: str, json_output: bool) -> OrchestrationExecution:
    if not json_output:
        console.print(f"Driving execution [bold]{execution_id}[/bold]...")
    _pause_on_interrupt(rt.engine, execution_id)
    try:
        return await rt.engine.wait(execution_id)
    finally:
        await rt.engine.close()


def _drive(
    command: str,
    json_output: bool,
    root: Path | None,
    operation: Callable[[Runtime], Awaitable[OrchestrationExecution]],
) -> None:
    """Run a control operation, then follow the execution until it settles."""
    with _handle_errors(command, json_output):
        rt = build_runtime(locate_project_root(root))

        async def run() -> OrchestrationExecution:
            execution = await operation(rt)
            return await _follow(rt, execution.id, json_output)

        try:
            execution = asyncio.run(run())
        except KeyboardInterrupt:
            console.print(
                "\n[yellow]Detached. The execution stays running; "
                "use 'specflow orchestrate attach' to continue driving it.[/yellow]"
            )
            raise typer.Exit(130)

        if json_output:
            _emit(command, execution.to_dict())
        else:
            show_execution(execution)


# =============================================================================
# Status Display
# =============================================================================


STATUS_COLORS = {
    OrchestrationStatus.RUNNING: "green",
    OrchestrationStatus.PAUSED: "yellow",
    OrchestrationStatus.WAITING_MERGE: "cyan",
    OrchestrationStatus.NEEDS_ATTENTION: "red",
    OrchestrationStatus.COMPLETED: "bright_green",
    OrchestrationStatus.FAILED: "red",
    OrchestrationStatus.CANCELLED: "dim",
}

BATCH_COLORS = {
    BatchStatus.PENDING: "white",
    BatchStatus.RUNNING: "green",
    BatchStatus.COMPLETED: "bright_green",
    BatchStatus.HEALED: "cyan",
    BatchStatus.FAILED: "red",
}


def show_execution(execution: OrchestrationExecution) -> None:
    """Display one execution: summary, batches, recovery hints, recent decisions."""
    total = execution.total_batches
    done = sum(1 for b in execution.batches if b.is_done)
    progress_pct = (done / total * 100) if total > 0 else 0

    filled = int(progress_pct / 5)
    bar = "[green]" + "█" * filled + "[/green]" + "░" * (20 - filled)
    color = STATUS_COLORS.get(execution.status, "white")

    console.print()
    console.print(Panel(
        f"[bold]Project:[/bold] {execution.project_id}\n"
        f"[bold]Execution:[/bold] {execution.id}\n"
        f"[bold]Status:[/bold] [{color}]{execution.status}[/{color}]\n"
        f"[bold]Phase:[/bold] {execution.phase}\n"
        f"[bold]Batches:[/bold] {bar} {done}/{total} ({progress_pct:.1f}%)\n"
        f"[bold]Cost:[/bold] ${execution.cost.total:.2f}\n"
        f"[bold]Elapsed:[/bold] {_elapsed(execution)}",
        title="Orchestration Status",
        border_style="blue",
    ))

    if execution.batches:
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Section")
        table.add_column("Tasks")
        table.add_column("Status")
        table.add_column("Heals", justify="right")
        table.add_column("Cost", justify="right")
        for batch in execution.batches:
            batch_color = BATCH_COLORS.get(batch.status, "white")
            marker = " *" if batch.index == execution.current_batch_index else ""
            table.add_row(
                f"{batch.index}{marker}",
                batch.section,
                ", ".join(batch.task_ids),
                f"[{batch_color}]{batch.status}[/{batch_color}]",
                str(batch.heal_attempts),
                f"${execution.cost.per_batch.get(batch.index, 0.0):.2f}",
            )
        console.print(table)

    context = execution.recovery_context
    if execution.status is OrchestrationStatus.NEEDS_ATTENTION and context is not None:
        console.print()
        console.print(f"[bold red]Needs attention:[/bold red] {context.issue}")
        if context.detail:
            console.print(f"  {context.detail}")
        options = ", ".join(str(o) for o in context.options)
        console.print(f"Options: {options}")
        console.print("Continue with: specflow orchestrate resume --choice <option>")
    elif execution.status is OrchestrationStatus.PAUSED:
        console.print("\n[bold yellow]Execution is paused.[/bold yellow]")
        console.print("Continue with: specflow orchestrate resume")
    elif execution.status is OrchestrationStatus.WAITING_MERGE:
        console.print("\n[bold cyan]Ready to merge.[/bold cyan]")
        console.print("Merge with: specflow orchestrate merge")
    elif execution.error_message:
        console.print(f"\n[red]Error:[/red] {execution.error_message}")

    if execution.decision_log:
        console.print("\n[bold]Recent decisions:[/bold]")
        for entry in execution.decision_log[-5:]:
            console.print(f"  [dim]{entry.timestamp}[/dim] {entry.action}: {entry.reason}")

    console.print()


# =============================================================================
# Commands
# =============================================================================


_json_option = typer.Option(False, "--json", help="Print a JSON envelope")
_root_option = typer.Option(
    None, "--root", help="Project root (default: nearest directory with .specflow or .git)"
)
_id_argument = typer.Argument(
    None, help="Execution id (default: the active or most recent execution)"
)


@app.command()
def start(
    auto_merge: bool | None = typer.Option(
        None, "--auto-merge/--no-auto-merge", help="Merge without waiting for the operator"
    ),
    skip_design: bool = typer.Option(False, "--skip-design", help="Skip the design phase"),
    skip_analyze: bool = typer.Option(False, "--skip-analyze", help="Skip the analyze phase"),
    skip_implement: bool = typer.Option(
        False, "--skip-implement", help="Skip the implement phase"
    ),
    skip_verify: bool = typer.Option(False, "--skip-verify", help="Skip the verify phase"),
    auto_heal: bool | None = typer.Option(
        None, "--auto-heal/--no-auto-heal", help="Try to heal failed batches"
    ),
    max_heal_attempts: int | None = typer.Option(
        None, "--max-heal-attempts", help="Heal attempts per batch (0-5)"
    ),
    batch_size: int | None = typer.Option(
        None, "--batch-size", help="Tasks per batch when tasks.md has no sections"
    ),
    pause_between_batches: bool | None = typer.Option(
        None, "--pause-between-batches/--no-pause-between-batches",
        help="Pause after every completed batch",
    ),
    context: str | None = typer.Option(
        None, "--context", help="Extra instructions appended to every step prompt"
    ),
    max_total: float | None = typer.Option(None, "--max-total", help="Total budget in USD"),
    max_per_batch: float | None = typer.Option(
        None, "--max-per-batch", help="Budget per batch job in USD"
    ),
    healing_budget: float | None = typer.Option(
        None, "--healing-budget", help="Budget per heal job in USD"
    ),
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Start a new execution and drive it until it settles.

    Flags override .specflow/orchestration.yaml for this run only.
    """
    async def operation(rt: Runtime) -> OrchestrationExecution:
        config = rt.settings.orchestration.with_overrides(
            auto_merge=auto_merge,
            skip_design=skip_design or None,
            skip_analyze=skip_analyze or None,
            skip_implement=skip_implement or None,
            skip_verify=skip_verify or None,
            auto_heal=auto_heal,
            max_heal_attempts=max_heal_attempts,
            batch_size_fallback=batch_size,
            pause_between_batches=pause_between_batches,
            additional_context=context,
            max_total=max_total,
            max_per_batch=max_per_batch,
            healing_budget=healing_budget,
        )
        rt.reconciler.reconcile_project(rt.project_id)
        execution_id = await rt.engine.start(rt.project_id, config)
        return rt.engine.status(execution_id)

    _drive("start", json_output, root, operation)


@app.command()
def status(
    execution_id: str | None = _id_argument,
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Show the progress of an execution."""
    with _handle_errors("status", json_output):
        rt = build_runtime(locate_project_root(root))
        if not json_output and not execution_id and not rt.store.list(rt.project_id):
            console.print("[yellow]No orchestration recorded for this project[/yellow]")
            console.print("\nStart with: specflow orchestrate start")
            return
        execution = _resolve_execution(rt, execution_id)
        if json_output:
            _emit("status", execution.to_dict())
        else:
            show_execution(execution)


@app.command("list")
def list_executions(
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """List every execution recorded for this project."""
    with _handle_errors("list", json_output):
        rt = build_runtime(locate_project_root(root))
        executions = rt.engine.list(rt.project_id)
        if json_output:
            _emit("list", {
                "project_id": rt.project_id,
                "executions": [
                    {
                        "id": e.id,
                        "status": str(e.status),
                        "phase": str(e.phase),
                        "started_at": e.started_at,
                        "completed_at": e.completed_at,
                        "batches": e.total_batches,
                        "cost_usd": e.cost.total,
                    }
                    for e in executions
                ],
            })
            return
        if not executions:
            console.print("[yellow]No orchestration recorded for this project[/yellow]")
            return
        table = Table(show_header=True, header_style="bold", title=rt.project_id)
        table.add_column("Execution")
        table.add_column("Status")
        table.add_column("Phase")
        table.add_column("Batches", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Elapsed", justify="right")
        for e in executions:
            color = STATUS_COLORS.get(e.status, "white")
            done = sum(1 for b in e.batches if b.is_done)
            table.add_row(
                e.id,
                f"[{color}]{e.status}[/{color}]",
                str(e.phase),
                f"{done}/{e.total_batches}",
                f"${e.cost.total:.2f}",
                _elapsed(e),
            )
        console.print(table)


@app.command()
def pause(
    execution_id: str | None = _id_argument,
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Pause an execution once its current step resolves."""
    with _handle_errors("pause", json_output):
        rt = build_runtime(locate_project_root(root))
        target = _resolve_execution(rt, execution_id)
        execution = asyncio.run(rt.engine.pause(target.id))
        if json_output:
            _emit("pause", execution.to_dict())
        elif execution.status is OrchestrationStatus.PAUSED:
            console.print(f"[yellow]Paused[/yellow] {execution.id}")
        else:
            console.print(
                f"[yellow]Pause requested[/yellow] for {execution.id}; "
                "it takes effect when the current step finishes"
            )


@app.command()
def resume(
    execution_id: str | None = _id_argument,
    choice: str | None = typer.Option(
        None, "--choice", help="Recovery choice when the execution needs attention: retry, skip or abort"
    ),
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Resume a paused execution or answer a needs-attention prompt."""
    async def operation(rt: Runtime) -> OrchestrationExecution:
        target = _resolve_execution(rt, execution_id)
        return await rt.engine.resume(target.id, choice)

    _drive("resume", json_output, root, operation)


@app.command()
def cancel(
    execution_id: str | None = _id_argument,
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Cancel an active execution. Recorded progress and cost are kept."""
    with _handle_errors("cancel", json_output):
        rt = build_runtime(locate_project_root(root))
        target = _resolve_execution(rt, execution_id)
        execution = asyncio.run(rt.engine.cancel(target.id))
        if json_output:
            _emit("cancel", execution.to_dict())
        else:
            console.print(f"[yellow]Cancelled[/yellow] {execution.id}")


@app.command()
def merge(
    execution_id: str | None = _id_argument,
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Run the merge step of an execution waiting for it."""
    async def operation(rt: Runtime) -> OrchestrationExecution:
        target = _resolve_execution(rt, execution_id)
        return await rt.engine.trigger_merge(target.id)

    _drive("merge", json_output, root, operation)


@app.command("go-back")
def go_back(
    phase: str = typer.Argument(..., help="Phase to return to: design, analyze, implement or verify"),
    execution_id: str | None = _id_argument,
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Return an idle execution to an earlier phase and drive it again."""
    async def operation(rt: Runtime) -> OrchestrationExecution:
        target = _resolve_execution(rt, execution_id)
        return await rt.engine.go_back(target.id, phase)

    _drive("go-back", json_output, root, operation)


@app.command()
def attach(
    execution_id: str | None = _id_argument,
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Resume driving a running execution left by a stopped process."""
    async def operation(rt: Runtime) -> OrchestrationExecution:
        result = _recover(rt)
        target = _resolve_execution(rt, execution_id)
        if target.id not in result.adoptable and not rt.engine.adopt(target.id):
            raise InvalidTransitionError(
                "attach to", str(target.status), "only running executions can be attached"
            )
        return target

    _drive("attach", json_output, root, operation)


@app.command()
def reconcile(
    all_projects: bool = typer.Option(
        False, "--all", help="Reconcile every project in the state directory"
    ),
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Resolve executions whose process died. Live jobs are left alone."""
    with _handle_errors("reconcile", json_output):
        rt = build_runtime(locate_project_root(root))
        if all_projects:
            result = rt.reconciler.reconcile_all()
        else:
            result = rt.reconciler.reconcile_project(rt.project_id)
        if json_output:
            _emit("reconcile", result.to_dict())
            return
        console.print(
            f"Checked {result.checked} execution(s): "
            f"{len(result.process_died)} need attention, "
            f"{len(result.adoptable)} still running, "
            f"{len(result.left_alone)} unchanged"
        )
        for line in result.details:
            console.print(f"  {line}")
        for line in result.errors:
            console.print(f"  [red]{line}[/red]")
        if result.adoptable:
            console.print("Continue driving with: specflow orchestrate attach")


@app.command()
def plan(
    batch_size: int | None = typer.Option(
        None, "--batch-size", help="Tasks per batch when tasks.md has no sections"
    ),
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Preview the batches a new execution would run."""
    with _handle_errors("plan", json_output):
        rt = build_runtime(locate_project_root(root))
        config = rt.settings.orchestration.with_overrides(batch_size_fallback=batch_size)
        tasks_file = rt.task_source.tasks_file(rt.project_id)
        tasks = rt.task_source.load(rt.project_id)
        batch_plan = plan_batches(tasks, config.batch_size_fallback)

        if json_output:
            data = batch_plan.to_dict()
            data["tasks_file"] = str(tasks_file) if tasks_file else None
            _emit("plan", data)
            return

        if tasks_file is None:
            console.print("[yellow]No tasks.md found[/yellow]")
        else:
            console.print(f"Tasks: {tasks_file}")
        console.print(summarize_plan(batch_plan))
        if batch_plan.batches:
            table = Table(show_header=True, header_style="bold")
            table.add_column("#", justify="right")
            table.add_column("Section")
            table.add_column("Tasks")
            for index, batch in enumerate(batch_plan.batches):
                table.add_row(str(index), batch.name, ", ".join(batch.task_ids))
            console.print(table)
        for warning in batch_plan.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.command()
def doctor(
    root: Path | None = _root_option,
    json_output: bool = _json_option,
) -> None:
    """Check recorded executions for inconsistencies. Never changes state."""
    with _handle_errors("doctor", json_output):
        rt = build_runtime(locate_project_root(root))
        result = run_doctor(rt.project_id, rt.store.list(rt.project_id))
        if json_output:
            _emit("doctor", {
                "project_id": result.project_id,
                "healthy": result.is_healthy,
                "findings": [f.to_dict() for f in result.findings],
            })
        elif result.is_healthy:
            console.print("[green]No problems found[/green]")
        else:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Severity")
            table.add_column("Code")
            table.add_column("Message")
            table.add_column("Action")
            for finding in result.findings:
                style = "red" if finding.severity == "error" else "yellow"
                table.add_row(
                    f"[{style}]{finding.severity}[/{style}]",
                    finding.code,
                    finding.message,
                    finding.recommended_action,
                )
            console.print(table)
        if result.has_errors:
            raise typer.Exit(1)
