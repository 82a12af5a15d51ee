"""Orchestrator package for autonomous, batched delivery workflows.

Drives a project through design -> analyze -> implement -> verify -> merge,
running the implement phase as batches of tasks, healing failed batches
within bounds and persisting every transition so a restart can pick up
where the last process left off.

Core Components:
    - OrchestrationEngine: drives executions and exposes the control surface
    - StateStore: durable, serialized execution state (file or memory backend)
    - plan_batches(): groups incomplete tasks into batches
    - HealingCoordinator: one scoped recovery attempt per call
    - Reconciler: resolves executions left behind by an unclean shutdown

Configuration:
    - OrchestrationConfig / BudgetConfig: per-run options
    - EngineSettings / RunnerSettings: polling, timeouts and runner command
    - load_settings(): Load from .specflow/orchestration.yaml

Usage:
    from specflow.orchestrator import OrchestrationEngine, OrchestrationConfig

    execution_id = await engine.start("my-project", OrchestrationConfig(auto_merge=True))
    execution = await engine.wait(execution_id)
"""

from specflow.orchestrator.config import (
    BudgetConfig,
    EngineSettings,
    OrchestrationConfig,
    RunnerSettings,
    SpecflowSettings,
    load_settings,
    save_settings,
)
from specflow.orchestrator.engine import OrchestrationEngine
from specflow.orchestrator.errors import (
    ConfigValidationError,
    ConflictError,
    ExecutionNotFoundError,
    GatewayError,
    InvalidTransitionError,
    OrchestrationError,
    StaleStateError,
    StoreError,
    ValidationError,
)
from specflow.orchestrator.gateway import (
    JobStatus,
    PollResult,
    StepRequest,
    SubprocessGateway,
    TaskExecutorGateway,
)
from specflow.orchestrator.healing import FailureContext, HealingCoordinator, HealOutcome
from specflow.orchestrator.models import (
    BatchItem,
    BatchStatus,
    DecisionLogEntry,
    OrchestrationExecution,
    OrchestrationPhase,
    OrchestrationStatus,
    RecoveryOption,
    StepKind,
)
from specflow.orchestrator.planner import (
    BatchPlan,
    MarkdownTaskSource,
    Task,
    parse_tasks_markdown,
    plan_batches,
)
from specflow.orchestrator.probe import ProjectStateProbe, StateProbe
from specflow.orchestrator.reconcile import ReconcileResult, Reconciler
from specflow.orchestrator.store import FileBackend, MemoryBackend, StateStore

__all__ = [
    # Enums
    "OrchestrationStatus",
    "OrchestrationPhase",
    "BatchStatus",
    "RecoveryOption",
    "StepKind",
    "JobStatus",
    # Models
    "OrchestrationExecution",
    "BatchItem",
    "DecisionLogEntry",
    "Task",
    "BatchPlan",
    "FailureContext",
    "HealOutcome",
    "PollResult",
    "StepRequest",
    "ReconcileResult",
    # Config
    "OrchestrationConfig",
    "BudgetConfig",
    "EngineSettings",
    "RunnerSettings",
    "SpecflowSettings",
    "load_settings",
    "save_settings",
    # Components
    "OrchestrationEngine",
    "StateStore",
    "FileBackend",
    "MemoryBackend",
    "HealingCoordinator",
    "Reconciler",
    "TaskExecutorGateway",
    "SubprocessGateway",
    "StateProbe",
    "ProjectStateProbe",
    "MarkdownTaskSource",
    "parse_tasks_markdown",
    "plan_batches",
    # Exceptions
    "OrchestrationError",
    "ConflictError",
    "ValidationError",
    "ConfigValidationError",
    "InvalidTransitionError",
    "ExecutionNotFoundError",
    "StoreError",
    "StaleStateError",
    "GatewayError",
]
