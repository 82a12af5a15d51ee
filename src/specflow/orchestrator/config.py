"""Orchestration configuration.

Three layers of settings:

- ``OrchestrationConfig`` (with ``BudgetConfig``): the per-run options a
  caller passes to ``start()``. Snapshotted into the execution and immutable
  for its lifetime. Validated with pydantic.
- ``EngineSettings``: timing knobs of the driving loop (poll interval, step
  timeout, heartbeat and staleness thresholds).
- ``RunnerSettings``: how the subprocess gateway launches the skill runner.

All three can be loaded from ``.specflow/orchestration.yaml``::

    orchestration:
      auto_merge: false
      max_heal_attempts: 1
      budget:
        max_total: 50.0
    engine:
      poll_interval: 5
    runner:
      command: ["claude", "-p", "--output-format", "json"]
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .errors import ConfigValidationError, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".specflow"
CONFIG_FILENAME = "orchestration.yaml"


# =============================================================================
# Per-run configuration
# =============================================================================


class BudgetConfig(BaseModel):
    """Spending caps in USD."""

    model_config = ConfigDict(frozen=True, extra="allow")

    max_per_batch: float = Field(5.0, ge=0)
    max_total: float = Field(50.0, ge=0)
    healing_budget: float = Field(2.0, ge=0)


class OrchestrationConfig(BaseModel):
    """Options for one orchestration run."""

    model_config = ConfigDict(frozen=True, extra="allow")

    auto_merge: bool = False
    additional_context: str = ""
    skip_design: bool = False
    skip_analyze: bool = False
    skip_implement: bool = False
    skip_verify: bool = False
    auto_heal: bool = True
    max_heal_attempts: int = Field(1, ge=0, le=5)
    batch_size_fallback: int = Field(15, ge=1, le=50)
    pause_between_batches: bool = False
    budget: BudgetConfig = Field(default_factory=BudgetConfig)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationConfig:
        """Validate a mapping into a config.

        Raises:
            ValidationError: If any value is out of range or of the wrong type.
        """
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as exc:
            problems = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            summary = "; ".join(f"{p['field']}: {p['message']}" for p in problems)
            raise ValidationError(
                f"Invalid orchestration config: {summary}", problems
            ) from exc

    def with_overrides(self, **overrides: Any) -> OrchestrationConfig:
        """Return a validated copy with ``None``-filtered overrides applied."""
        data = self.to_dict()
        budget = dict(data.get("budget") or {})
        for key, value in overrides.items():
            if value is None:
                continue
            if key in BudgetConfig.model_fields:
                budget[key] = value
            else:
                data[key] = value
        data["budget"] = budget
        return OrchestrationConfig.from_dict(data)


# =============================================================================
# Engine and runner settings
# =============================================================================


@dataclass
class EngineSettings:
    """Timing of the engine's driving loop, in seconds."""

    poll_interval: float = 5.0
    step_timeout: float = 30 * 60.0
    heartbeat_interval: float = 30.0
    staleness_threshold: float = 5 * 60.0
    estimated_step_cost: float = 0.0


@dataclass
class RunnerSettings:
    """Command line of the skill runner used by ``SubprocessGateway``.

    The request prompt is written to the runner's stdin. ``jobs_dir`` is
    relative to the project root unless absolute.
    """

    command: list[str] = field(
        default_factory=lambda: ["claude", "-p", "--output-format", "json"]
    )
    jobs_dir: str = ".specflow/jobs"


@dataclass
class SpecflowSettings:
    """Everything ``orchestration.yaml`` can hold."""

    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    engine: EngineSettings = field(default_factory=EngineSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)


def config_path(repo_root: Path) -> Path:
    return repo_root / CONFIG_DIR / CONFIG_FILENAME


def _dataclass_from(cls: type, section: Any, name: str) -> Any:
    if section is None:
        return cls()
    if not isinstance(section, dict):
        raise ConfigValidationError(f"Section {name!r} must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        logger.warning("Ignoring unknown %s settings: %s", name, ", ".join(unknown))
    try:
        return cls(**{k: v for k, v in section.items() if k in known})
    except TypeError as exc:
        raise ConfigValidationError(f"Invalid {name} settings: {exc}") from exc


def load_settings(repo_root: Path) -> SpecflowSettings:
    """Load settings from ``.specflow/orchestration.yaml``.

    Args:
        repo_root: Project root directory

    Returns:
        SpecflowSettings (defaults if the file does not exist)

    Raises:
        ConfigValidationError: If the YAML is malformed or holds invalid values
    """
    path = config_path(repo_root)
    if not path.exists():
        logger.debug("No orchestration config at %s, using defaults", path)
        return SpecflowSettings()

    yaml = YAML(typ="safe")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    except YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping")

    try:
        orchestration = OrchestrationConfig.from_dict(data.get("orchestration") or {})
    except ValidationError as exc:
        raise ConfigValidationError(f"{path}: {exc}", exc.errors) from exc

    runner = _dataclass_from(RunnerSettings, data.get("runner"), "runner")
    if isinstance(runner.command, str):
        runner.command = runner.command.split()

    return SpecflowSettings(
        orchestration=orchestration,
        engine=_dataclass_from(EngineSettings, data.get("engine"), "engine"),
        runner=runner,
    )


def save_settings(repo_root: Path, settings: SpecflowSettings) -> Path:
    """Write settings to ``.specflow/orchestration.yaml``.

    Merges with the existing file so unrelated top-level sections survive.
    """
    path = config_path(repo_root)
    yaml = YAML()
    yaml.preserve_quotes = True

    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    else:
        data = {}
        path.parent.mkdir(parents=True, exist_ok=True)

    data["orchestration"] = settings.orchestration.to_dict()
    data["engine"] = asdict(settings.engine)
    data["runner"] = asdict(settings.runner)

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f)

    logger.info("Saved orchestration settings to %s", path)
    return path
