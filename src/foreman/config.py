"""Configuration management for Foreman."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ProjectConfigError

MAX_TASK_RETRIES = 5
DEFAULT_BRANCH = "main"
PROJECT_DESCRIPTOR = "project.json"


class ForemanSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    home: Path = Field(default=Path("~/.foreman"), validation_alias="FOREMAN_HOME")
    agent_path: str = Field(default="gemini", validation_alias="FOREMAN_AGENT_PATH")
    agent_flags: str = Field(default="--yolo --sandbox", validation_alias="FOREMAN_AGENT_FLAGS")
    quota_flags: str = Field(default="--dump-quota", validation_alias="FOREMAN_QUOTA_FLAGS")
    tracker_path: str = Field(default="bd", validation_alias="FOREMAN_TRACKER_PATH")
    git_path: str = Field(default="git", validation_alias="FOREMAN_GIT_PATH")
    log_level: str = Field(default="INFO", validation_alias="FOREMAN_LOG_LEVEL")
    worker_name: str = Field(default="CoderAgent", validation_alias="FOREMAN_WORKER_NAME")
    pooling_enabled: bool = Field(default=True, validation_alias="FOREMAN_POOLING_ENABLED")
    idle_timeout_seconds: float = Field(default=600.0, validation_alias="FOREMAN_IDLE_TIMEOUT")
    max_task_runtime_seconds: float = Field(
        default=1800.0, validation_alias="FOREMAN_MAX_TASK_RUNTIME"
    )
    tick_seconds: float = Field(default=1.0, validation_alias="FOREMAN_TICK_SECONDS")
    dispatch_every_ticks: int = Field(default=5, validation_alias="FOREMAN_DISPATCH_EVERY")
    task_refresh_ticks: int = Field(default=50, validation_alias="FOREMAN_TASK_REFRESH_TICKS")
    quota_refresh_ticks: int = Field(default=25, validation_alias="FOREMAN_QUOTA_REFRESH_TICKS")
    command_timeout_seconds: float = Field(
        default=120.0, validation_alias="FOREMAN_COMMAND_TIMEOUT"
    )
    journal_path: Path | None = Field(default=None, validation_alias="FOREMAN_JOURNAL_PATH")
    default_model: str = Field(
        default="gemini-3-flash-preview", validation_alias="FOREMAN_DEFAULT_MODEL"
    )
    complex_model: str = Field(
        default="gemini-3-pro-preview", validation_alias="FOREMAN_COMPLEX_MODEL"
    )
    quota_categories: dict[str, str] = Field(
        default_factory=lambda: {
            "gemini-3-flash-preview": "flash",
            "gemini-3-pro-preview": "pro",
        },
        validation_alias="FOREMAN_QUOTA_CATEGORIES",
    )
    directive_template: Path | None = Field(
        default=None, validation_alias="FOREMAN_DIRECTIVE_TEMPLATE"
    )
    project_context_file: Path | None = Field(
        default=Path("AGENTS.md"), validation_alias="FOREMAN_PROJECT_CONTEXT"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FOREMAN_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("idle_timeout_seconds", "max_task_runtime_seconds", "tick_seconds")
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and tick interval must be > 0")
        return value

    @field_validator("dispatch_every_ticks", "task_refresh_ticks", "quota_refresh_ticks")
    @classmethod
    def _require_positive_ticks(cls, value: int) -> int:
        if value < 1:
            raise ValueError("tick counts must be >= 1")
        return value

    @property
    def identities_dir(self) -> Path:
        return self.home / "identities"

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    def agent_flag_list(self) -> list[str]:
        return shlex.split(self.agent_flags)

    def quota_flag_list(self) -> list[str]:
        return shlex.split(self.quota_flags)


class ProjectConfig(BaseModel):
    """Per-project descriptor stored alongside the project's repository."""

    id: int = Field(default=0, description="Numeric project identifier.")
    name: str = Field(default="", description="Display name of the project.")
    repo_url: str = Field(default="", description="Remote the source repository was cloned from.")
    branch: str = Field(default=DEFAULT_BRANCH, description="Branch workers build on.")
    agent_count: int = Field(default=1, description="Number of worker slots.")
    use_account_pooling: bool = Field(
        default=True, description="Rotate identities across dispatches."
    )
    idle_timeout_seconds: float = Field(default=0, description="Override for the idle timeout.")
    max_task_runtime_seconds: float = Field(
        default=0, description="Override for the runtime ceiling."
    )
    max_retries: int = Field(default=0, description="Override for the uncommitted-changes retry cap.")
    cooldown_seconds: float = Field(
        default=0, description="Override for the delay between dispatch rounds."
    )
    hooks_path: str = Field(
        default="scripts/hooks", description="core.hooksPath configured in new workspaces."
    )

    @field_validator("branch", mode="before")
    @classmethod
    def _default_branch(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_BRANCH
        return value.strip() if isinstance(value, str) else value

    @field_validator("agent_count")
    @classmethod
    def _at_least_one_agent(cls, value: int) -> int:
        return max(1, value)


def load_project_config(path: Path) -> ProjectConfig:
    """Read a project descriptor, accepting either a file or its directory."""

    descriptor = Path(path)
    if descriptor.is_dir():
        descriptor = descriptor / PROJECT_DESCRIPTOR
    try:
        document = yaml.safe_load(descriptor.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ProjectConfigError(f"Cannot read project descriptor {descriptor}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ProjectConfigError(f"Failed to parse project descriptor {descriptor}: {exc}") from exc

    try:
        return ProjectConfig.model_validate(document or {})
    except ValidationError as exc:
        raise ProjectConfigError(f"Project descriptor validation error in {descriptor}: {exc}") from exc


@dataclass(slots=True)
class RunPolicy:
    """Effective scheduling policy after project overrides are applied."""

    worker_name: str = "CoderAgent"
    worker_count: int = 1
    branch: str = DEFAULT_BRANCH
    pooling_enabled: bool = True
    idle_timeout: timedelta = timedelta(minutes=10)
    max_task_runtime: timedelta = timedelta(minutes=30)
    max_retries: int = MAX_TASK_RETRIES
    dispatch_every_ticks: int = 5
    task_refresh_ticks: int = 50
    quota_refresh_ticks: int = 25
    exit_once: bool = False
    default_model: str = "gemini-3-flash-preview"
    complex_model: str = "gemini-3-pro-preview"
    hooks_path: str = "scripts/hooks"


def build_policy(
    settings: ForemanSettings,
    project: ProjectConfig | None = None,
    *,
    exit_once: bool = False,
) -> RunPolicy:
    """Merge settings defaults with the project's non-zero overrides."""

    policy = RunPolicy(
        worker_name=settings.worker_name,
        pooling_enabled=settings.pooling_enabled,
        idle_timeout=timedelta(seconds=settings.idle_timeout_seconds),
        max_task_runtime=timedelta(seconds=settings.max_task_runtime_seconds),
        dispatch_every_ticks=settings.dispatch_every_ticks,
        task_refresh_ticks=settings.task_refresh_ticks,
        quota_refresh_ticks=settings.quota_refresh_ticks,
        exit_once=exit_once,
        default_model=settings.default_model,
        complex_model=settings.complex_model,
    )
    if project is None:
        return policy

    policy.branch = project.branch
    policy.worker_count = project.agent_count
    policy.pooling_enabled = project.use_account_pooling
    policy.hooks_path = project.hooks_path
    if project.idle_timeout_seconds > 0:
        policy.idle_timeout = timedelta(seconds=project.idle_timeout_seconds)
    if project.max_task_runtime_seconds > 0:
        policy.max_task_runtime = timedelta(seconds=project.max_task_runtime_seconds)
    if project.max_retries > 0:
        policy.max_retries = project.max_retries
    if project.cooldown_seconds > 0:
        policy.dispatch_every_ticks = max(
            1, round(project.cooldown_seconds / settings.tick_seconds)
        )
    return policy


@lru_cache(maxsize=1)
def get_settings() -> ForemanSettings:
    """Return cached settings instance."""

    settings = ForemanSettings()
    settings.home = settings.home.expanduser().resolve()
    if settings.journal_path is not None:
        settings.journal_path = settings.journal_path.expanduser().resolve()
    return settings


__all__ = [
    "ForemanSettings",
    "MAX_TASK_RETRIES",
    "ProjectConfig",
    "RunPolicy",
    "build_policy",
    "get_settings",
    "load_project_config",
]
