"""Error taxonomy shared by the scheduling components."""

from __future__ import annotations

from enum import Enum


class ForemanError(RuntimeError):
    """Base class for Foreman errors."""


class ProjectConfigError(ForemanError):
    """Raised when the project descriptor cannot be read or validated."""


class IdentityLoadError(ForemanError):
    """Raised when an identity record cannot be read or validated."""


class NoAvailableIdentityError(ForemanError):
    """Raised when every identity in the pool is marked exhausted."""


class WorkspaceError(ForemanError):
    """Raised when a worker workspace cannot be created or branched."""


class DirectiveBuildError(ForemanError):
    """Raised when the worker directive cannot be rendered."""


class ProcessSpawnError(ForemanError):
    """Raised when the worker process fails to start."""


class AgentNotFoundError(ProcessSpawnError):
    """Raised when the worker executable cannot be located."""


class TrackerError(ForemanError):
    """Raised when the task tracker returns output that cannot be decoded."""


class FailureReason(str, Enum):
    """Reason recorded against a task when a dispatch attempt ends badly."""

    CLAIM_CONFLICT = "CLAIM_CONFLICT"
    WORKSPACE_CREATION_FAILED = "WORKSPACE_CREATION_FAILED"
    GIT_CONFLICT = "GIT_CONFLICT"
    DIRECTIVE_BUILD_FAILED = "DIRECTIVE_BUILD_FAILED"
    PROCESS_SPAWN_FAILED = "PROCESS_SPAWN_FAILED"
    FATAL_WORKER_OUTPUT = "FATAL_WORKER_OUTPUT"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    RUNTIME_TIMEOUT = "RUNTIME_TIMEOUT"
    RETRY_LIMIT_EXCEEDED = "RETRY_LIMIT_EXCEEDED"
    NO_AVAILABLE_IDENTITY = "NO_AVAILABLE_IDENTITY"
    STOPPED = "STOPPED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


__all__ = [
    "AgentNotFoundError",
    "DirectiveBuildError",
    "FailureReason",
    "ForemanError",
    "IdentityLoadError",
    "NoAvailableIdentityError",
    "ProcessSpawnError",
    "ProjectConfigError",
    "TrackerError",
    "WorkspaceError",
]
