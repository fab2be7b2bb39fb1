"""Subprocess plumbing for tracker, VCS and worker commands."""

from .runner import (
    AgentLauncher,
    CommandResult,
    CommandRunner,
    FakeCommandRunner,
    WorkerProcess,
)
from .utils import identity_environment, sanitize_environment

__all__ = [
    "AgentLauncher",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "WorkerProcess",
    "identity_environment",
    "sanitize_environment",
]
