"""Records reconstructed from the run journal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class WorkspaceRecord:
    worker_id: int
    path: str
    branch: str | None
    updated_at: datetime
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskRecord:
    task_id: str
    status: str
    worker_id: int | None
    first_seen: datetime
    updated_at: datetime
    attempts: int = 0
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


__all__ = ["TaskRecord", "WorkspaceRecord"]
