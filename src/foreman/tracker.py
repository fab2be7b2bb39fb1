"""Client for the external task tracker CLI."""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, ValidationError, field_validator

from .agent.runner import CommandResult, CommandRunner
from .errors import TrackerError

logger = logging.getLogger(__name__)

CHANGE_LOG = ".beads/issues.jsonl"
COMPLEXITY_MARKER = "CHALLENGE:complex"


class TaskStatus(str, Enum):
    OPEN = "open"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CLOSED = "closed"


class Task(BaseModel):
    """Snapshot of one tracker task. The tracker owns the record."""

    id: str
    title: str = ""
    # Statuses the enum does not know are kept verbatim.
    status: Union[TaskStatus, str] = TaskStatus.OPEN
    priority: int = 0
    assignee: str = ""
    description: str = ""

    @field_validator("assignee", "description", "title", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if value is None:
            return TaskStatus.OPEN
        try:
            return TaskStatus(value)
        except ValueError:
            return value

    @field_validator("priority", mode="before")
    @classmethod
    def _none_to_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @property
    def is_complex(self) -> bool:
        return COMPLEXITY_MARKER in self.description

    def is_in_progress_for(self, worker_name: str) -> bool:
        return self.status == TaskStatus.IN_PROGRESS and self.assignee == worker_name


class TaskTracker:
    """Runs tracker commands in sandbox mode from a working directory."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        cwd: Path,
        executable: str = "bd",
    ) -> None:
        self._runner = runner
        self._cwd = Path(cwd)
        self._executable = executable

    @property
    def cwd(self) -> Path:
        return self._cwd

    async def _run(self, *args: str, cwd: Path | None = None) -> CommandResult:
        return await self._runner.run(self._executable, "--sandbox", *args, cwd=cwd or self._cwd)

    async def list_tasks(self) -> list[Task]:
        """All tasks. Initialises the tracker once and retries if the first listing fails."""

        result = await self._run("list", "--json")
        if not result.ok:
            logger.info("Tracker list failed, initialising", extra={"output": result.output[-500:]})
            await self._run("init")
            result = await self._run("list", "--json")
            if not result.ok:
                raise TrackerError(f"Tracker list failed: {result.output.strip()}")
        return _parse_tasks(result.stdout)

    async def ready_tasks(self) -> list[Task]:
        """Tasks eligible to start, in tracker order."""

        result = await self._run("ready", "--json")
        if not result.ok:
            raise TrackerError(f"Tracker ready failed: {result.output.strip()}")
        return _parse_tasks(result.stdout)

    async def show(self, task_id: str) -> str:
        result = await self._run("show", task_id)
        if not result.ok:
            raise TrackerError(f"Tracker show {task_id} failed: {result.output.strip()}")
        return result.stdout

    async def show_details(self, task_id: str) -> dict[str, Any]:
        result = await self._run("show", task_id, "--json")
        if not result.ok:
            raise TrackerError(f"Tracker show {task_id} failed: {result.output.strip()}")
        try:
            document = json.loads(result.stdout)
        except ValueError as exc:
            raise TrackerError(f"Tracker show {task_id} returned invalid JSON") from exc
        # Some tracker versions wrap the record in a list.
        if isinstance(document, list) and document and isinstance(document[0], dict):
            document = document[0]
        if not isinstance(document, dict):
            raise TrackerError(f"Tracker show {task_id} returned an unexpected document")
        return document

    async def update(
        self,
        task_id: str,
        *,
        status: TaskStatus | str,
        assignee: str,
        cwd: Path | None = None,
    ) -> bool:
        """Best-effort status update; failures are logged and reported as False."""

        status_value = status.value if isinstance(status, TaskStatus) else status
        result = await self._run(
            "update", task_id, f"--status={status_value}", f"--assignee={assignee}", cwd=cwd
        )
        if not result.ok:
            logger.warning(
                "Tracker update failed",
                extra={"task_id": task_id, "status": status_value, "output": result.output[-500:]},
            )
        return result.ok

    async def import_log(self) -> bool:
        result = await self._run("import", "-i", CHANGE_LOG)
        if not result.ok:
            logger.debug("Tracker import skipped", extra={"output": result.output[-500:]})
        return result.ok

    async def init_from_log(self, cwd: Path | None = None) -> bool:
        result = await self._run("init", "--from-jsonl", cwd=cwd)
        if not result.ok:
            logger.debug("Tracker init from change-log skipped", extra={"output": result.output[-500:]})
        return result.ok


def _parse_tasks(output: str) -> list[Task]:
    text = output.strip()
    if not text:
        return []
    try:
        document = json.loads(text)
    except ValueError as exc:
        raise TrackerError(f"Tracker returned invalid JSON: {exc}") from exc
    if document is None:
        return []
    if not isinstance(document, list):
        raise TrackerError("Tracker returned a non-list task document")

    tasks: list[Task] = []
    for record in document:
        if not isinstance(record, dict):
            continue
        try:
            tasks.append(Task.model_validate(record))
        except ValidationError as exc:
            logger.warning("Skipping malformed task record", extra={"error": str(exc)})
    return tasks


__all__ = ["CHANGE_LOG", "COMPLEXITY_MARKER", "Task", "TaskStatus", "TaskTracker"]
