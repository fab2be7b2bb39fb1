"""Assembly of the directive handed to each worker process."""

from __future__ import annotations

import logging
from itertools import islice
from pathlib import Path

from .errors import DirectiveBuildError, TrackerError
from .tracker import TaskTracker

logger = logging.getLogger(__name__)

PROJECT_CONTEXT_LINES = 100

DEFAULT_TEMPLATE = """\
You are {agent_name}, an autonomous coding agent working on task {task_id}.

Task:
{task_context}

Project guidelines:
{project_context}

Rules:
- Work only on task {task_id} in the current directory.
- Commit your changes with a message referencing {task_id} before you finish.
- Close the task in the tracker when the work is done and pushed.
- Do not leave uncommitted changes behind.
"""


def read_project_context(path: Path | None, max_lines: int = PROJECT_CONTEXT_LINES) -> str:
    """First ``max_lines`` lines of the project guidelines file, or an empty string."""

    if path is None:
        return ""
    try:
        with Path(path).open(encoding="utf-8", errors="replace") as handle:
            return "".join(islice(handle, max_lines))
    except OSError:
        return ""


def load_template(path: Path | None) -> str:
    if path is None:
        return DEFAULT_TEMPLATE
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise DirectiveBuildError(f"Cannot read directive template {path}: {exc}") from exc


def render_directive(
    template: str,
    *,
    agent_name: str,
    task_id: str,
    task_context: str,
    project_context: str,
) -> str:
    try:
        return template.format(
            agent_name=agent_name,
            task_id=task_id,
            task_context=task_context.strip(),
            project_context=project_context.strip(),
        )
    except (KeyError, IndexError, ValueError) as exc:
        raise DirectiveBuildError(f"Directive template is invalid: {exc!r}") from exc


async def build_directive(
    tracker: TaskTracker,
    *,
    agent_name: str,
    task_id: str,
    template_path: Path | None = None,
    context_file: Path | None = None,
) -> str:
    """Combine the tracker's task detail with project guidelines into one directive."""

    try:
        task_context = await tracker.show(task_id)
    except TrackerError as exc:
        logger.warning("Task detail unavailable", extra={"task_id": task_id, "error": str(exc)})
        task_context = ""

    return render_directive(
        load_template(template_path),
        agent_name=agent_name,
        task_id=task_id,
        task_context=task_context,
        project_context=read_project_context(context_file),
    )


__all__ = [
    "DEFAULT_TEMPLATE",
    "PROJECT_CONTEXT_LINES",
    "build_directive",
    "load_template",
    "read_project_context",
    "render_directive",
]
