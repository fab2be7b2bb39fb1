from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from foreman.directive import (
    DEFAULT_TEMPLATE,
    build_directive,
    read_project_context,
    render_directive,
)
from foreman.errors import DirectiveBuildError, TrackerError


class StubTracker:
    def __init__(self, detail: str | None) -> None:
        self.detail = detail

    async def show(self, task_id: str) -> str:
        if self.detail is None:
            raise TrackerError("show failed")
        return self.detail


def test_build_directive_combines_task_and_project_context(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    agents.write_text("Use pytest.\nKeep commits small.\n", encoding="utf-8")

    directive = asyncio.run(
        build_directive(
            StubTracker("task-7: Fix the parser"),
            agent_name="CoderAgent-2",
            task_id="task-7",
            context_file=agents,
        )
    )

    assert "You are CoderAgent-2" in directive
    assert "task-7: Fix the parser" in directive
    assert "Keep commits small." in directive


def test_project_context_is_limited(tmp_path: Path) -> None:
    agents = tmp_path / "AGENTS.md"
    agents.write_text("".join(f"line {index}\n" for index in range(150)), encoding="utf-8")

    context = read_project_context(agents)

    assert context.count("\n") == 100
    assert "line 99\n" in context
    assert "line 100" not in context


def test_missing_context_and_detail_are_tolerated(tmp_path: Path) -> None:
    directive = asyncio.run(
        build_directive(
            StubTracker(None),
            agent_name="CoderAgent",
            task_id="task-1",
            context_file=tmp_path / "missing.md",
        )
    )
    assert "task task-1" in directive


def test_custom_template(tmp_path: Path) -> None:
    template = tmp_path / "directive.txt"
    template.write_text("{agent_name} -> {task_id}", encoding="utf-8")

    directive = asyncio.run(
        build_directive(StubTracker(""), agent_name="A", task_id="t-1", template_path=template)
    )

    assert directive == "A -> t-1"


def test_unreadable_template_raises(tmp_path: Path) -> None:
    with pytest.raises(DirectiveBuildError):
        asyncio.run(
            build_directive(
                StubTracker(""), agent_name="A", task_id="t-1", template_path=tmp_path / "nope.txt"
            )
        )


def test_invalid_template_raises() -> None:
    with pytest.raises(DirectiveBuildError):
        render_directive("{unknown}", agent_name="A", task_id="t", task_context="", project_context="")


def test_default_template_placeholders() -> None:
    rendered = render_directive(
        DEFAULT_TEMPLATE, agent_name="A", task_id="t-9", task_context="{braces}", project_context=""
    )
    assert "{braces}" in rendered
