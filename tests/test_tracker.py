from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from foreman.agent import CommandResult, FakeCommandRunner
from foreman.errors import TrackerError
from foreman.tracker import Task, TaskStatus, TaskTracker


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(args=(), returncode=0, stdout=stdout, stderr="")


def fail(output: str = "error") -> CommandResult:
    return CommandResult(args=(), returncode=1, stdout="", stderr=output)


TASKS = [
    {"id": "task-1", "title": "First", "status": "in_progress", "priority": 1, "assignee": "CoderAgent"},
    {"id": "task-2", "title": "Second", "status": "open", "priority": 2, "assignee": None},
    {"id": "task-3", "title": "Third", "status": "tombstone", "priority": 3},
]


def test_list_tasks_parses_records(tmp_path: Path) -> None:
    runner = FakeCommandRunner({("bd", "--sandbox", "list", "--json"): ok(json.dumps(TASKS))})
    tracker = TaskTracker(runner, cwd=tmp_path)

    tasks = asyncio.run(tracker.list_tasks())

    assert [task.id for task in tasks] == ["task-1", "task-2", "task-3"]
    assert tasks[0].status == TaskStatus.IN_PROGRESS
    assert tasks[0].is_in_progress_for("CoderAgent")
    assert tasks[1].assignee == ""
    assert tasks[2].status == "tombstone"
    assert runner.calls[0].cwd == str(tmp_path)


def test_list_tasks_initialises_and_retries(tmp_path: Path) -> None:
    runner = FakeCommandRunner({("bd", "--sandbox", "list"): [fail("no database"), ok("[]")]})
    tracker = TaskTracker(runner, cwd=tmp_path)

    assert asyncio.run(tracker.list_tasks()) == []
    assert runner.invocations == [
        ("bd", "--sandbox", "list", "--json"),
        ("bd", "--sandbox", "init"),
        ("bd", "--sandbox", "list", "--json"),
    ]


def test_list_tasks_gives_up_after_retry(tmp_path: Path) -> None:
    runner = FakeCommandRunner({("bd", "--sandbox", "list"): fail("still broken")})
    tracker = TaskTracker(runner, cwd=tmp_path)

    with pytest.raises(TrackerError):
        asyncio.run(tracker.list_tasks())


def test_ready_tasks_keep_tracker_order(tmp_path: Path) -> None:
    ready = [{"id": f"task-{index}", "title": "t", "status": "open"} for index in (13, 10, 12)]
    runner = FakeCommandRunner({("bd", "--sandbox", "ready"): ok(json.dumps(ready))})
    tracker = TaskTracker(runner, cwd=tmp_path)

    assert [task.id for task in asyncio.run(tracker.ready_tasks())] == ["task-13", "task-10", "task-12"]


def test_invalid_json_raises(tmp_path: Path) -> None:
    runner = FakeCommandRunner({("bd", "--sandbox", "ready"): ok("not json")})
    tracker = TaskTracker(runner, cwd=tmp_path)

    with pytest.raises(TrackerError):
        asyncio.run(tracker.ready_tasks())


def test_show_details_unwraps_list(tmp_path: Path) -> None:
    runner = FakeCommandRunner(
        {("bd", "--sandbox", "show", "task-1", "--json"): ok(json.dumps([{"id": "task-1", "description": "CHALLENGE:complex"}]))}
    )
    tracker = TaskTracker(runner, cwd=tmp_path)

    details = asyncio.run(tracker.show_details("task-1"))

    assert details["description"] == "CHALLENGE:complex"


def test_update_is_best_effort(tmp_path: Path) -> None:
    runner = FakeCommandRunner({("bd", "--sandbox", "update"): fail("locked")})
    tracker = TaskTracker(runner, cwd=tmp_path)
    workspace = tmp_path / "agents" / "1"

    updated = asyncio.run(
        tracker.update("task-1", status=TaskStatus.IN_PROGRESS, assignee="CoderAgent-1", cwd=workspace)
    )

    assert not updated
    assert runner.invocations == [
        ("bd", "--sandbox", "update", "task-1", "--status=in_progress", "--assignee=CoderAgent-1")
    ]
    assert runner.calls[0].cwd == str(workspace)


def test_import_and_init_tolerate_failure(tmp_path: Path) -> None:
    runner = FakeCommandRunner({("bd",): fail("missing change-log")})
    tracker = TaskTracker(runner, cwd=tmp_path)

    assert not asyncio.run(tracker.import_log())
    assert not asyncio.run(tracker.init_from_log())
    assert runner.invocations == [
        ("bd", "--sandbox", "import", "-i", ".beads/issues.jsonl"),
        ("bd", "--sandbox", "init", "--from-jsonl"),
    ]


def test_task_complexity_marker() -> None:
    assert Task(id="t", description="Needs care. CHALLENGE:complex").is_complex
    assert not Task(id="t").is_complex
