from __future__ import annotations

import json

import pytest

from foreman.events import (
    Event,
    EventHistory,
    EventType,
    detect_fatal,
    is_quota_rejection,
    parse_line,
)


def test_empty_line_is_unknown_and_keeps_raw() -> None:
    event = parse_line("   ")
    assert event.type is EventType.UNKNOWN
    assert event.raw == "   "


def test_plain_text_is_system_message() -> None:
    event = parse_line("Loaded cached credentials.")
    assert event.type is EventType.MESSAGE
    assert event.role == "system"
    assert event.content == "Loaded cached credentials."
    assert event.raw == "Loaded cached credentials."


def test_raw_keeps_surrounding_whitespace() -> None:
    text_line = "  Loaded cached credentials.\r"
    json_line = '  {"type": "message", "content": "hi"}  '

    assert parse_line(text_line).raw == text_line
    assert parse_line(text_line).content == "Loaded cached credentials."
    assert parse_line(json_line).raw == json_line
    assert parse_line(json_line).type is EventType.MESSAGE
    assert parse_line("  [1, 2]").raw == "  [1, 2]"


def test_broken_json_falls_back_to_unknown() -> None:
    event = parse_line('{"type": "message", "content": ')
    assert event.type is EventType.UNKNOWN
    assert event.raw == '{"type": "message", "content": '


def test_objects_without_known_type_are_unknown() -> None:
    assert parse_line("{}").type is EventType.UNKNOWN
    assert parse_line('{"type": 5}').type is EventType.UNKNOWN


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"type": "init", "session_id": "s-1", "model": "flash"}, EventType.INIT),
        ({"type": "message", "role": "assistant", "content": "hi"}, EventType.MESSAGE),
        ({"type": "tool_use", "tool_name": "read_file", "tool_id": "t1"}, EventType.TOOL_USE),
        ({"type": "tool_result", "tool_id": "t1", "output": "ok"}, EventType.TOOL_RESULT),
        ({"type": "result", "status": "success", "stats": {"tokens": 3}}, EventType.RESULT),
        ({"type": "error", "content": "boom"}, EventType.ERROR),
        ({"type": "telemetry"}, EventType.UNKNOWN),
    ],
)
def test_structured_types(payload, expected) -> None:
    line = json.dumps(payload)
    event = parse_line(line)
    assert event.type is expected
    assert event.raw == line


def test_structured_fields_are_populated() -> None:
    init = parse_line(json.dumps({"type": "init", "session_id": "s-1", "model": "flash"}))
    assert (init.session_id, init.model) == ("s-1", "flash")

    result = parse_line(json.dumps({"type": "result", "status": "success", "stats": {"tokens": 3}}))
    assert result.status == "success"
    assert result.stats == {"tokens": 3}


def test_tool_result_content_falls_back_to_output() -> None:
    event = parse_line(json.dumps({"type": "tool_result", "tool_id": "t1", "output": "3 files"}))
    assert event.content == "3 files"


def test_output_field_ignored_for_other_types() -> None:
    event = parse_line(json.dumps({"type": "message", "output": "ignored"}))
    assert event.content == ""


def test_tool_args_prefer_parameters_then_args() -> None:
    both = parse_line(
        json.dumps({"type": "tool_use", "parameters": {"a": 1}, "args": {"b": 2}})
    )
    assert both.tool_args == {"a": 1}

    args_only = parse_line(json.dumps({"type": "tool_use", "args": {"b": 2}}))
    assert args_only.tool_args == {"b": 2}


def test_detect_fatal_checks_content_and_raw() -> None:
    fatal, marker = detect_fatal(parse_line(json.dumps({"type": "error", "content": "Quota exceeded for model"})))
    assert fatal
    assert marker == "Quota exceeded"

    raw_only = Event(type=EventType.UNKNOWN, raw="FATAL: sandbox died")
    assert detect_fatal(raw_only) == (True, "FATAL")

    assert detect_fatal(parse_line("all good")) == (False, "")


def test_quota_rejection_markers() -> None:
    assert is_quota_rejection(parse_line("429 Too Many Requests"))
    assert not is_quota_rejection(parse_line("Command rejected because it could not be parsed safely"))


def test_summary_for_shell_command() -> None:
    event = parse_line(
        json.dumps({"type": "tool_use", "tool_name": "run_shell_command", "parameters": {"command": "ls -la"}})
    )
    assert event.summary() == "$ ls -la"


def test_history_evicts_oldest_and_shifts_cursors() -> None:
    history = EventHistory(limit=3)
    for index in range(3):
        history.append(Event(type=EventType.MESSAGE, raw=str(index)))
    history.cursor = 2
    history.detail_index = 1

    history.append(Event(type=EventType.MESSAGE, raw="3"))

    assert len(history) == 3
    assert [event.raw for event in history] == ["1", "2", "3"]
    assert history.cursor == 1
    assert history.detail_index == 0


def test_history_cursor_at_zero_stays_put() -> None:
    history = EventHistory(limit=1)
    history.append(Event(type=EventType.MESSAGE, raw="a"))
    history.append(Event(type=EventType.MESSAGE, raw="b"))
    assert history.cursor == 0
    assert history[0].raw == "b"


def test_history_filter_by_worker() -> None:
    history = EventHistory()
    history.append(Event(type=EventType.MESSAGE, raw="a", worker_name="w1"))
    history.append(Event(type=EventType.MESSAGE, raw="b", worker_name="w2"))
    history.append(Event(type=EventType.MESSAGE, raw="c"))
    assert history.for_worker("w1") == [0, 2]
