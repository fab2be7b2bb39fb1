"""Parsing of worker stream-json output into typed events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

EVENT_HISTORY_LIMIT = 100

# Matched against both the decoded content and the raw line.
FATAL_OUTPUT_MARKERS: tuple[str, ...] = (
    "Command rejected because it could not be parsed safely",
    "FATAL",
    "Quota exceeded",
    "429 Too Many Requests",
)
QUOTA_MARKERS: tuple[str, ...] = ("Quota exceeded", "429")


class EventType(str, Enum):
    INIT = "init"
    MESSAGE = "message"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    ERROR = "error"
    UNKNOWN = "unknown"


_KNOWN_TYPES = {member.value: member for member in EventType}


@dataclass(frozen=True, slots=True)
class Event:
    """One line of worker output. Always carries the raw line."""

    type: EventType
    raw: str
    role: str = ""
    content: str = ""
    tool_name: str = ""
    tool_id: str = ""
    tool_args: dict[str, Any] = field(default_factory=dict)
    status: str = ""
    session_id: str = ""
    model: str = ""
    stats: dict[str, Any] = field(default_factory=dict)
    worker_name: str = ""

    def summary(self, max_len: int = 100) -> str:
        """Short single-line rendering for activity feeds."""

        if self.type is EventType.INIT:
            return f"Session started (model: {self.model})"
        if self.type is EventType.TOOL_USE:
            return _tool_summary(self, max_len)
        if self.type is EventType.TOOL_RESULT:
            content = _flatten(self.content)
            if not content:
                return f"Result for: {self.tool_id}"
            return _truncate(content, max_len)
        if self.type is EventType.RESULT:
            return f"Complete (status: {self.status})"
        if self.type in (EventType.MESSAGE, EventType.ERROR):
            return _truncate(_flatten(self.content), max_len)
        return _truncate(self.raw, max_len)


def parse_line(line: str) -> Event:
    """Turn one output line into an Event. Never raises."""

    text = line.strip()
    if not text:
        return Event(type=EventType.UNKNOWN, raw=line)
    if text.startswith("{"):
        return _parse_structured(text, line)
    return Event(type=EventType.MESSAGE, role="system", content=text, raw=line)


def _parse_structured(text: str, line: str) -> Event:
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        return Event(type=EventType.UNKNOWN, raw=line, content=text)
    if not isinstance(payload, dict):
        return Event(type=EventType.UNKNOWN, raw=line, content=text)

    discriminator = payload.get("type")
    event_type = EventType.UNKNOWN
    if isinstance(discriminator, str):
        event_type = _KNOWN_TYPES.get(discriminator, EventType.UNKNOWN)

    content = _string(payload, "content")
    # Tool results report their text under "output".
    if not content and event_type is EventType.TOOL_RESULT:
        content = _string(payload, "output")

    tool_args: dict[str, Any] = {}
    for key in ("parameters", "args"):
        candidate = payload.get(key)
        if isinstance(candidate, dict):
            tool_args = candidate
            break

    stats = payload.get("stats")
    return Event(
        type=event_type,
        raw=line,
        role=_string(payload, "role"),
        content=content,
        tool_name=_string(payload, "tool_name"),
        tool_id=_string(payload, "tool_id"),
        tool_args=tool_args,
        status=_string(payload, "status"),
        session_id=_string(payload, "session_id"),
        model=_string(payload, "model"),
        stats=stats if isinstance(stats, dict) else {},
    )


def detect_fatal(event: Event) -> tuple[bool, str]:
    """Return (True, marker) when the event signals an unrecoverable worker state."""

    for marker in FATAL_OUTPUT_MARKERS:
        if marker in event.content or marker in event.raw:
            return True, marker
    return False, ""


def is_quota_rejection(event: Event) -> bool:
    return any(marker in event.content for marker in QUOTA_MARKERS)


class EventHistory:
    """Bounded ring of events with cursors that survive eviction.

    ``cursor`` counts back from the newest entry; ``detail_index`` is an
    absolute index into the ring. When the oldest entry is evicted both
    shift down by one so they keep pointing at the same event.
    """

    def __init__(self, limit: int = EVENT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("history limit must be >= 1")
        self._limit = limit
        self._events: list[Event] = []
        self.cursor = 0
        self.detail_index = 0

    def append(self, event: Event) -> None:
        self._events.append(event)
        while len(self._events) > self._limit:
            self._events.pop(0)
            if self.cursor > 0:
                self.cursor -= 1
            if self.detail_index > 0:
                self.detail_index -= 1

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._events))

    def __getitem__(self, index: int) -> Event:
        return self._events[index]

    def recent(self, count: int) -> list[Event]:
        return self._events[-count:] if count > 0 else []

    def for_worker(self, worker_name: str) -> list[int]:
        """Indices visible when the feed is filtered to one worker."""

        return [
            index
            for index, event in enumerate(self._events)
            if not event.worker_name or event.worker_name == worker_name
        ]


def _string(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""


def _flatten(text: str) -> str:
    return text.replace("\r", "").replace("\n", " ").strip()


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 3)] + "..."


def _tool_summary(event: Event, max_len: int) -> str:
    args = event.tool_args
    name = event.tool_name
    if name == "run_shell_command" and isinstance(args.get("command"), str):
        return "$ " + _truncate(args["command"], max_len - 2)
    if name in {"read_file", "write_file", "create_file", "edit_file"} and isinstance(
        args.get("file_path"), str
    ):
        verb = {"read_file": "read", "edit_file": "edit"}.get(name, "write")
        return f"{verb}: {args['file_path'].rsplit('/', 1)[-1]}"
    if name == "list_directory" and isinstance(args.get("dir_path"), str):
        return f"ls: {args['dir_path']}"
    if name in {"search_files", "grep"} and isinstance(args.get("query"), str):
        return f"search: {_truncate(args['query'], 30)}"
    return name or "tool"


__all__ = [
    "EVENT_HISTORY_LIMIT",
    "Event",
    "EventHistory",
    "EventType",
    "FATAL_OUTPUT_MARKERS",
    "detect_fatal",
    "is_quota_rejection",
    "parse_line",
]
