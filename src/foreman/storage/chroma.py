"""Chroma-backed run journal."""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import TaskRecord, WorkspaceRecord

logger = logging.getLogger(__name__)

TASK_EVENT_TYPES = frozenset(
    {"task_claimed", "task_started", "task_completed", "task_failed", "task_retry"}
)

_STATUS_BY_EVENT = {
    "task_claimed": "claimed",
    "task_started": "running",
    "task_completed": "completed",
    "task_failed": "failed",
    "task_retry": "retrying",
}


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """The slice of the Chroma collection API the journal uses."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEntry:
    id: str
    stream: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


class RunJournal:
    """Append-only record of task lifecycle and workspace events."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "foreman_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install foreman with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        self._ensure_collection()
        return True

    def append(
        self,
        *,
        stream: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEntry:
        collection = self._ensure_collection()
        counter = self._counters[stream] = self._counters[stream] + 1
        timestamp = self._clock()
        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {
            "stream": stream,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        # Chroma rejects None metadata values.
        record_metadata.update({key: value for key, value in (metadata or {}).items() if value is not None})

        entry_id = f"{stream}:{uuid.uuid4().hex}"
        collection.add(documents=[document], metadatas=[record_metadata], ids=[entry_id])
        return JournalEntry(
            id=entry_id,
            stream=stream,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def record_task_event(
        self,
        *,
        task_id: str,
        event_type: str,
        worker_id: int | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEntry:
        if event_type not in TASK_EVENT_TYPES:
            raise ValueError(f"Unknown task event type: {event_type}")
        payload = {
            "task_id": task_id,
            "worker_id": worker_id,
            "status": _STATUS_BY_EVENT[event_type],
            "reason": reason,
        }
        if metadata:
            payload.update(metadata)
        return self.append(
            stream=f"task::{task_id}",
            event_type=event_type,
            body=payload,
            metadata={
                "task_id": task_id,
                "worker_id": worker_id,
                "status": payload["status"],
                "reason": reason,
            },
        )

    def record_workspace(
        self,
        *,
        worker_id: int,
        path: str,
        branch: str | None,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorkspaceRecord:
        payload = {"worker_id": worker_id, "path": path, "branch": branch, "status": status}
        if metadata:
            payload.update(metadata)
        entry = self.append(
            stream=f"workspace::{worker_id}",
            event_type="workspace_update",
            body=payload,
            metadata={"worker_id": worker_id, "path": path, "status": status},
        )
        return WorkspaceRecord(
            worker_id=worker_id,
            path=path,
            branch=branch,
            updated_at=entry.timestamp,
            status=status,
            metadata=metadata or {},
        )

    def search(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEntry]:
        collection = self._ensure_collection()
        entries = self._convert_result(collection.get(where=filters, limit=limit))
        if query:
            needle = query.lower()
            entries = [
                entry
                for entry in entries
                if needle in entry.document.lower()
                or any(needle in str(value).lower() for value in entry.metadata.values())
            ]
        return entries[:limit] if limit else entries

    def list_workspaces(self, worker_id: int | None = None) -> list[WorkspaceRecord]:
        latest: dict[int, WorkspaceRecord] = {}
        for entry in self.search(filters={"event_type": "workspace_update"}):
            if worker_id is not None and entry.metadata.get("worker_id") != worker_id:
                continue
            doc = json.loads(entry.document)
            record = WorkspaceRecord(
                worker_id=int(doc["worker_id"]),
                path=doc["path"],
                branch=doc.get("branch"),
                updated_at=entry.timestamp,
                status=doc.get("status", "unknown"),
                metadata={k: v for k, v in doc.items() if k not in {"worker_id", "path", "branch", "status"}},
            )
            latest[record.worker_id] = record
        return [latest[key] for key in sorted(latest)]

    def replay_tasks(self) -> list[TaskRecord]:
        """Fold task events into the latest known state per task."""

        tasks: dict[str, TaskRecord] = {}
        entries = [entry for entry in self.search() if entry.event_type in TASK_EVENT_TYPES]
        entries.sort(key=lambda entry: entry.timestamp)
        for entry in entries:
            doc = json.loads(entry.document)
            task_id = doc.get("task_id")
            if not task_id:
                continue
            record = tasks.get(task_id)
            if record is None:
                record = tasks[task_id] = TaskRecord(
                    task_id=task_id,
                    status=doc.get("status", "unknown"),
                    worker_id=doc.get("worker_id"),
                    first_seen=entry.timestamp,
                    updated_at=entry.timestamp,
                )
            record.status = doc.get("status", record.status)
            record.worker_id = doc.get("worker_id", record.worker_id)
            record.updated_at = entry.timestamp
            record.reason = doc.get("reason")
            if entry.event_type == "task_started":
                record.attempts += 1
        return sorted(tasks.values(), key=lambda record: record.updated_at)

    def list_failures(self, limit: int | None = None) -> list[JournalEntry]:
        failures = self.search(filters={"event_type": "task_failed"})
        failures.sort(key=lambda entry: entry.timestamp, reverse=True)
        return failures[:limit] if limit else failures

    def _convert_result(self, result: dict[str, list[Any]]) -> list[JournalEntry]:
        entries: list[JournalEntry] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for entry_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            entries.append(
                JournalEntry(
                    id=entry_id,
                    stream=metadata.get("stream", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        entries.sort(key=lambda entry: (entry.stream, entry.metadata.get("sequence", 0)))
        return entries


__all__ = [
    "ChromaUnavailableError",
    "JournalEntry",
    "RunJournal",
    "TASK_EVENT_TYPES",
]
