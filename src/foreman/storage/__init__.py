"""Persistent run journal for Foreman."""

from .chroma import ChromaUnavailableError, JournalEntry, RunJournal, TASK_EVENT_TYPES
from .models import TaskRecord, WorkspaceRecord

__all__ = [
    "ChromaUnavailableError",
    "JournalEntry",
    "RunJournal",
    "TASK_EVENT_TYPES",
    "TaskRecord",
    "WorkspaceRecord",
]
