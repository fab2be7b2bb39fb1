"""Task claim registry shared by every dispatch attempt."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple

from .config import MAX_TASK_RETRIES

# The tracker can lag behind a worker that just finished.
COMPLETION_MASK_WINDOW = timedelta(minutes=10)


class RetryOutcome(NamedTuple):
    count: int
    exceeded: bool


class ClaimRegistry:
    """Mutual exclusion from task id to worker id, plus completion mask and retry counters.

    All three maps sit behind one lock, and reads take it as well.
    """

    def __init__(
        self,
        *,
        completion_window: timedelta = COMPLETION_MASK_WINDOW,
        max_retries: int = MAX_TASK_RETRIES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._claims: dict[str, int] = {}
        self._completed: dict[str, datetime] = {}
        self._retries: dict[str, int] = {}
        self._completion_window = completion_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_retries = max_retries

    def claim(self, task_id: str, worker_id: int) -> bool:
        """Insert the mapping iff absent. Exactly one concurrent caller wins."""

        with self._lock:
            if task_id in self._claims:
                return False
            self._claims[task_id] = worker_id
            return True

    def release(self, task_id: str) -> None:
        with self._lock:
            self._claims.pop(task_id, None)

    def is_claimed(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._claims

    def owner(self, task_id: str) -> int | None:
        with self._lock:
            return self._claims.get(task_id)

    def claimed_by(self, worker_id: int) -> list[str]:
        with self._lock:
            return [task for task, owner in self._claims.items() if owner == worker_id]

    def mark_completed(self, task_id: str) -> None:
        with self._lock:
            self._completed[task_id] = self._clock()

    def is_completed(self, task_id: str) -> bool:
        with self._lock:
            completed_at = self._completed.get(task_id)
            if completed_at is None:
                return False
            if self._clock() - completed_at < self._completion_window:
                return True
            del self._completed[task_id]
            return False

    def increment_retry(self, task_id: str) -> RetryOutcome:
        """Count one more retry; exceeded once the count is strictly above the cap."""

        with self._lock:
            count = self._retries.get(task_id, 0) + 1
            self._retries[task_id] = count
            return RetryOutcome(count=count, exceeded=count > self.max_retries)

    def retry_count(self, task_id: str) -> int:
        with self._lock:
            return self._retries.get(task_id, 0)

    def clear_retry(self, task_id: str) -> None:
        with self._lock:
            self._retries.pop(task_id, None)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "claims": dict(self._claims),
                "completed": sorted(self._completed),
                "retries": dict(self._retries),
            }


__all__ = ["COMPLETION_MASK_WINDOW", "ClaimRegistry", "RetryOutcome"]
