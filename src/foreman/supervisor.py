"""Idle and runtime checks for running workers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Protocol

from .errors import FailureReason


class SupervisedWorker(Protocol):
    id: int
    current_task_id: str
    task_start_time: datetime | None
    last_event_time: datetime | None

    @property
    def is_running(self) -> bool:
        ...


@dataclass(slots=True, frozen=True)
class StalenessVerdict:
    worker_id: int
    task_id: str
    reason: FailureReason
    elapsed: timedelta


class StalenessSupervisor:
    """Decides which running workers should be killed. Applying the verdict is the caller's job."""

    def __init__(self, *, idle_timeout: timedelta, max_runtime: timedelta) -> None:
        self.idle_timeout = idle_timeout
        self.max_runtime = max_runtime

    def check(self, worker: SupervisedWorker, now: datetime) -> StalenessVerdict | None:
        if not worker.is_running:
            return None

        if worker.last_event_time is not None:
            idle = now - worker.last_event_time
            if idle >= self.idle_timeout:
                return StalenessVerdict(worker.id, worker.current_task_id, FailureReason.IDLE_TIMEOUT, idle)

        if worker.task_start_time is not None:
            runtime = now - worker.task_start_time
            if runtime >= self.max_runtime:
                return StalenessVerdict(
                    worker.id, worker.current_task_id, FailureReason.RUNTIME_TIMEOUT, runtime
                )
        return None

    def sweep(self, workers: Iterable[SupervisedWorker], now: datetime) -> list[StalenessVerdict]:
        """At most one verdict per worker; the idle check wins when both fire."""

        verdicts = []
        for worker in workers:
            verdict = self.check(worker, now)
            if verdict is not None:
                verdicts.append(verdict)
        return verdicts


__all__ = ["StalenessSupervisor", "StalenessVerdict", "SupervisedWorker"]
