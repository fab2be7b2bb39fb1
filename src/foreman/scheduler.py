"""Single-threaded dispatch loop driving every worker slot."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from .agent.runner import ProcessHandle
from .agent.utils import identity_environment
from .claims import ClaimRegistry
from .config import RunPolicy
from .directive import build_directive
from .errors import (
    DirectiveBuildError,
    FailureReason,
    NoAvailableIdentityError,
    ProcessSpawnError,
    TrackerError,
    WorkspaceError,
)
from .events import Event, EventHistory, EventType, detect_fatal, is_quota_rejection, parse_line
from .identities import CredentialPool, Identity, QuotaChecker
from .storage import RunJournal
from .supervisor import StalenessSupervisor
from .tracker import COMPLEXITY_MARKER, Task, TaskStatus, TaskTracker
from .workspace import Outcome, WorkspaceManager

logger = logging.getLogger(__name__)

FAILURE_COOLDOWN = timedelta(minutes=5)
EVENT_QUEUE_SIZE = 100
DONE_QUEUE_SIZE = 10
ACTIVITY_LIMIT = 200


class WorkerPhase(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETING = "completing"
    FAILING = "failing"


class OrchestrationState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Launcher(Protocol):
    async def spawn(
        self,
        directive: str,
        *,
        cwd: Path,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        ...


@dataclass(slots=True)
class WorkerState:
    """One worker slot. Only the scheduler loop mutates it."""

    id: int
    name: str
    workspace_path: Path
    phase: WorkerPhase = WorkerPhase.IDLE
    current_task_id: str = ""
    process: ProcessHandle | None = None
    identity: Identity | None = None
    model: str = ""
    task_start_time: datetime | None = None
    last_event_time: datetime | None = None
    failed_tasks: dict[str, datetime] = field(default_factory=dict)
    # Bumped on every spawn so messages from an earlier process are ignored.
    run_id: int = 0
    event_count: int = 0
    reader: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self.phase is WorkerPhase.RUNNING

    @property
    def is_running(self) -> bool:
        return self.running

    @property
    def is_idle(self) -> bool:
        return self.phase is WorkerPhase.IDLE

    def recently_failed(self, task_id: str, now: datetime, cooldown: timedelta = FAILURE_COOLDOWN) -> bool:
        failed_at = self.failed_tasks.get(task_id)
        return failed_at is not None and now - failed_at < cooldown

    def clear_run(self) -> None:
        self.phase = WorkerPhase.IDLE
        self.current_task_id = ""
        self.process = None
        self.identity = None
        self.model = ""
        self.task_start_time = None
        self.last_event_time = None
        self.event_count = 0


@dataclass(slots=True, frozen=True)
class EventMessage:
    worker_id: int
    run_id: int
    event: Event


@dataclass(slots=True, frozen=True)
class DoneMessage:
    worker_id: int
    run_id: int
    task_id: str
    returncode: int | None


class Scheduler:
    """Owns all worker state; driven by ``tick()``.

    Output readers run as separate tasks and only push onto the two bounded
    queues, which the loop drains at the start of every tick.
    """

    def __init__(
        self,
        *,
        policy: RunPolicy,
        tracker: TaskTracker,
        workspaces: WorkspaceManager,
        launcher: Launcher,
        pool: CredentialPool,
        claims: ClaimRegistry | None = None,
        supervisor: StalenessSupervisor | None = None,
        quota_checker: QuotaChecker | None = None,
        journal: RunJournal | None = None,
        directive_template: Path | None = None,
        context_file: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy
        self._tracker = tracker
        self._workspaces = workspaces
        self._launcher = launcher
        self._pool = pool
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.claims = claims or ClaimRegistry(max_retries=policy.max_retries, clock=self._clock)
        self._supervisor = supervisor or StalenessSupervisor(
            idle_timeout=policy.idle_timeout, max_runtime=policy.max_task_runtime
        )
        self._quota_checker = quota_checker
        self._journal = journal
        self._directive_template = directive_template
        self._context_file = context_file

        self.state = OrchestrationState.RUNNING
        self.events: asyncio.Queue[EventMessage] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.done: asyncio.Queue[DoneMessage] = asyncio.Queue(maxsize=DONE_QUEUE_SIZE)
        self.history = EventHistory()
        self.activity: deque[str] = deque(maxlen=ACTIVITY_LIMIT)
        self.tasks: list[Task] = []
        self.ticks = 0
        self.exit_requested = False
        self._target_task: str | None = None
        self._targeted = False

        self.workers: dict[int, WorkerState] = {}
        count = max(1, policy.worker_count)
        for worker_id in range(1, count + 1):
            name = policy.worker_name if count == 1 else f"{policy.worker_name}-{worker_id}"
            self._add_slot(worker_id, name)

    # ------------------------------------------------------------------ slots

    def _add_slot(self, worker_id: int, name: str) -> WorkerState:
        worker = WorkerState(
            id=worker_id, name=name, workspace_path=self._workspaces.workspace_path(worker_id)
        )
        self.workers[worker_id] = worker
        return worker

    def add_worker(self) -> WorkerState:
        worker_id = max(self.workers, default=0) + 1
        worker = self._add_slot(worker_id, f"{self.policy.worker_name}-{worker_id}")
        self._activity(f"Worker {worker_id} added")
        return worker

    def remove_worker(self) -> int | None:
        """Drop the highest-numbered slot, killing its process. At least one slot remains."""

        if len(self.workers) <= 1:
            return None
        worker_id = max(self.workers)
        worker = self.workers[worker_id]
        if worker.current_task_id:
            self._fail_task(worker, FailureReason.STOPPED, "worker removed", kill=True, terminal=False)
        del self.workers[worker_id]
        self._activity(f"Worker {worker_id} removed")
        return worker_id

    # ------------------------------------------------------------- lifecycle

    def pause(self) -> None:
        self.state = OrchestrationState.PAUSED
        self._activity("Dispatch paused")

    def resume(self) -> None:
        self.state = OrchestrationState.RUNNING
        self._activity("Dispatch resumed")

    def stop(self) -> None:
        """Hard-kill every worker and fail its task."""

        self.state = OrchestrationState.STOPPED
        for worker in self.workers.values():
            if worker.current_task_id:
                self._fail_task(worker, FailureReason.STOPPED, "orchestration stopped", kill=True, terminal=False)
        self._activity("Orchestration stopped")

    def run_task(self, task_id: str) -> None:
        """Run one named task on worker 1, then exit."""

        self._target_task = task_id
        self._targeted = True
        self.policy.exit_once = True

    def request_exit(self) -> None:
        self.exit_requested = True

    async def shutdown(self) -> None:
        self.stop()
        self.exit_requested = True
        readers = [worker.reader for worker in self.workers.values() if worker.reader is not None]
        for reader in readers:
            reader.cancel()
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)

    async def run(self, tick_seconds: float = 1.0) -> None:
        try:
            while not self.exit_requested:
                await self.tick()
                if self.exit_requested:
                    break
                await asyncio.sleep(tick_seconds)
        finally:
            await self.shutdown()

    # ------------------------------------------------------------------ tick

    async def tick(self) -> None:
        self.ticks += 1
        await self._drain_events()
        if not self.exit_requested:
            await self._drain_done()
        if not self.exit_requested:
            self._supervise()
        if self.exit_requested:
            return

        if self._due(self.policy.task_refresh_ticks):
            await self.refresh_tasks()
        if self._quota_checker is not None and self._due(self.policy.quota_refresh_ticks):
            await self.refresh_quota()

        if self.state is not OrchestrationState.RUNNING:
            return
        if self._targeted:
            await self._dispatch_target()
        elif self._due(self.policy.dispatch_every_ticks):
            for worker in sorted(self.workers.values(), key=lambda item: item.id):
                if self.exit_requested or self.state is not OrchestrationState.RUNNING:
                    break
                if worker.is_idle:
                    await self.dispatch(worker)

    def _due(self, every: int) -> bool:
        return (self.ticks - 1) % max(1, every) == 0

    async def refresh_tasks(self) -> None:
        await self._workspaces.sync_source(self.policy.branch)
        await self._tracker.import_log()
        try:
            self.tasks = await self._tracker.list_tasks()
        except TrackerError as exc:
            logger.error("Task refresh failed", extra={"error": str(exc)})
            self._activity("Task refresh failed")
            return
        logger.info("Tasks refreshed", extra={"count": len(self.tasks)})

    async def refresh_quota(self) -> None:
        if self._quota_checker is None or not self._pool.identities:
            return
        quotas = await self._pool.refresh_quota(self._quota_checker)
        logger.info(
            "Quota refreshed",
            extra={"quotas": {name: quota.categories for name, quota in quotas.items()}},
        )

    # --------------------------------------------------------------- queues

    def _offer(self, queue: asyncio.Queue, message: EventMessage | DoneMessage) -> None:
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Queue full, dropping message",
                extra={"worker_id": message.worker_id, "kind": type(message).__name__},
            )

    def _current(self, worker_id: int, run_id: int) -> WorkerState | None:
        worker = self.workers.get(worker_id)
        if worker is None or worker.run_id != run_id or not worker.running:
            return None
        return worker

    async def _drain_events(self) -> None:
        while not self.events.empty():
            message = self.events.get_nowait()
            worker = self._current(message.worker_id, message.run_id)
            if worker is None:
                continue
            self._handle_event(worker, message.event)
            if self.exit_requested:
                return

    async def _drain_done(self) -> None:
        while not self.done.empty():
            message = self.done.get_nowait()
            worker = self._current(message.worker_id, message.run_id)
            if worker is None:
                continue
            await self._handle_done(worker, message)
            if self.exit_requested:
                return

    def _handle_event(self, worker: WorkerState, event: Event) -> None:
        worker.last_event_time = self._clock()
        worker.event_count += 1
        self.history.append(event)
        summary = event.summary()
        self._activity(f"{worker.name}: {summary}")
        if event.type in (EventType.TOOL_USE, EventType.ERROR):
            logger.info("Worker event", extra={"worker_id": worker.id, "event_type": event.type.value, "summary": summary})

        fatal, marker = detect_fatal(event)
        if not fatal:
            return
        if is_quota_rejection(event) and worker.identity is not None:
            self._pool.mark_exhausted(worker.identity.name)
        self._fail_task(worker, FailureReason.FATAL_WORKER_OUTPUT, marker, kill=True)

    async def _read_output(self, worker: WorkerState, process: ProcessHandle) -> None:
        worker_id, run_id, task_id, name = worker.id, worker.run_id, worker.current_task_id, worker.name
        raw_log = logging.getLogger(f"foreman.agent.worker-{worker_id}")
        returncode: int | None = None
        try:
            async for line in process.lines():
                if not line:
                    continue
                raw_log.debug(line)
                event = replace(parse_line(line), worker_name=name)
                self._offer(self.events, EventMessage(worker_id, run_id, event))
            returncode = await process.wait()
        except OSError as exc:
            logger.error("Worker output stream failed", extra={"worker_id": worker_id, "error": str(exc)})
        self._offer(self.done, DoneMessage(worker_id, run_id, task_id, returncode))

    # ------------------------------------------------------------- dispatch

    def _eligible(self, worker: WorkerState, task_id: str, now: datetime) -> bool:
        return not (
            self.claims.is_claimed(task_id)
            or self.claims.is_completed(task_id)
            or worker.recently_failed(task_id, now)
        )

    async def candidate_tasks(self, worker: WorkerState) -> list[str]:
        """Eligible task ids for ``worker``: its own in-progress tasks first, then the ready list."""

        now = self._clock()
        candidates = [
            task.id
            for task in self.tasks
            if task.is_in_progress_for(worker.name) and self._eligible(worker, task.id, now)
        ]
        try:
            ready = await self._tracker.ready_tasks()
        except TrackerError as exc:
            logger.warning("Ready list unavailable", extra={"error": str(exc)})
            ready = []
        for task in ready:
            if task.id not in candidates and self._eligible(worker, task.id, now):
                candidates.append(task.id)
        return candidates

    async def find_ready_task(self, worker: WorkerState) -> str | None:
        candidates = await self.candidate_tasks(worker)
        return candidates[0] if candidates else None

    async def dispatch(self, worker: WorkerState) -> bool:
        """Claim the first winnable candidate for an idle worker and start it."""

        if not worker.is_idle:
            return False
        worker.phase = WorkerPhase.CLAIMING
        for task_id in await self.candidate_tasks(worker):
            if self.claims.claim(task_id, worker.id):
                return await self._start(worker, task_id)
            logger.debug(
                "Claim lost",
                extra={"worker_id": worker.id, "task_id": task_id, "reason": FailureReason.CLAIM_CONFLICT.value},
            )
        worker.phase = WorkerPhase.IDLE
        return False

    async def _dispatch_target(self) -> None:
        task_id = self._target_task
        worker = self.workers.get(1) or self.workers[min(self.workers)]
        if task_id is None or not worker.is_idle:
            return
        self._activity(f"Executing targeted task {task_id}")
        if not self.claims.claim(task_id, worker.id):
            logger.error("Targeted task already claimed", extra={"task_id": task_id})
            self.exit_requested = True
            return
        await self._start(worker, task_id)

    async def _start(self, worker: WorkerState, task_id: str) -> bool:
        try:
            return await self._start_claimed(worker, task_id)
        except Exception as exc:  # pragma: no cover
            logger.exception("Dispatch crashed", extra={"worker_id": worker.id, "task_id": task_id})
            self._fail_task(worker, FailureReason.INTERNAL_ERROR, repr(exc), kill=True)
            return False

    async def _start_claimed(self, worker: WorkerState, task_id: str) -> bool:
        """Prepare the workspace and spawn the worker for a task it already holds the claim on."""

        worker.phase = WorkerPhase.PREPARING
        worker.current_task_id = task_id

        if self._pool.identities:
            try:
                worker.identity = self._pool.next_available()
            except NoAvailableIdentityError as exc:
                # Not the task's fault: release without a cooldown.
                logger.warning(
                    "No identity available",
                    extra={"worker_id": worker.id, "task_id": task_id, "reason": FailureReason.NO_AVAILABLE_IDENTITY.value, "error": str(exc)},
                )
                self._activity(f"{worker.name}: no identity available, waiting")
                self.claims.release(task_id)
                worker.clear_run()
                return False

        if task_id == self._target_task:
            # Consumed once an identity is secured; without one the next tick retries it.
            self._target_task = None
        self._record_task(task_id, "task_claimed", worker.id)

        try:
            path = await self._workspaces.ensure_workspace(worker.id, self.policy.branch)
        except WorkspaceError as exc:
            self._fail_task(worker, FailureReason.WORKSPACE_CREATION_FAILED, str(exc))
            return False
        worker.workspace_path = path

        try:
            branch = await self._workspaces.prepare_branch(path, task_id, self.policy.branch)
        except WorkspaceError as exc:
            self._fail_task(worker, FailureReason.WORKSPACE_CREATION_FAILED, str(exc))
            return False
        self._record_workspace(worker, branch, "prepared")

        sync = await self._workspaces.sync_latest(path)
        if sync.blocked:
            self._fail_task(worker, FailureReason.GIT_CONFLICT, sync.detail)
            return False

        await self._tracker.update(
            task_id, status=TaskStatus.IN_PROGRESS, assignee=worker.name, cwd=path
        )
        worker.model = await self._select_model(task_id)

        try:
            directive = await build_directive(
                self._tracker,
                agent_name=worker.name,
                task_id=task_id,
                template_path=self._directive_template,
                context_file=self._context_file,
            )
        except DirectiveBuildError as exc:
            self._fail_task(worker, FailureReason.DIRECTIVE_BUILD_FAILED, str(exc))
            return False

        env = identity_environment(worker.identity.home_directory) if worker.identity else None
        try:
            process = await self._launcher.spawn(directive, cwd=path, model=worker.model, env=env)
        except ProcessSpawnError as exc:
            self._fail_task(worker, FailureReason.PROCESS_SPAWN_FAILED, str(exc))
            return False

        now = self._clock()
        worker.run_id += 1
        worker.process = process
        worker.task_start_time = now
        worker.last_event_time = now
        worker.phase = WorkerPhase.RUNNING
        worker.reader = asyncio.create_task(self._read_output(worker, process))

        identity = worker.identity.name if worker.identity else "default"
        self._activity(f"{worker.name}: started {task_id} ({worker.model}, {identity})")
        logger.info(
            "Task started",
            extra={"worker_id": worker.id, "task_id": task_id, "model": worker.model, "identity": identity, "pid": process.pid},
        )
        self._record_task(task_id, "task_started", worker.id, metadata={"model": worker.model, "identity": identity})
        return True

    async def _select_model(self, task_id: str) -> str:
        try:
            details = await self._tracker.show_details(task_id)
        except TrackerError:
            return self.policy.default_model
        description = details.get("description")
        if isinstance(description, str) and COMPLEXITY_MARKER in description:
            return self.policy.complex_model
        return self.policy.default_model

    # ----------------------------------------------------------- completion

    async def _handle_done(self, worker: WorkerState, message: DoneMessage) -> None:
        task_id = worker.current_task_id
        worker.phase = WorkerPhase.COMPLETING
        worker.process = None
        worker.reader = None
        logger.info(
            "Worker exited",
            extra={"worker_id": worker.id, "task_id": task_id, "returncode": message.returncode},
        )

        result = await self._workspaces.reconcile_after_run(worker.workspace_path)
        if result.outcome is Outcome.SIGNIFICANT:
            await self._retry_or_abandon(worker, task_id, result.files, result.lines, result.status)
            return

        if result.outcome is Outcome.MINOR:
            self._activity(f"{worker.name}: minor changes discarded ({result.lines} lines)")
            logger.info(
                "Minor changes discarded",
                extra={"worker_id": worker.id, "task_id": task_id, "files": result.files, "lines": result.lines, "status": result.status},
            )
        self.claims.clear_retry(task_id)
        self.claims.mark_completed(task_id)
        self.claims.release(task_id)
        worker.clear_run()
        self._activity(f"{worker.name}: task {task_id} completed")
        logger.info("Task completed", extra={"worker_id": worker.id, "task_id": task_id})
        self._record_task(task_id, "task_completed", worker.id)

        if self.policy.exit_once:
            self._activity("Exit-once: task finished, exiting")
            self.exit_requested = True
            return
        if self.state is OrchestrationState.RUNNING:
            await self.dispatch(worker)

    async def _retry_or_abandon(
        self, worker: WorkerState, task_id: str, files: int, lines: int, status: str
    ) -> None:
        outcome = self.claims.increment_retry(task_id)
        limit = self.claims.max_retries
        if outcome.exceeded:
            self.claims.clear_retry(task_id)
            self._fail_task(
                worker,
                FailureReason.RETRY_LIMIT_EXCEEDED,
                f"uncommitted changes abandoned after {limit} retries:\n{status}",
            )
            return

        self._activity(f"{worker.name}: uncommitted changes, retry {outcome.count}/{limit}")
        logger.warning(
            "Uncommitted changes left behind, retrying",
            extra={"worker_id": worker.id, "task_id": task_id, "retry": outcome.count, "files": files, "lines": lines, "status": status},
        )
        self._record_task(task_id, "task_retry", worker.id, metadata={"retry": outcome.count})
        # Release and re-claim with no await in between so no other worker can win the task.
        self.claims.release(task_id)
        if not self.claims.claim(task_id, worker.id):
            worker.clear_run()
            return
        worker.clear_run()
        await self._start(worker, task_id)

    # -------------------------------------------------------------- failure

    def _supervise(self) -> None:
        verdicts = self._supervisor.sweep(self.workers.values(), self._clock())
        for verdict in verdicts:
            worker = self.workers[verdict.worker_id]
            seconds = int(verdict.elapsed.total_seconds())
            label = "idle" if verdict.reason is FailureReason.IDLE_TIMEOUT else "runtime"
            self._fail_task(worker, verdict.reason, f"{label} for {seconds}s", kill=True)
            if self.exit_requested:
                return

    def _fail_task(
        self,
        worker: WorkerState,
        reason: FailureReason,
        detail: str = "",
        *,
        kill: bool = False,
        terminal: bool = True,
    ) -> None:
        """Kill if asked, put the task on cooldown, release its claim and idle the worker."""

        worker.phase = WorkerPhase.FAILING
        task_id = worker.current_task_id
        if kill and worker.process is not None:
            worker.process.terminate()
        if task_id:
            worker.failed_tasks[task_id] = self._clock()
            self.claims.release(task_id)
            self._record_task(task_id, "task_failed", worker.id, reason=reason.value)

        self._activity(f"{worker.name}: task {task_id or '-'} failed ({reason.value})")
        logger.error(
            "Task failed",
            extra={
                "worker_id": worker.id,
                "task_id": task_id,
                "reason": reason.value,
                "detail": detail,
                "identity": worker.identity.name if worker.identity else None,
            },
        )
        worker.clear_run()

        if terminal and self.policy.exit_once:
            self._activity("Exit-once: task ended, exiting")
            self.exit_requested = True

    # ------------------------------------------------------------ reporting

    def _activity(self, line: str) -> None:
        stamp = self._clock().strftime("%H:%M:%S")
        self.activity.append(f"[{stamp}] {line}")

    def _record_task(
        self,
        task_id: str,
        event_type: str,
        worker_id: int,
        *,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_task_event(
                task_id=task_id, event_type=event_type, worker_id=worker_id, reason=reason, metadata=metadata
            )
        except Exception as exc:  # pragma: no cover
            logger.warning("Journal write failed", extra={"task_id": task_id, "error": str(exc)})

    def _record_workspace(self, worker: WorkerState, branch: str, status: str) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_workspace(
                worker_id=worker.id, path=str(worker.workspace_path), branch=branch, status=status
            )
        except Exception as exc:  # pragma: no cover
            logger.warning("Journal write failed", extra={"worker_id": worker.id, "error": str(exc)})

    def snapshot(self) -> dict[str, Any]:
        """JSON-serialisable status view."""

        now = self._clock()
        quotas = self._pool.quotas()
        workers = []
        for worker in sorted(self.workers.values(), key=lambda item: item.id):
            workers.append(
                {
                    "id": worker.id,
                    "name": worker.name,
                    "phase": worker.phase.value,
                    "task_id": worker.current_task_id or None,
                    "model": worker.model or None,
                    "identity": worker.identity.name if worker.identity else None,
                    "pid": worker.process.pid if worker.process is not None else None,
                    "events": worker.event_count,
                    "elapsed_seconds": _seconds_since(worker.task_start_time, now),
                    "idle_seconds": _seconds_since(worker.last_event_time, now),
                    "workspace": str(worker.workspace_path),
                }
            )
        return {
            "state": self.state.value,
            "tick": self.ticks,
            "workers": workers,
            "claims": self.claims.snapshot(),
            "identities": [
                {
                    "name": identity.name,
                    "exhausted": self._pool.is_exhausted(identity.name),
                    "quota": quotas[identity.name].categories if identity.name in quotas else {},
                }
                for identity in self._pool.identities
            ],
            "tasks": {
                "total": len(self.tasks),
                "in_progress": sum(1 for task in self.tasks if task.status == TaskStatus.IN_PROGRESS),
            },
            "activity": list(self.activity)[-20:],
        }


def _seconds_since(moment: datetime | None, now: datetime) -> int | None:
    if moment is None:
        return None
    return int((now - moment).total_seconds())


__all__ = [
    "ACTIVITY_LIMIT",
    "DONE_QUEUE_SIZE",
    "DoneMessage",
    "EVENT_QUEUE_SIZE",
    "EventMessage",
    "FAILURE_COOLDOWN",
    "Launcher",
    "OrchestrationState",
    "Scheduler",
    "WorkerPhase",
    "WorkerState",
]
