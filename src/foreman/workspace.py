"""Isolated working-tree lifecycle for worker slots."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .agent.runner import CommandResult, CommandRunner
from .errors import WorkspaceError
from .tracker import TaskTracker

logger = logging.getLogger(__name__)

MINOR_CHANGE_MAX_FILES = 1
MINOR_CHANGE_MAX_LINES = 20
TASK_BRANCH_PREFIX = "isolated/"

_BLOCKING_PULL_MARKERS = ("Not possible to fast-forward", "Conflict")
_DIFF_STAT_COUNT = re.compile(r"(\d+) (?:insertions?\(\+\)|deletions?\(-\))")


class SyncStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


@dataclass(slots=True, frozen=True)
class SyncResult:
    status: SyncStatus
    detail: str = ""

    @property
    def blocked(self) -> bool:
        return self.status is SyncStatus.BLOCKED


class Outcome(str, Enum):
    CLEAN = "clean"
    MINOR = "minor"
    SIGNIFICANT = "significant"


@dataclass(slots=True, frozen=True)
class Reconciliation:
    outcome: Outcome
    files: int = 0
    lines: int = 0
    status: str = ""


def is_minor_change(files: int, lines: int) -> bool:
    """Both limits must hold: at most one file and fewer than twenty lines."""

    return files <= MINOR_CHANGE_MAX_FILES and lines < MINOR_CHANGE_MAX_LINES


def parse_diff_stat(output: str) -> int:
    """Total changed lines (insertions plus deletions) from ``git diff --stat``."""

    return sum(int(match.group(1)) for match in _DIFF_STAT_COUNT.finditer(output))


def task_branch(task_id: str) -> str:
    return f"{TASK_BRANCH_PREFIX}{task_id}"


def porcelain_path(entry: str) -> str:
    """Path column of one ``git status --porcelain`` line; renames report the new path."""

    name = entry[3:]
    if " -> " in name:
        name = name.split(" -> ", 1)[1]
    if len(name) >= 2 and name.startswith('"') and name.endswith('"'):
        name = name[1:-1]
    return name


def count_lines(path: Path) -> int:
    try:
        data = path.read_bytes()
    except OSError as exc:
        # Unreadable files count as a full change so they are never discarded as minor.
        logger.warning("Cannot measure untracked file", extra={"path": str(path), "error": str(exc)})
        return MINOR_CHANGE_MAX_LINES
    if not data:
        return 0
    return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


class WorkspaceManager:
    """Creates and maintains one git worktree per worker slot.

    Layout under the project root: ``repo/`` is the shared source checkout and
    ``agents/<worker id>/`` holds each worker's worktree.
    """

    def __init__(
        self,
        runner: CommandRunner,
        project_root: Path,
        *,
        git: str = "git",
        hooks_path: str | None = "scripts/hooks",
        tracker: TaskTracker | None = None,
    ) -> None:
        self._runner = runner
        self._project_root = Path(project_root)
        self._git = git
        self._hooks_path = hooks_path
        self._tracker = tracker

    @property
    def source_repo(self) -> Path:
        return self._project_root / "repo"

    def workspace_path(self, worker_id: int) -> Path:
        return self._project_root / "agents" / str(worker_id)

    async def _git_in(self, cwd: Path, *args: str) -> CommandResult:
        return await self._runner.run(self._git, *args, cwd=cwd)

    async def ensure_workspace(self, worker_id: int, branch: str) -> Path:
        """Create the worker's worktree if it does not exist yet."""

        path = self.workspace_path(worker_id)
        if path.exists():
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        result = await self._runner.run(
            self._git, "-C", str(self.source_repo), "worktree", "add", "--detach", str(path), branch
        )
        if not result.ok:
            raise WorkspaceError(f"Failed to create worktree {path}: {result.output.strip()}")
        logger.info("Created worktree", extra={"worker_id": worker_id, "path": str(path), "branch": branch})

        if self._hooks_path:
            hooks = await self._git_in(path, "config", "core.hooksPath", self._hooks_path)
            if not hooks.ok:
                logger.warning("Failed to configure hooks", extra={"path": str(path), "output": hooks.output})
        if self._tracker is not None and (path / ".beads").exists():
            await self._tracker.init_from_log(cwd=path)
        return path

    async def remove_workspace(self, worker_id: int) -> None:
        path = self.workspace_path(worker_id)
        result = await self._runner.run(
            self._git, "-C", str(self.source_repo), "worktree", "remove", "--force", str(path)
        )
        if not result.ok:
            logger.warning("Worktree removal failed, pruning", extra={"path": str(path), "output": result.output})
            await self._runner.run(self._git, "-C", str(self.source_repo), "worktree", "prune")

    async def current_branch(self, path: Path) -> str:
        result = await self._git_in(path, "branch", "--show-current")
        return result.stdout.strip() if result.ok else ""

    async def prepare_branch(self, path: Path, task_id: str, branch: str) -> str:
        """Put the worktree on a fresh per-task branch cut from the remote tip.

        Worktrees cannot share a branch, so each task gets a disposable one.
        Returns the branch the worktree ends up on.
        """

        if await self.current_branch(path) == branch:
            return branch

        name = task_branch(task_id)
        await self.discard_changes(path)
        fetch = await self._git_in(path, "fetch", "origin", branch)
        if not fetch.ok:
            logger.warning("Fetch failed", extra={"path": str(path), "branch": branch, "output": fetch.output})
        await self._git_in(path, "branch", "-D", name)
        checkout = await self._git_in(path, "checkout", "-B", name, f"origin/{branch}")
        if not checkout.ok:
            raise WorkspaceError(f"Failed to create branch {name}: {checkout.output.strip()}")
        if self._tracker is not None:
            # The checkout may have brought in a newer change-log.
            await self._tracker.init_from_log(cwd=path)
        return name

    async def sync_latest(self, path: Path) -> SyncResult:
        """Fast-forward pull. Divergence is Blocked; other failures are skipped."""

        result = await self._git_in(path, "pull", "--ff-only")
        if result.ok:
            return SyncResult(SyncStatus.OK)
        output = result.output.strip()
        if any(marker in output for marker in _BLOCKING_PULL_MARKERS):
            logger.error("Pull blocked by divergent history", extra={"path": str(path), "output": output})
            return SyncResult(SyncStatus.BLOCKED, output)
        logger.info("Pull skipped", extra={"path": str(path), "output": output})
        return SyncResult(SyncStatus.SKIPPED, output)

    async def sync_source(self, branch: str) -> SyncResult:
        result = await self._git_in(self.source_repo, "pull", "--ff-only", "origin", branch)
        if result.ok:
            return SyncResult(SyncStatus.OK)
        logger.warning("Source pull failed, continuing", extra={"branch": branch, "output": result.output.strip()})
        return SyncResult(SyncStatus.SKIPPED, result.output.strip())

    async def discard_changes(self, path: Path) -> None:
        """Drop tracked edits, staged changes and untracked files."""

        await self._git_in(path, "reset", "--hard")
        await self._git_in(path, "clean", "-fd")

    async def reconcile_after_run(self, path: Path) -> Reconciliation:
        """Classify uncommitted changes a finished worker left behind.

        Minor leftovers are discarded here; significant ones are left in place.
        """

        status = await self._git_in(path, "status", "--porcelain", "--untracked-files=all")
        porcelain = status.stdout.strip()
        if not status.ok or not porcelain:
            return Reconciliation(Outcome.CLEAN)

        entries = [entry for entry in status.stdout.splitlines() if entry.strip()]
        files = len(entries)
        # Staged and unstaged edits to tracked files.
        diff = await self._git_in(path, "diff", "--stat", "HEAD")
        lines = parse_diff_stat(diff.stdout)
        # git diff does not see untracked files.
        lines += sum(
            count_lines(path / porcelain_path(entry)) for entry in entries if entry.startswith("??")
        )
        if is_minor_change(files, lines):
            await self.discard_changes(path)
            return Reconciliation(Outcome.MINOR, files=files, lines=lines, status=porcelain)
        return Reconciliation(Outcome.SIGNIFICANT, files=files, lines=lines, status=porcelain)


__all__ = [
    "MINOR_CHANGE_MAX_FILES",
    "MINOR_CHANGE_MAX_LINES",
    "Outcome",
    "Reconciliation",
    "SyncResult",
    "SyncStatus",
    "WorkspaceManager",
    "count_lines",
    "is_minor_change",
    "parse_diff_stat",
    "porcelain_path",
    "task_branch",
]
