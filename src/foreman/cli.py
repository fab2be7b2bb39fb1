"""Command-line bootstrap for the Foreman scheduler."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Sequence

from . import __version__
from .agent import AgentLauncher, CommandRunner
from .claims import ClaimRegistry
from .config import ForemanSettings, build_policy, get_settings, load_project_config
from .errors import AgentNotFoundError, ProjectConfigError
from .identities import CredentialPool, QuotaChecker
from .scheduler import Scheduler
from .storage import ChromaUnavailableError, RunJournal
from .tracker import TaskTracker
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Foreman process."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def open_journal(settings: ForemanSettings) -> RunJournal | None:
    if settings.journal_path is None:
        return None
    try:
        journal = RunJournal(settings.journal_path)
        journal.ping()
    except ChromaUnavailableError as exc:
        logger.warning("Run journal unavailable", extra={"path": str(settings.journal_path), "error": str(exc)})
        return None
    return journal


def build_scheduler(
    settings: ForemanSettings,
    project_root: Path,
    *,
    once: bool = False,
    workers: int | None = None,
) -> Scheduler:
    """Wire every collaborator for one project. Raises on unrecoverable setup errors."""

    project = load_project_config(project_root)
    policy = build_policy(settings, project, exit_once=once)
    if workers is not None:
        policy.worker_count = max(1, workers)

    runner = CommandRunner(timeout=settings.command_timeout_seconds)
    tracker = TaskTracker(runner, cwd=project_root / "repo", executable=settings.tracker_path)
    workspaces = WorkspaceManager(
        runner,
        project_root,
        git=settings.git_path,
        hooks_path=policy.hooks_path,
        tracker=tracker,
    )
    launcher = AgentLauncher(
        settings.agent_path,
        flags=settings.agent_flag_list(),
        quota_flags=settings.quota_flag_list(),
    )
    pool = CredentialPool.load(settings.identities_dir, pooling_enabled=policy.pooling_enabled)
    quota_checker = QuotaChecker(runner, launcher.quota_args(), settings.quota_categories)

    context_file = settings.project_context_file
    if context_file is not None and not context_file.is_absolute():
        context_file = project_root / "repo" / context_file

    return Scheduler(
        policy=policy,
        tracker=tracker,
        workspaces=workspaces,
        launcher=launcher,
        pool=pool,
        claims=ClaimRegistry(max_retries=policy.max_retries),
        quota_checker=quota_checker,
        journal=open_journal(settings),
        directive_template=settings.directive_template,
        context_file=context_file,
    )


async def _serve(scheduler: Scheduler, tick_seconds: float) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, scheduler.request_exit)
        except NotImplementedError:  # pragma: no cover - platform specific
            pass
    await scheduler.run(tick_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foreman", description="Coding-agent worker scheduler")
    parser.add_argument(
        "--project",
        type=Path,
        default=Path.cwd(),
        help="Project directory holding project.json, repo/ and agents/",
    )
    parser.add_argument("--once", action="store_true", help="Exit after the first task ends")
    parser.add_argument("--task", help="Run this task on worker 1, then exit")
    parser.add_argument("--workers", type=int, default=None, help="Override the worker count")
    parser.add_argument("--version", action="version", version=f"foreman {__version__}")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``foreman`` console script."""

    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    project_root = args.project.expanduser().resolve()
    try:
        scheduler = build_scheduler(
            settings, project_root, once=args.once or bool(args.task), workers=args.workers
        )
    except (ProjectConfigError, AgentNotFoundError) as exc:
        logger.error("Startup failed", extra={"project": str(project_root), "error": str(exc)})
        print(f"foreman: {exc}")
        return 2

    if args.task:
        scheduler.run_task(args.task)

    logger.info(
        "Launching Foreman",
        extra={
            "version": __version__,
            "project": str(project_root),
            "workers": len(scheduler.workers),
            "identities": len(scheduler.snapshot()["identities"]),
            "exit_once": scheduler.policy.exit_once,
        },
    )
    asyncio.run(_serve(scheduler, settings.tick_seconds))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
