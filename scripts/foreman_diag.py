"""Foreman run journal diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path

from foreman.config import ForemanSettings
from foreman.storage import ChromaUnavailableError, RunJournal


def load_journal(settings: ForemanSettings, path: Path | None = None) -> RunJournal:
    journal_path = path or settings.journal_path
    if journal_path is None:
        print("No journal configured; set FOREMAN_JOURNAL_PATH or pass --journal")
        raise SystemExit(1)
    try:
        return RunJournal(journal_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def _records(records) -> list[dict]:
    rows = []
    for record in records:
        row = asdict(record)
        for key, value in row.items():
            if hasattr(value, "isoformat"):
                row[key] = value.isoformat()
        rows.append(row)
    return rows


def cmd_tasks(args: argparse.Namespace) -> None:
    journal = load_journal(ForemanSettings(), args.journal)
    try:
        tasks = journal.replay_tasks()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps(_records(tasks), indent=2))
        return
    for task in tasks:
        reason = f" ({task.reason})" if task.reason else ""
        print(f"{task.task_id} [{task.status}]{reason} -> worker {task.worker_id}, attempts {task.attempts}")


def cmd_workspaces(args: argparse.Namespace) -> None:
    journal = load_journal(ForemanSettings(), args.journal)
    try:
        records = journal.list_workspaces(worker_id=args.worker_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps(_records(records), indent=2))


def cmd_failures(args: argparse.Namespace) -> None:
    journal = load_journal(ForemanSettings(), args.journal)
    try:
        failures = journal.list_failures(limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "task_id": entry.metadata.get("task_id"),
            "worker_id": entry.metadata.get("worker_id"),
            "reason": entry.metadata.get("reason"),
            "timestamp": entry.timestamp.isoformat(),
        }
        for entry in failures
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    journal = load_journal(ForemanSettings(), args.journal)
    try:
        tasks = journal.replay_tasks()
        failures = journal.list_failures()
        workspaces = journal.list_workspaces()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    status_counts: dict[str, int] = {}
    for task in tasks:
        status_counts[task.status] = status_counts.get(task.status, 0) + 1
    reason_counts: dict[str, int] = {}
    for entry in failures:
        reason = entry.metadata.get("reason") or "unknown"
        reason_counts[reason] = reason_counts.get(reason, 0) + 1

    metrics = {
        "tasks_total": len(tasks),
        "status_counts": status_counts,
        "failures_total": len(failures),
        "failure_reasons": reason_counts,
        "workspaces_total": len(workspaces),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Foreman run journal diagnostics")
    parser.add_argument("--journal", type=Path, default=None, help="Journal directory override")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List replayed task states")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_workspaces = sub.add_parser("workspaces", help="List the latest workspace record per worker")
    p_workspaces.add_argument("--worker-id", type=int)
    p_workspaces.set_defaults(func=cmd_workspaces)

    p_failures = sub.add_parser("failures", help="List task failures, newest first")
    p_failures.add_argument("--limit", type=int, default=None, help="Show only the latest N failures")
    p_failures.set_defaults(func=cmd_failures)

    p_metrics = sub.add_parser("metrics", help="Show task and failure counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
