from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path

from prlander.config import AppConfig, load_config
from prlander.events import LoggingEventSink, task_deleted
from prlander.git_ops import GitCredentials, GitRepoManager
from prlander.merge_queue import MergeQueue
from prlander.models import TASK_COLUMNS, KanbanTask, MergeQueueEntry, TaskColumn
from prlander.observability import configure_logging
from prlander.observability_tui import run_observability_tui
from prlander.process_lock import service_lock
from prlander.service_runner import run_service
from prlander.state import StateStore


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, default=Path("prlander.toml"))
    common.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Log to stderr (low: lifecycle events only, high: every event)",
    )
    parser = argparse.ArgumentParser(prog="prlander")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "init", parents=[common], help="Create the state DB and project working copies"
    )

    service_parser = subparsers.add_parser(
        "service", parents=[common], help="Run the merge queue and pull request monitor loops"
    )
    service_parser.add_argument(
        "--once", action="store_true", help="Recover, run one tick of each loop, then exit"
    )

    queue_parser = subparsers.add_parser(
        "queue", parents=[common], help="Inspect and manage the merge queue"
    )
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_list_parser = queue_subparsers.add_parser("list", help="List queue entries")
    queue_list_parser.add_argument("--project", type=str, help="Optional project id filter")
    queue_list_parser.add_argument("--json", action="store_true", help="Print entries as JSON")
    queue_approve_parser = queue_subparsers.add_parser(
        "approve", help="Approve a task's pull request for merge"
    )
    queue_approve_parser.add_argument("task_id")
    queue_remove_parser = queue_subparsers.add_parser(
        "remove", help="Remove a task's entry from the queue"
    )
    queue_remove_parser.add_argument("task_id")
    queue_reorder_parser = queue_subparsers.add_parser(
        "reorder", help="Overwrite an entry's position"
    )
    queue_reorder_parser.add_argument("entry_id")
    queue_reorder_parser.add_argument("position", type=int)

    tasks_parser = subparsers.add_parser(
        "tasks", parents=[common], help="Seed and inspect kanban tasks"
    )
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", required=True)
    tasks_add_parser = tasks_subparsers.add_parser("add", help="Insert a task")
    tasks_add_parser.add_argument("task_id")
    tasks_add_parser.add_argument("--project", type=str, required=True)
    tasks_add_parser.add_argument("--title", type=str, required=True)
    tasks_add_parser.add_argument("--pr", type=int, default=None)
    tasks_add_parser.add_argument("--branch", type=str, default=None)
    tasks_add_parser.add_argument("--column", choices=TASK_COLUMNS, default="in_review")
    tasks_list_parser = tasks_subparsers.add_parser("list", help="List tasks")
    tasks_list_parser.add_argument("--json", action="store_true", help="Print tasks as JSON")
    tasks_remove_parser = tasks_subparsers.add_parser(
        "remove", help="Delete a task and its queue entry"
    )
    tasks_remove_parser.add_argument("task_id")

    top_parser = subparsers.add_parser(
        "top", parents=[common], help="Open the queue and review dashboard"
    )
    top_parser.add_argument("--refresh-seconds", type=int, default=2)
    top_parser.add_argument("--row-limit", type=int, default=200)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    state_dir = config.runtime.base_dir if args.command == "service" else None
    configure_logging(args.verbose, state_dir=state_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "service":
        _cmd_service(config, once=bool(args.once))
        return
    if args.command == "queue":
        _cmd_queue(config, args)
        return
    if args.command == "tasks":
        _cmd_tasks(config, args)
        return
    if args.command == "top":
        _cmd_top(config, refresh_seconds=int(args.refresh_seconds), row_limit=args.row_limit)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    state = StateStore(_state_db_path(config))
    credentials = GitCredentials.from_env(config.runtime.github_token_env)

    print(f"Initialized prlander base dir: {config.runtime.base_dir}")
    print(f"State DB: {state.db_path}")
    for project in config.projects:
        git_manager = GitRepoManager(config.runtime, project, credentials=credentials)
        checkout_path = git_manager.ensure_checkout()
        print(f"Project {project.project_id}: {project.full_name} -> {checkout_path}")


def _cmd_service(config: AppConfig, *, once: bool) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    with service_lock(base_dir=config.runtime.base_dir, command="service"):
        state = StateStore(_state_db_path(config))
        run_service(config=config, state=state, once=once)


def _cmd_queue(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(_state_db_path(config))
    queue = MergeQueue(
        config=config,
        state=state,
        github_by_project={},
        git_by_project={},
        events=LoggingEventSink(),
    )
    if args.queue_command == "list":
        project_id = None
        if args.project is not None:
            project_id = config.require_project(str(args.project)).project_id
        _print_entries(queue.get_queue(project_id), as_json=bool(args.json))
        return
    if args.queue_command == "approve":
        entry = queue.approve_for_merge(str(args.task_id))
        if entry is None:
            raise RuntimeError(
                f"Task {args.task_id!r} cannot be approved: it is unknown or has no pull request"
            )
        print(f"Queued {entry.task_id} (PR #{entry.pr_number}) at position {entry.position}")
        return
    if args.queue_command == "remove":
        if queue.remove_from_queue(str(args.task_id)):
            print(f"Removed {args.task_id} from the merge queue.")
        else:
            print(f"{args.task_id} is not in the merge queue.")
        return
    if args.queue_command == "reorder":
        if not queue.reorder_entry(str(args.entry_id), int(args.position)):
            raise RuntimeError(f"Unknown queue entry {args.entry_id!r}")
        print(f"Moved {args.entry_id} to position {args.position}")
        return
    raise RuntimeError(f"Unknown queue command: {args.queue_command}")


def _cmd_tasks(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(_state_db_path(config))
    if args.tasks_command == "add":
        project = config.require_project(str(args.project))
        column: TaskColumn = args.column
        task = state.insert_task(
            task_id=str(args.task_id),
            project_id=project.project_id,
            title=str(args.title),
            column=column,
            pr_number=args.pr,
            pr_branch=args.branch,
        )
        print(f"Added task {task.task_id} ({task.column})")
        return
    if args.tasks_command == "list":
        _print_tasks(state.list_tasks(), as_json=bool(args.json))
        return
    if args.tasks_command == "remove":
        task_id = str(args.task_id)
        state.delete_queue_entry_for_task(task_id)
        if not state.delete_task(task_id):
            print(f"No task {task_id}.")
            return
        LoggingEventSink().emit(task_deleted(task_id))
        print(f"Removed task {task_id}.")
        return
    raise RuntimeError(f"Unknown tasks command: {args.tasks_command}")


def _cmd_top(config: AppConfig, *, refresh_seconds: int, row_limit: int | None) -> None:
    state = StateStore(_state_db_path(config))
    run_observability_tui(
        db_path=state.db_path,
        refresh_seconds=max(1, refresh_seconds),
        row_limit=row_limit,
    )


def _print_entries(entries: tuple[MergeQueueEntry, ...], *, as_json: bool) -> None:
    if as_json:
        print(json.dumps([asdict(entry) for entry in entries], indent=2))
        return
    if not entries:
        print("Merge queue is empty.")
        return
    for entry in entries:
        print(
            f"position={entry.position} entry_id={entry.entry_id} task_id={entry.task_id} "
            f"project={entry.project_id} pr_number={entry.pr_number} status={entry.status} "
            f"rebase_attempts={entry.rebase_attempts}"
        )
        if entry.last_error:
            print(f"last_error={entry.last_error}")


def _print_tasks(tasks: tuple[KanbanTask, ...], *, as_json: bool) -> None:
    if as_json:
        print(json.dumps([asdict(task) for task in tasks], indent=2))
        return
    if not tasks:
        print("No tasks.")
        return
    for task in tasks:
        pr = f"#{task.pr_number}" if task.pr_number is not None else "-"
        print(
            f"task_id={task.task_id} project={task.project_id} column={task.column} pr={pr} "
            f"pipeline_attempt={task.pipeline_attempt} retry_count={task.retry_count}"
        )


def _state_db_path(config: AppConfig) -> Path:
    return config.runtime.base_dir / "state.db"
