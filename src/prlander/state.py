from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
import sqlite3
import threading
from typing import cast
import uuid

from prlander.models import (
    MERGE_QUEUE_STATUSES,
    TASK_COLUMNS,
    KanbanTask,
    MergeQueueEntry,
    MergeQueueStatus,
    TaskColumn,
)


_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"
_TASK_SELECT_COLUMNS = """
    task_id,
    project_id,
    title,
    description,
    column_name,
    pr_number,
    pr_branch,
    assignee_agent_id,
    completion_report,
    pipeline_attempt,
    retry_count,
    last_actioned_review_id,
    created_at,
    updated_at
"""
_ENTRY_SELECT_COLUMNS = """
    entry_id,
    task_id,
    project_id,
    pr_number,
    pr_branch,
    base_branch,
    status,
    position,
    rebase_attempts,
    last_error,
    approved_at,
    merged_at,
    created_at,
    updated_at
"""


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    column_name TEXT NOT NULL,
                    pr_number INTEGER NULL,
                    pr_branch TEXT NULL,
                    assignee_agent_id TEXT NULL,
                    completion_report TEXT NULL,
                    pipeline_attempt INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_actioned_review_id INTEGER NULL,
                    created_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS merge_queue (
                    entry_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL UNIQUE,
                    project_id TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    pr_branch TEXT NOT NULL,
                    base_branch TEXT NOT NULL,
                    status TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    rebase_attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT NULL,
                    approved_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
                    merged_at TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_merge_queue_status_position
                ON merge_queue(status, position)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tasks_column_name
                ON tasks(column_name)
                """
            )

    # Tasks. The host owns task creation; insert_task exists for seeding.

    def insert_task(
        self,
        *,
        task_id: str,
        project_id: str,
        title: str,
        description: str = "",
        column: TaskColumn = "backlog",
        pr_number: int | None = None,
        pr_branch: str | None = None,
        assignee_agent_id: str | None = None,
        pipeline_attempt: int = 0,
    ) -> KanbanTask:
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO tasks(
                        task_id,
                        project_id,
                        title,
                        description,
                        column_name,
                        pr_number,
                        pr_branch,
                        assignee_agent_id,
                        pipeline_attempt
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_id,
                        project_id,
                        title,
                        description,
                        column,
                        pr_number,
                        pr_branch,
                        assignee_agent_id,
                        pipeline_attempt,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise RuntimeError(f"Task {task_id!r} already exists") from exc
            task = _select_task(conn, task_id)
        if task is None:
            raise RuntimeError("tasks row disappeared after insert")
        return task

    def get_task(self, task_id: str) -> KanbanTask | None:
        with self._lock, self._connect() as conn:
            return _select_task(conn, task_id)

    def list_tasks(
        self,
        *,
        column: TaskColumn | None = None,
        project_id: str | None = None,
        with_pull_request: bool = False,
    ) -> tuple[KanbanTask, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if column is not None:
            clauses.append("column_name = ?")
            params.append(column)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if with_pull_request:
            clauses.append("pr_number IS NOT NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TASK_SELECT_COLUMNS}
                FROM tasks
                {where}
                ORDER BY created_at ASC, task_id ASC
                """,
                tuple(params),
            ).fetchall()
        return tuple(_parse_task_row(row) for row in rows)

    def update_task(
        self,
        task_id: str,
        *,
        column: TaskColumn | None = None,
        description: str | None = None,
        completion_report: str | None = None,
        clear_assignee: bool = False,
        clear_pull_request: bool = False,
        pipeline_attempt: int | None = None,
        increment_retry_count: bool = False,
        last_actioned_review_id: int | None = None,
    ) -> KanbanTask | None:
        assignments: list[str] = []
        params: list[object] = []
        if column is not None:
            assignments.append("column_name = ?")
            params.append(column)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        if completion_report is not None:
            assignments.append("completion_report = ?")
            params.append(completion_report)
        if clear_assignee:
            assignments.append("assignee_agent_id = NULL")
        if clear_pull_request:
            assignments.append("pr_number = NULL")
            assignments.append("pr_branch = NULL")
        if pipeline_attempt is not None:
            assignments.append("pipeline_attempt = ?")
            params.append(pipeline_attempt)
        if increment_retry_count:
            assignments.append("retry_count = retry_count + 1")
        if last_actioned_review_id is not None:
            assignments.append("last_actioned_review_id = ?")
            params.append(last_actioned_review_id)
        assignments.append(f"updated_at = {_NOW_SQL}")

        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE tasks
                SET {", ".join(assignments)}
                WHERE task_id = ?
                """,
                (*params, task_id),
            )
            if cursor.rowcount == 0:
                return None
            return _select_task(conn, task_id)

    def delete_task(self, task_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
        return cursor.rowcount > 0

    # Merge queue.

    def enqueue_merge_entry(
        self,
        *,
        task_id: str,
        project_id: str,
        pr_number: int,
        pr_branch: str,
        base_branch: str,
    ) -> tuple[MergeQueueEntry, bool]:
        """Append an entry for a task unless one already exists.

        Returns the entry and whether it was newly created. The existence check
        and the insert share one transaction so concurrent approvals of the same
        task converge on a single row.
        """
        with self._lock, self._connect() as conn:
            existing = _select_entry_where(conn, "task_id = ?", (task_id,))
            if existing is not None:
                return existing, False
            row = conn.execute("SELECT MAX(position) FROM merge_queue").fetchone()
            max_position = row[0] if row is not None else None
            if max_position is not None and not isinstance(max_position, int):
                raise RuntimeError("Invalid position value stored in merge_queue")
            # Append after the highest position, never below 1.
            position = max(max_position or 0, 0) + 1
            entry_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO merge_queue(
                    entry_id,
                    task_id,
                    project_id,
                    pr_number,
                    pr_branch,
                    base_branch,
                    status,
                    position,
                    rebase_attempts
                )
                VALUES(?, ?, ?, ?, ?, ?, 'queued', ?, 0)
                """,
                (entry_id, task_id, project_id, pr_number, pr_branch, base_branch, position),
            )
            created = _select_entry_where(conn, "entry_id = ?", (entry_id,))
        if created is None:
            raise RuntimeError("merge_queue row disappeared after insert")
        return created, True

    def get_queue_entry(self, entry_id: str) -> MergeQueueEntry | None:
        with self._lock, self._connect() as conn:
            return _select_entry_where(conn, "entry_id = ?", (entry_id,))

    def get_queue_entry_for_task(self, task_id: str) -> MergeQueueEntry | None:
        with self._lock, self._connect() as conn:
            return _select_entry_where(conn, "task_id = ?", (task_id,))

    def list_queue_entries(
        self,
        *,
        project_id: str | None = None,
        statuses: Iterable[MergeQueueStatus] | None = None,
    ) -> tuple[MergeQueueEntry, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if statuses is not None:
            status_values = tuple(statuses)
            if not status_values:
                return ()
            placeholders = ", ".join("?" for _ in status_values)
            clauses.append(f"status IN ({placeholders})")
            params.extend(status_values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ENTRY_SELECT_COLUMNS}
                FROM merge_queue
                {where}
                ORDER BY position ASC, created_at ASC, entry_id ASC
                """,
                tuple(params),
            ).fetchall()
        return tuple(_parse_entry_row(row) for row in rows)

    def next_queued_entry(self) -> MergeQueueEntry | None:
        with self._lock, self._connect() as conn:
            return _select_entry_where(
                conn,
                "status = 'queued'",
                (),
                order_by="position ASC, created_at ASC, entry_id ASC",
            )

    def active_queue_entry(self) -> MergeQueueEntry | None:
        with self._lock, self._connect() as conn:
            return _select_entry_where(
                conn,
                "status IN ('rebasing', 're_review', 'merging')",
                (),
                order_by="position ASC",
            )

    def set_queue_entry_status(
        self,
        entry_id: str,
        status: MergeQueueStatus,
        *,
        error: str | None = None,
    ) -> MergeQueueEntry | None:
        assignments = ["status = ?", f"updated_at = {_NOW_SQL}"]
        params: list[object] = [status]
        if status == "rebasing":
            assignments.append("rebase_attempts = rebase_attempts + 1")
        if status == "merged":
            assignments.append(f"merged_at = {_NOW_SQL}")
        if error is not None:
            assignments.append("last_error = ?")
            params.append(error)
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE merge_queue
                SET {", ".join(assignments)}
                WHERE entry_id = ?
                """,
                (*params, entry_id),
            )
            if cursor.rowcount == 0:
                return None
            return _select_entry_where(conn, "entry_id = ?", (entry_id,))

    def set_queue_entry_position(self, entry_id: str, position: int) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE merge_queue
                SET position = ?, updated_at = {_NOW_SQL}
                WHERE entry_id = ?
                """,
                (position, entry_id),
            )
        return cursor.rowcount > 0

    def delete_queue_entry(self, entry_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM merge_queue WHERE entry_id = ?", (entry_id,))
        return cursor.rowcount > 0

    def delete_queue_entry_for_task(self, task_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM merge_queue WHERE task_id = ?", (task_id,))
        return cursor.rowcount > 0

    def requeue_interrupted_entries(self) -> tuple[MergeQueueEntry, ...]:
        """Demote rebasing/re_review entries to queued and return them as they were."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ENTRY_SELECT_COLUMNS}
                FROM merge_queue
                WHERE status IN ('rebasing', 're_review')
                ORDER BY position ASC
                """
            ).fetchall()
            conn.execute(
                f"""
                UPDATE merge_queue
                SET status = 'queued', updated_at = {_NOW_SQL}
                WHERE status IN ('rebasing', 're_review')
                """
            )
        return tuple(_parse_entry_row(row) for row in rows)


def _select_task(conn: sqlite3.Connection, task_id: str) -> KanbanTask | None:
    row = conn.execute(
        f"""
        SELECT {_TASK_SELECT_COLUMNS}
        FROM tasks
        WHERE task_id = ?
        """,
        (task_id,),
    ).fetchone()
    if row is None:
        return None
    return _parse_task_row(row)


def _select_entry_where(
    conn: sqlite3.Connection,
    where: str,
    params: tuple[object, ...],
    *,
    order_by: str | None = None,
) -> MergeQueueEntry | None:
    order = f"ORDER BY {order_by}" if order_by else ""
    row = conn.execute(
        f"""
        SELECT {_ENTRY_SELECT_COLUMNS}
        FROM merge_queue
        WHERE {where}
        {order}
        LIMIT 1
        """,
        params,
    ).fetchone()
    if row is None:
        return None
    return _parse_entry_row(row)


def _parse_task_row(row: tuple[object, ...]) -> KanbanTask:
    if len(row) != 14:
        raise RuntimeError("Invalid tasks row width")
    (
        task_id,
        project_id,
        title,
        description,
        column_name,
        pr_number,
        pr_branch,
        assignee_agent_id,
        completion_report,
        pipeline_attempt,
        retry_count,
        last_actioned_review_id,
        created_at,
        updated_at,
    ) = row

    if not isinstance(task_id, str):
        raise RuntimeError("Invalid task_id value stored in tasks")
    if not isinstance(project_id, str):
        raise RuntimeError("Invalid project_id value stored in tasks")
    if not isinstance(title, str):
        raise RuntimeError("Invalid title value stored in tasks")
    if not isinstance(description, str):
        raise RuntimeError("Invalid description value stored in tasks")
    if pr_number is not None and not isinstance(pr_number, int):
        raise RuntimeError("Invalid pr_number value stored in tasks")
    if pr_branch is not None and not isinstance(pr_branch, str):
        raise RuntimeError("Invalid pr_branch value stored in tasks")
    if assignee_agent_id is not None and not isinstance(assignee_agent_id, str):
        raise RuntimeError("Invalid assignee_agent_id value stored in tasks")
    if completion_report is not None and not isinstance(completion_report, str):
        raise RuntimeError("Invalid completion_report value stored in tasks")
    if not isinstance(pipeline_attempt, int):
        raise RuntimeError("Invalid pipeline_attempt value stored in tasks")
    if not isinstance(retry_count, int):
        raise RuntimeError("Invalid retry_count value stored in tasks")
    if last_actioned_review_id is not None and not isinstance(last_actioned_review_id, int):
        raise RuntimeError("Invalid last_actioned_review_id value stored in tasks")
    if not isinstance(created_at, str):
        raise RuntimeError("Invalid created_at value stored in tasks")
    if not isinstance(updated_at, str):
        raise RuntimeError("Invalid updated_at value stored in tasks")

    return KanbanTask(
        task_id=task_id,
        project_id=project_id,
        title=title,
        description=description,
        column=_parse_task_column(column_name),
        pr_number=pr_number,
        pr_branch=pr_branch,
        assignee_agent_id=assignee_agent_id,
        completion_report=completion_report,
        pipeline_attempt=pipeline_attempt,
        retry_count=retry_count,
        last_actioned_review_id=last_actioned_review_id,
        created_at=created_at,
        updated_at=updated_at,
    )


def _parse_entry_row(row: tuple[object, ...]) -> MergeQueueEntry:
    if len(row) != 14:
        raise RuntimeError("Invalid merge_queue row width")
    (
        entry_id,
        task_id,
        project_id,
        pr_number,
        pr_branch,
        base_branch,
        status,
        position,
        rebase_attempts,
        last_error,
        approved_at,
        merged_at,
        created_at,
        updated_at,
    ) = row

    if not isinstance(entry_id, str):
        raise RuntimeError("Invalid entry_id value stored in merge_queue")
    if not isinstance(task_id, str):
        raise RuntimeError("Invalid task_id value stored in merge_queue")
    if not isinstance(project_id, str):
        raise RuntimeError("Invalid project_id value stored in merge_queue")
    if not isinstance(pr_number, int):
        raise RuntimeError("Invalid pr_number value stored in merge_queue")
    if not isinstance(pr_branch, str):
        raise RuntimeError("Invalid pr_branch value stored in merge_queue")
    if not isinstance(base_branch, str):
        raise RuntimeError("Invalid base_branch value stored in merge_queue")
    if not isinstance(position, int):
        raise RuntimeError("Invalid position value stored in merge_queue")
    if not isinstance(rebase_attempts, int):
        raise RuntimeError("Invalid rebase_attempts value stored in merge_queue")
    if last_error is not None and not isinstance(last_error, str):
        raise RuntimeError("Invalid last_error value stored in merge_queue")
    if not isinstance(approved_at, str):
        raise RuntimeError("Invalid approved_at value stored in merge_queue")
    if merged_at is not None and not isinstance(merged_at, str):
        raise RuntimeError("Invalid merged_at value stored in merge_queue")
    if not isinstance(created_at, str):
        raise RuntimeError("Invalid created_at value stored in merge_queue")
    if not isinstance(updated_at, str):
        raise RuntimeError("Invalid updated_at value stored in merge_queue")

    return MergeQueueEntry(
        entry_id=entry_id,
        task_id=task_id,
        project_id=project_id,
        pr_number=pr_number,
        pr_branch=pr_branch,
        base_branch=base_branch,
        status=_parse_queue_status(status),
        position=position,
        rebase_attempts=rebase_attempts,
        last_error=last_error,
        approved_at=approved_at,
        merged_at=merged_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _parse_task_column(value: object) -> TaskColumn:
    if not isinstance(value, str):
        raise RuntimeError("Invalid column_name value stored in tasks")
    if value not in TASK_COLUMNS:
        raise RuntimeError(f"Unknown column_name value stored in tasks: {value}")
    return cast(TaskColumn, value)


def _parse_queue_status(value: object) -> MergeQueueStatus:
    if not isinstance(value, str):
        raise RuntimeError("Invalid status value stored in merge_queue")
    if value not in MERGE_QUEUE_STATUSES:
        raise RuntimeError(f"Unknown status value stored in merge_queue: {value}")
    return cast(MergeQueueStatus, value)
