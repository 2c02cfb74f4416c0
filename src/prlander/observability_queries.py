from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import sqlite3


@dataclass(frozen=True)
class OverviewStats:
    queued: int
    active: int
    conflicts: int
    failed: int
    merged: int
    in_review: int
    review_cycles: int


@dataclass(frozen=True)
class QueueRow:
    entry_id: str
    task_id: str
    project_id: str
    pr_number: int
    pr_branch: str
    status: str
    position: int
    rebase_attempts: int
    last_error: str | None
    updated_at: str


@dataclass(frozen=True)
class ReviewRow:
    task_id: str
    project_id: str
    title: str
    column: str
    pr_number: int | None
    pr_branch: str | None
    pipeline_attempt: int
    retry_count: int
    updated_at: str


def load_overview(db_path: Path, project_filter: str | None = None) -> OverviewStats:
    clause, params = _project_filter_sql(project_filter)
    with _connect(db_path) as conn:
        counts = {
            str(status): _as_int(count, "count")
            for status, count in conn.execute(
                f"""
                SELECT status, COUNT(*)
                FROM merge_queue
                WHERE 1 = 1 {clause}
                GROUP BY status
                """,
                params,
            ).fetchall()
        }
        in_review = _fetch_int(
            conn,
            f"""
            SELECT COUNT(*)
            FROM tasks
            WHERE column_name = 'in_review' AND pr_number IS NOT NULL {clause}
            """,
            params,
        )
        review_cycles = _fetch_int(
            conn,
            f"""
            SELECT COALESCE(SUM(pipeline_attempt), 0)
            FROM tasks
            WHERE pr_number IS NOT NULL {clause}
            """,
            params,
        )
    return OverviewStats(
        queued=counts.get("queued", 0),
        active=sum(counts.get(status, 0) for status in ("rebasing", "re_review", "merging")),
        conflicts=counts.get("conflict", 0),
        failed=counts.get("failed", 0),
        merged=counts.get("merged", 0),
        in_review=in_review,
        review_cycles=review_cycles,
    )


def load_queue_rows(
    db_path: Path,
    project_filter: str | None = None,
    *,
    include_terminal: bool = False,
    limit: int | None = None,
) -> tuple[QueueRow, ...]:
    clause, params = _project_filter_sql(project_filter)
    if not include_terminal:
        clause += " AND status NOT IN ('merged', 'failed')"
    limit_sql = ""
    if limit is not None:
        limit_sql = "LIMIT ?"
        params = (*params, limit)
    with _connect(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT
                entry_id,
                task_id,
                project_id,
                pr_number,
                pr_branch,
                status,
                position,
                rebase_attempts,
                last_error,
                updated_at
            FROM merge_queue
            WHERE 1 = 1 {clause}
            ORDER BY position ASC, created_at ASC
            {limit_sql}
            """,
            params,
        ).fetchall()
    return tuple(
        QueueRow(
            entry_id=_as_str(row[0], "entry_id"),
            task_id=_as_str(row[1], "task_id"),
            project_id=_as_str(row[2], "project_id"),
            pr_number=_as_int(row[3], "pr_number"),
            pr_branch=_as_str(row[4], "pr_branch"),
            status=_as_str(row[5], "status"),
            position=_as_int(row[6], "position"),
            rebase_attempts=_as_int(row[7], "rebase_attempts"),
            last_error=_as_optional_str(row[8], "last_error"),
            updated_at=_as_str(row[9], "updated_at"),
        )
        for row in rows
    )


def load_review_rows(
    db_path: Path,
    project_filter: str | None = None,
    *,
    limit: int | None = None,
) -> tuple[ReviewRow, ...]:
    """Tasks that hold a PR outside the terminal `done` column, most recently touched first."""
    clause, params = _project_filter_sql(project_filter)
    limit_sql = ""
    if limit is not None:
        limit_sql = "LIMIT ?"
        params = (*params, limit)
    with _connect(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT
                task_id,
                project_id,
                title,
                column_name,
                pr_number,
                pr_branch,
                pipeline_attempt,
                retry_count,
                updated_at
            FROM tasks
            WHERE column_name != 'done'
              AND (pr_number IS NOT NULL OR pipeline_attempt > 0)
              {clause}
            ORDER BY updated_at DESC, task_id ASC
            {limit_sql}
            """,
            params,
        ).fetchall()
    return tuple(
        ReviewRow(
            task_id=_as_str(row[0], "task_id"),
            project_id=_as_str(row[1], "project_id"),
            title=_as_str(row[2], "title"),
            column=_as_str(row[3], "column_name"),
            pr_number=_as_optional_int(row[4], "pr_number"),
            pr_branch=_as_optional_str(row[5], "pr_branch"),
            pipeline_attempt=_as_int(row[6], "pipeline_attempt"),
            retry_count=_as_int(row[7], "retry_count"),
            updated_at=_as_str(row[8], "updated_at"),
        )
        for row in rows
    )


def load_project_ids(db_path: Path) -> tuple[str, ...]:
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT project_id FROM tasks
            UNION
            SELECT project_id FROM merge_queue
            ORDER BY project_id ASC
            """
        ).fetchall()
    return tuple(_as_str(row[0], "project_id") for row in rows)


def _project_filter_sql(project_filter: str | None) -> tuple[str, tuple[object, ...]]:
    if project_filter is None:
        return "", ()
    return "AND project_id = ?", (project_filter,)


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    try:
        yield conn
    finally:
        conn.close()


def _fetch_int(conn: sqlite3.Connection, sql: str, params: tuple[object, ...]) -> int:
    row = conn.execute(sql, params).fetchone()
    if row is None:
        return 0
    return _as_int(row[0], "count")


def _as_int(value: object, field: str) -> int:
    if isinstance(value, int):
        return value
    raise RuntimeError(f"Invalid integer value for {field}")


def _as_optional_int(value: object, field: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, field)


def _as_str(value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    raise RuntimeError(f"Invalid text value for {field}")


def _as_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, field)
