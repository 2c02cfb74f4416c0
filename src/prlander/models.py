from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


TaskColumn = Literal["triage", "backlog", "in_progress", "in_review", "done"]
MergeQueueStatus = Literal[
    "queued",
    "rebasing",
    "conflict",
    "re_review",
    "merging",
    "merged",
    "failed",
]

TASK_COLUMNS: tuple[TaskColumn, ...] = ("triage", "backlog", "in_progress", "in_review", "done")
MERGE_QUEUE_STATUSES: tuple[MergeQueueStatus, ...] = (
    "queued",
    "rebasing",
    "conflict",
    "re_review",
    "merging",
    "merged",
    "failed",
)
# Only one entry across every project may hold one of these at a time.
ACTIVE_QUEUE_STATUSES: frozenset[MergeQueueStatus] = frozenset({"rebasing", "re_review", "merging"})
TERMINAL_QUEUE_STATUSES: frozenset[MergeQueueStatus] = frozenset({"merged", "failed"})


@dataclass(frozen=True)
class KanbanTask:
    task_id: str
    project_id: str
    title: str
    description: str
    column: TaskColumn
    pr_number: int | None
    pr_branch: str | None
    assignee_agent_id: str | None
    completion_report: str | None
    pipeline_attempt: int
    retry_count: int
    last_actioned_review_id: int | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class MergeQueueEntry:
    entry_id: str
    task_id: str
    project_id: str
    pr_number: int
    pr_branch: str
    base_branch: str
    status: MergeQueueStatus
    position: int
    rebase_attempts: int
    last_error: str | None
    approved_at: str
    merged_at: str | None
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_QUEUE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATUSES


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    state: str
    merged: bool
    head_ref: str
    base_ref: str

    @property
    def is_closed_unmerged(self) -> bool:
        return self.state == "closed" and not self.merged


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    state: str
    body: str
    user_login: str
    submitted_at: str | None


@dataclass(frozen=True)
class PullRequestReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None
    diff_hunk: str
    user_login: str
    created_at: str
