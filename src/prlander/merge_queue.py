from __future__ import annotations

from collections.abc import Mapping
from functools import partial
import logging
import threading

from prlander.config import AppConfig
from prlander.events import (
    EventSink,
    NullEventSink,
    entry_updated,
    queue_updated,
    task_updated,
)
from prlander.git_ops import GitRepoManager
from prlander.github_gateway import GitHubApiError, GitHubGateway
from prlander.messages import (
    merge_commit_title,
    merged_externally_report,
    merged_via_queue_report,
    rebase_conflict_comment,
)
from prlander.models import TERMINAL_QUEUE_STATUSES, MergeQueueEntry, MergeQueueStatus
from prlander.observability import log_event, logging_project_context
from prlander.pipeline import DisabledReviewPipeline, ReviewPipeline
from prlander.scheduler import RepeatingTimer, TimerFactory, thread_timer_factory
from prlander.shell import CommandError
from prlander.state import StateStore


LOGGER = logging.getLogger("prlander.merge_queue")

REBASE_CONFLICT_ERROR = "Rebase conflict with base branch"
RE_REVIEW_FAILED_ERROR = "Re-review failed after rebase"


class MergeQueue:
    """Global FIFO that rebases, optionally re-reviews, and squash merges one PR at a time.

    At most one entry across every project is rebasing, re-reviewing or merging.
    State transitions hold a re-entrant lock, so a re-review continuation that
    arrives on another thread never interleaves with a tick.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        state: StateStore,
        github_by_project: Mapping[str, GitHubGateway],
        git_by_project: Mapping[str, GitRepoManager],
        pipeline: ReviewPipeline | None = None,
        events: EventSink | None = None,
        timer_factory: TimerFactory = thread_timer_factory,
    ) -> None:
        self._config = config
        self._state = state
        self._github_by_project = dict(github_by_project)
        self._git_by_project = dict(git_by_project)
        self._pipeline = pipeline or DisabledReviewPipeline()
        self._events = events or NullEventSink()
        self._timer_factory = timer_factory
        self._timer: RepeatingTimer | None = None
        self._processing = False
        self._processing_guard = threading.Lock()
        self._transition_lock = threading.RLock()

    @property
    def is_started(self) -> bool:
        return self._timer is not None

    def start(self, interval_seconds: float | None = None) -> None:
        if self._timer is not None:
            return
        interval = interval_seconds or self._config.runtime.merge_queue_interval_seconds
        self.recover()
        self._timer = self._timer_factory("prlander-merge-queue", interval, self.poll)
        self._timer.start()
        log_event(LOGGER, "merge_queue_started", interval_seconds=interval)

    def stop(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()
            log_event(LOGGER, "merge_queue_stopped")

    def poll(self) -> bool:
        """Run one tick. Returns False when a previous tick is still in flight."""
        with self._processing_guard:
            if self._processing:
                log_event(LOGGER, "merge_queue_poll_skipped", reason="in_flight")
                return False
            self._processing = True
        try:
            with self._transition_lock:
                for step in (self.sync_external_state, self.process_next):
                    try:
                        step()
                    except Exception as exc:  # noqa: BLE001
                        log_event(
                            LOGGER,
                            "merge_queue_tick_step_failed",
                            step=step.__name__,
                            error_type=type(exc).__name__,
                            error=str(exc),
                        )
        finally:
            with self._processing_guard:
                self._processing = False
        return True

    # Queue management.

    def approve_for_merge(self, task_id: str) -> MergeQueueEntry | None:
        task = self._state.get_task(task_id)
        if task is None or task.pr_number is None or not task.pr_branch:
            log_event(
                LOGGER,
                "merge_queue_approval_rejected",
                task_id=task_id,
                reason="missing_task" if task is None else "missing_pull_request",
            )
            return None
        project = self._config.project(task.project_id)
        base_branch = project.default_branch if project is not None else "main"
        entry, created = self._state.enqueue_merge_entry(
            task_id=task.task_id,
            project_id=task.project_id,
            pr_number=task.pr_number,
            pr_branch=task.pr_branch,
            base_branch=base_branch,
        )
        if not created:
            return entry
        log_event(
            LOGGER,
            "merge_queue_entry_approved",
            task_id=task.task_id,
            entry_id=entry.entry_id,
            pr_number=entry.pr_number,
            position=entry.position,
            base_branch=base_branch,
        )
        self._events.emit(entry_updated(entry))
        self._emit_queue_updated()
        return entry

    def remove_from_queue(self, task_id: str) -> bool:
        with self._transition_lock:
            removed = self._state.delete_queue_entry_for_task(task_id)
        if not removed:
            return False
        log_event(LOGGER, "merge_queue_entry_removed", task_id=task_id)
        self._emit_queue_updated()
        return True

    def get_queue(self, project_id: str | None = None) -> tuple[MergeQueueEntry, ...]:
        return self._state.list_queue_entries(project_id=project_id)

    def is_in_queue(self, task_id: str) -> bool:
        return self._state.get_queue_entry_for_task(task_id) is not None

    def reorder_entry(self, entry_id: str, new_position: int) -> bool:
        if not self._state.set_queue_entry_position(entry_id, new_position):
            return False
        log_event(LOGGER, "merge_queue_entry_reordered", entry_id=entry_id, position=new_position)
        self._emit_queue_updated()
        return True

    # Pipeline continuation.

    def on_re_review_complete(self, task_id: str, passed: bool) -> None:
        self._on_re_review_complete(None, task_id, passed)

    def _on_re_review_complete(self, entry_id: str | None, task_id: str, passed: bool) -> None:
        """Resolve a re-review; with ``entry_id`` set, only that entry may be resolved."""
        with self._transition_lock:
            entry = self._state.get_queue_entry_for_task(task_id)
            stale = entry is not None and entry_id is not None and entry.entry_id != entry_id
            if entry is None or stale or entry.status != "re_review":
                log_event(
                    LOGGER,
                    "merge_queue_re_review_result_ignored",
                    task_id=task_id,
                    entry_id=entry_id,
                    passed=passed,
                    status=entry.status if entry is not None else None,
                    stale=stale,
                )
                return
            with logging_project_context(entry.project_id):
                log_event(
                    LOGGER,
                    "merge_queue_re_review_finished",
                    task_id=task_id,
                    pr_number=entry.pr_number,
                    passed=passed,
                )
                if passed:
                    self._set_status(entry.entry_id, "merging")
                    self.do_merge(entry.entry_id)
                    return
                self._set_status(entry.entry_id, "failed", error=RE_REVIEW_FAILED_ERROR)
                self._move_task(entry.task_id, column="in_review")

    # Tick steps.

    def recover(self) -> int:
        with self._transition_lock:
            demoted = self._state.requeue_interrupted_entries()
        for previous in demoted:
            log_event(
                LOGGER,
                "merge_queue_recovered",
                entry_id=previous.entry_id,
                task_id=previous.task_id,
                previous_status=previous.status,
            )
            current = self._state.get_queue_entry(previous.entry_id)
            if current is not None:
                self._events.emit(entry_updated(current))
        if demoted:
            self._emit_queue_updated()
        return len(demoted)

    def sync_external_state(self) -> None:
        with self._transition_lock:
            for entry in self._state.list_queue_entries():
                if entry.status in TERMINAL_QUEUE_STATUSES:
                    continue
                with logging_project_context(entry.project_id):
                    try:
                        self._sync_entry(entry)
                    except Exception as exc:  # noqa: BLE001
                        log_event(
                            LOGGER,
                            "merge_queue_sync_entry_failed",
                            entry_id=entry.entry_id,
                            pr_number=entry.pr_number,
                            error_type=type(exc).__name__,
                            error=str(exc),
                        )

    def process_next(self) -> bool:
        with self._transition_lock:
            active = self._state.active_queue_entry()
            if active is not None:
                log_event(
                    LOGGER,
                    "merge_queue_busy",
                    entry_id=active.entry_id,
                    status=active.status,
                )
                return False
            entry = self._state.next_queued_entry()
            if entry is None:
                return False
            self.process_entry(entry.entry_id)
            return True

    def process_entry(self, entry_id: str) -> None:
        with self._transition_lock:
            entry = self._state.get_queue_entry(entry_id)
            if entry is None:
                return
            with logging_project_context(entry.project_id):
                self._process_entry(entry)

    def do_merge(self, entry_id: str) -> None:
        with self._transition_lock:
            entry = self._state.get_queue_entry(entry_id)
            if entry is None:
                return
            github = self._github_by_project.get(entry.project_id)
            if github is None:
                self._set_status(
                    entry_id, "failed", error=f"Unknown project {entry.project_id!r}"
                )
                return
            task = self._state.get_task(entry.task_id)
            title = merge_commit_title(
                task_title=task.title if task is not None else None,
                pr_number=entry.pr_number,
            )
            try:
                github.merge_pull_request(
                    entry.pr_number, merge_method="squash", commit_title=title
                )
            except GitHubApiError as exc:
                if exc.is_not_mergeable:
                    log_event(
                        LOGGER,
                        "merge_queue_merge_failed",
                        entry_id=entry_id,
                        pr_number=entry.pr_number,
                        status_code=exc.status_code,
                        error=str(exc),
                    )
                    self._set_status(entry_id, "failed", error=f"Merge failed: {exc}")
                    return
                self._log_unresolved_merge(entry, exc)
                return
            except Exception as exc:  # noqa: BLE001
                self._log_unresolved_merge(entry, exc)
                return

            self._set_status(entry_id, "merged")
            self._move_task(
                entry.task_id,
                column="done",
                completion_report=merged_via_queue_report(entry.pr_number),
            )
            log_event(
                LOGGER,
                "merge_queue_merged",
                entry_id=entry_id,
                task_id=entry.task_id,
                pr_number=entry.pr_number,
            )

    def _process_entry(self, entry: MergeQueueEntry) -> None:
        github = self._github_by_project.get(entry.project_id)
        git = self._git_by_project.get(entry.project_id)
        if github is None or git is None:
            self._set_status(
                entry.entry_id, "failed", error=f"Unknown project {entry.project_id!r}"
            )
            return

        self._set_status(entry.entry_id, "rebasing")
        try:
            rebased = git.rebase_branch(entry.pr_branch, entry.base_branch)
        except Exception as exc:  # noqa: BLE001
            self._set_status(entry.entry_id, "failed", error=f"Rebase failed: {_summary(exc)}")
            return

        if not rebased:
            self._set_status(entry.entry_id, "conflict", error=REBASE_CONFLICT_ERROR)
            log_event(
                LOGGER,
                "merge_queue_rebase_conflict",
                entry_id=entry.entry_id,
                pr_number=entry.pr_number,
                branch=entry.pr_branch,
                base_branch=entry.base_branch,
            )
            try:
                github.post_issue_comment(
                    entry.pr_number,
                    rebase_conflict_comment(branch=entry.pr_branch, base_branch=entry.base_branch),
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "merge_queue_conflict_comment_failed",
                    pr_number=entry.pr_number,
                    error_type=type(exc).__name__,
                )
            self._move_task(entry.task_id, column="backlog", clear_assignee=True)
            return

        try:
            git.force_push_branch(entry.pr_branch)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "merge_queue_force_push_failed",
                entry_id=entry.entry_id,
                pr_number=entry.pr_number,
                error_type=type(exc).__name__,
            )
            self._set_status(
                entry.entry_id, "failed", error=f"Force push failed: {_summary(exc)}"
            )
            return

        if self._pipeline.is_enabled(entry.project_id):
            self._set_status(entry.entry_id, "re_review")
            try:
                self._pipeline.start_re_review(
                    task_id=entry.task_id,
                    branch=entry.pr_branch,
                    pr_number=entry.pr_number,
                    on_complete=partial(
                        self._on_re_review_complete, entry.entry_id, entry.task_id
                    ),
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "merge_queue_re_review_start_failed",
                    entry_id=entry.entry_id,
                    pr_number=entry.pr_number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                log_event(
                    LOGGER,
                    "merge_queue_re_review_started",
                    entry_id=entry.entry_id,
                    pr_number=entry.pr_number,
                )
                return

        self._set_status(entry.entry_id, "merging")
        self.do_merge(entry.entry_id)

    def _sync_entry(self, entry: MergeQueueEntry) -> None:
        github = self._github_by_project.get(entry.project_id)
        if github is None:
            raise RuntimeError(f"Unknown project {entry.project_id!r}")
        pr = github.get_pull_request(entry.pr_number)
        if pr.merged:
            self._set_status(entry.entry_id, "merged")
            self._move_task(
                entry.task_id,
                column="done",
                completion_report=merged_externally_report(entry.pr_number),
            )
            log_event(
                LOGGER,
                "merge_queue_external_merge_detected",
                entry_id=entry.entry_id,
                pr_number=entry.pr_number,
            )
            return
        if pr.is_closed_unmerged:
            self._state.delete_queue_entry(entry.entry_id)
            self._move_task(entry.task_id, column="backlog", clear_assignee=True)
            log_event(
                LOGGER,
                "merge_queue_external_close_detected",
                entry_id=entry.entry_id,
                pr_number=entry.pr_number,
            )
            self._emit_queue_updated()

    def _set_status(
        self,
        entry_id: str,
        status: MergeQueueStatus,
        *,
        error: str | None = None,
    ) -> MergeQueueEntry | None:
        updated = self._state.set_queue_entry_status(entry_id, status, error=error)
        if updated is None:
            return None
        log_event(
            LOGGER,
            "merge_queue_entry_status",
            entry_id=entry_id,
            status=status,
            rebase_attempts=updated.rebase_attempts,
            error=error,
        )
        self._events.emit(entry_updated(updated))
        return updated

    def _move_task(
        self,
        task_id: str,
        *,
        column: str,
        completion_report: str | None = None,
        clear_assignee: bool = False,
    ) -> None:
        task = self._state.update_task(
            task_id,
            column=column,  # type: ignore[arg-type]
            completion_report=completion_report,
            clear_assignee=clear_assignee,
        )
        if task is not None:
            self._events.emit(task_updated(task))

    def _emit_queue_updated(self) -> None:
        self._events.emit(queue_updated(self._state.list_queue_entries()))

    def _log_unresolved_merge(self, entry: MergeQueueEntry, exc: Exception) -> None:
        # Ambiguous outcome: keep the entry in merging so nothing retries the merge.
        log_event(
            LOGGER,
            "merge_queue_merge_error_unresolved",
            entry_id=entry.entry_id,
            pr_number=entry.pr_number,
            error_type=type(exc).__name__,
            error=str(exc),
        )


def _summary(exc: Exception) -> str:
    if isinstance(exc, CommandError):
        return exc.summary
    return str(exc)
