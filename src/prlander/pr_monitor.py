from __future__ import annotations

from collections.abc import Mapping, Sequence
import logging
import threading

from prlander.config import AppConfig
from prlander.directives import Directive, DirectiveDispatcher
from prlander.events import EventSink, NullEventSink, task_updated
from prlander.github_gateway import GitHubGateway
from prlander.messages import (
    build_review_cycle_description,
    build_review_feedback,
    build_review_fix_directive,
    merged_report,
    review_budget_exceeded_report,
)
from prlander.models import KanbanTask, PullRequestReview, PullRequestSnapshot
from prlander.observability import log_event, logging_project_context
from prlander.pipeline import DisabledReviewPipeline, ReviewPipeline
from prlander.scheduler import RepeatingTimer, TimerFactory, thread_timer_factory
from prlander.state import StateStore


LOGGER = logging.getLogger("prlander.pr_monitor")


class PullRequestMonitor:
    """Reconciles `in_review` tasks against GitHub and routes change requests.

    The review watermark lives on the task row, so a change request that is
    still unresolved on the next poll (or after a restart) is not actioned twice.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        state: StateStore,
        github_by_project: Mapping[str, GitHubGateway],
        directives: DirectiveDispatcher,
        pipeline: ReviewPipeline | None = None,
        events: EventSink | None = None,
        timer_factory: TimerFactory = thread_timer_factory,
    ) -> None:
        self._config = config
        self._state = state
        self._github_by_project = dict(github_by_project)
        self._directives = directives
        self._pipeline = pipeline or DisabledReviewPipeline()
        self._events = events or NullEventSink()
        self._timer_factory = timer_factory
        self._timer: RepeatingTimer | None = None
        self._polling = False
        self._polling_guard = threading.Lock()

    @property
    def max_review_cycles(self) -> int:
        return self._config.runtime.max_review_cycles

    def start(self, interval_seconds: float | None = None) -> None:
        if self._timer is not None:
            return
        interval = interval_seconds or self._config.runtime.pr_monitor_interval_seconds
        self._timer = self._timer_factory("prlander-pr-monitor", interval, self.poll)
        self._timer.start()
        log_event(LOGGER, "pr_monitor_started", interval_seconds=interval)

    def stop(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()
            log_event(LOGGER, "pr_monitor_stopped")

    def poll(self) -> bool:
        with self._polling_guard:
            if self._polling:
                log_event(LOGGER, "pr_monitor_poll_skipped", reason="in_flight")
                return False
            self._polling = True
        try:
            tasks = self._state.list_tasks(column="in_review", with_pull_request=True)
            for task in tasks:
                entry = self._state.get_queue_entry_for_task(task.task_id)
                if entry is not None and entry.is_active:
                    continue
                with logging_project_context(task.project_id):
                    try:
                        self.check_task(task)
                    except Exception as exc:  # noqa: BLE001
                        log_event(
                            LOGGER,
                            "pr_monitor_check_failed",
                            task_id=task.task_id,
                            pr_number=task.pr_number,
                            error_type=type(exc).__name__,
                            error=str(exc),
                        )
        finally:
            with self._polling_guard:
                self._polling = False
        return True

    def check_task(self, task: KanbanTask) -> None:
        if task.pr_number is None:
            return
        github = self._github_by_project.get(task.project_id)
        if github is None:
            log_event(
                LOGGER,
                "pr_monitor_project_unknown",
                task_id=task.task_id,
                project_id=task.project_id,
            )
            return

        pr = github.get_pull_request(task.pr_number)
        if pr.merged:
            self._update(
                task.task_id,
                column="done",
                completion_report=merged_report(task.pr_number),
            )
            log_event(
                LOGGER, "pr_monitor_pr_merged", task_id=task.task_id, pr_number=task.pr_number
            )
            return
        if pr.is_closed_unmerged:
            self._update(
                task.task_id,
                column="backlog",
                clear_assignee=True,
                clear_pull_request=True,
                increment_retry_count=True,
            )
            log_event(
                LOGGER, "pr_monitor_pr_closed", task_id=task.task_id, pr_number=task.pr_number
            )
            return

        new_reviews = _unactioned_change_requests(
            github.list_pull_request_reviews(task.pr_number),
            watermark=task.last_actioned_review_id,
        )
        if not new_reviews:
            return
        watermark = max(review.review_id for review in new_reviews)

        if task.pipeline_attempt >= self.max_review_cycles:
            self._update(
                task.task_id,
                column="done",
                completion_report=review_budget_exceeded_report(
                    pr_number=task.pr_number,
                    max_review_cycles=self.max_review_cycles,
                ),
                pipeline_attempt=task.pipeline_attempt + 1,
                last_actioned_review_id=watermark,
            )
            log_event(
                LOGGER,
                "pr_monitor_review_budget_exceeded",
                task_id=task.task_id,
                pr_number=task.pr_number,
                pipeline_attempt=task.pipeline_attempt + 1,
                max_review_cycles=self.max_review_cycles,
            )
            return

        self._route_change_request(task, pr, new_reviews, github=github, watermark=watermark)

    def _route_change_request(
        self,
        task: KanbanTask,
        pr: PullRequestSnapshot,
        reviews: Sequence[PullRequestReview],
        *,
        github: GitHubGateway,
        watermark: int,
    ) -> None:
        assert task.pr_number is not None
        comments = github.list_pull_request_review_comments(task.pr_number)
        feedback = build_review_feedback(reviews, comments)
        branch = task.pr_branch or pr.head_ref
        updated = self._update(
            task.task_id,
            column="in_progress",
            description=build_review_cycle_description(
                pr_number=task.pr_number, branch=branch, feedback=feedback
            ),
            clear_assignee=True,
            pipeline_attempt=task.pipeline_attempt + 1,
            last_actioned_review_id=watermark,
        )
        log_event(
            LOGGER,
            "pr_monitor_changes_requested",
            task_id=task.task_id,
            pr_number=task.pr_number,
            review_count=len(reviews),
            comment_count=len(comments),
            pipeline_attempt=task.pipeline_attempt + 1,
        )

        route = "pipeline" if self._pipeline.is_enabled(task.project_id) else "directive"
        try:
            if route == "pipeline":
                self._pipeline.handle_review_feedback(
                    task_id=task.task_id,
                    feedback=feedback,
                    branch=branch,
                    pr_number=task.pr_number,
                )
                return

            project = self._config.project(task.project_id)
            delegate = project.delegate if project is not None else "team-lead"
            self._directives.dispatch(
                Directive(
                    project_id=task.project_id,
                    delegate=delegate,
                    task_id=task.task_id,
                    content=build_review_fix_directive(
                        task=updated or task,
                        pr_number=task.pr_number,
                        branch=branch,
                        feedback=feedback,
                    ),
                )
            )
        except Exception as exc:  # noqa: BLE001
            # The task already moved and the watermark advanced; this cycle needs a manual replay.
            log_event(
                LOGGER,
                "pr_monitor_dispatch_failed",
                task_id=task.task_id,
                pr_number=task.pr_number,
                route=route,
                review_ids=",".join(str(review.review_id) for review in reviews),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _update(self, task_id: str, **changes: object) -> KanbanTask | None:
        updated = self._state.update_task(task_id, **changes)  # type: ignore[arg-type]
        if updated is not None:
            self._events.emit(task_updated(updated))
        return updated


def _unactioned_change_requests(
    reviews: Sequence[PullRequestReview],
    *,
    watermark: int | None,
) -> tuple[PullRequestReview, ...]:
    return tuple(
        review
        for review in reviews
        if review.state == "CHANGES_REQUESTED"
        and (watermark is None or review.review_id > watermark)
    )
