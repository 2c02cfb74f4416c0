from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
import logging
from pathlib import Path

from prlander.config import AppConfig, ProjectConfig
from prlander.messages import build_re_review_prompt, build_review_feedback_prompt
from prlander.observability import log_event, logging_project_context
from prlander.shell import CommandError, run
from prlander.state import StateStore


LOGGER = logging.getLogger("prlander.pipeline")

ReReviewCallback = Callable[[bool], None]


class ReviewPipeline(ABC):
    @abstractmethod
    def is_enabled(self, project_id: str) -> bool:
        """Whether the project routes rebased PRs and review feedback through this pipeline."""

    @abstractmethod
    def start_re_review(
        self,
        *,
        task_id: str,
        branch: str,
        pr_number: int,
        on_complete: ReReviewCallback,
    ) -> None:
        """Dispatch an asynchronous re-review and return immediately.

        `on_complete(passed)` must be invoked exactly once when the review finishes.
        Raising here means the review never started.
        """

    @abstractmethod
    def handle_review_feedback(
        self,
        *,
        task_id: str,
        feedback: str,
        branch: str,
        pr_number: int,
    ) -> None:
        """Hand reviewer feedback to the pipeline's implementer."""


class DisabledReviewPipeline(ReviewPipeline):
    def is_enabled(self, project_id: str) -> bool:
        _ = project_id
        return False

    def start_re_review(
        self,
        *,
        task_id: str,
        branch: str,
        pr_number: int,
        on_complete: ReReviewCallback,
    ) -> None:
        _ = branch, pr_number, on_complete
        raise RuntimeError(f"Review pipeline is disabled; cannot re-review task {task_id}")

    def handle_review_feedback(
        self,
        *,
        task_id: str,
        feedback: str,
        branch: str,
        pr_number: int,
    ) -> None:
        _ = feedback, branch, pr_number
        raise RuntimeError(f"Review pipeline is disabled; cannot route feedback for {task_id}")


class CommandReviewPipeline(ReviewPipeline):
    """Runs per-project commands on a worker pool with the prompt on stdin."""

    def __init__(
        self,
        config: AppConfig,
        state: StateStore,
        *,
        checkout_paths: Mapping[str, Path],
        executor: Executor | None = None,
    ) -> None:
        self._config = config
        self._state = state
        self._checkout_paths = dict(checkout_paths)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="prlander-pipeline"
        )

    def is_enabled(self, project_id: str) -> bool:
        project = self._config.project(project_id)
        return project is not None and project.pipeline_enabled

    def start_re_review(
        self,
        *,
        task_id: str,
        branch: str,
        pr_number: int,
        on_complete: ReReviewCallback,
    ) -> None:
        project = self._project_for_task(task_id)
        prompt = build_re_review_prompt(
            repo_full_name=project.full_name,
            task_id=task_id,
            branch=branch,
            pr_number=pr_number,
        )
        log_event(
            LOGGER,
            "pipeline_re_review_dispatched",
            project_id=project.project_id,
            task_id=task_id,
            pr_number=pr_number,
        )
        self._executor.submit(
            self._run_re_review,
            project=project,
            task_id=task_id,
            pr_number=pr_number,
            prompt=prompt,
            on_complete=on_complete,
        )

    def handle_review_feedback(
        self,
        *,
        task_id: str,
        feedback: str,
        branch: str,
        pr_number: int,
    ) -> None:
        project = self._project_for_task(task_id)
        prompt = build_review_feedback_prompt(
            repo_full_name=project.full_name,
            task_id=task_id,
            branch=branch,
            pr_number=pr_number,
            feedback=feedback,
        )
        log_event(
            LOGGER,
            "pipeline_review_feedback_dispatched",
            project_id=project.project_id,
            task_id=task_id,
            pr_number=pr_number,
        )
        self._executor.submit(
            self._run_review_feedback,
            project=project,
            task_id=task_id,
            pr_number=pr_number,
            prompt=prompt,
        )

    def close(self) -> None:
        if self._owns_executor and isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _project_for_task(self, task_id: str) -> ProjectConfig:
        task = self._state.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Unknown task {task_id!r}")
        project = self._config.project(task.project_id)
        if project is None or not project.pipeline_enabled:
            raise RuntimeError(f"Review pipeline is not enabled for project {task.project_id!r}")
        return project

    def _run_re_review(
        self,
        *,
        project: ProjectConfig,
        task_id: str,
        pr_number: int,
        prompt: str,
        on_complete: ReReviewCallback,
    ) -> None:
        with logging_project_context(project.project_id):
            passed = True
            try:
                run(
                    list(project.re_review_command),
                    cwd=self._checkout_paths.get(project.project_id),
                    input_text=prompt,
                )
            except (CommandError, OSError) as exc:
                passed = False
                log_event(
                    LOGGER,
                    "pipeline_re_review_rejected",
                    task_id=task_id,
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                    error=exc.summary if isinstance(exc, CommandError) else str(exc),
                )
            log_event(
                LOGGER,
                "pipeline_re_review_finished",
                task_id=task_id,
                pr_number=pr_number,
                passed=passed,
            )
            try:
                on_complete(passed)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "pipeline_re_review_callback_failed",
                    task_id=task_id,
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def _run_review_feedback(
        self,
        *,
        project: ProjectConfig,
        task_id: str,
        pr_number: int,
        prompt: str,
    ) -> None:
        with logging_project_context(project.project_id):
            try:
                run(
                    list(project.review_feedback_command),
                    cwd=self._checkout_paths.get(project.project_id),
                    input_text=prompt,
                )
            except (CommandError, OSError) as exc:
                log_event(
                    LOGGER,
                    "pipeline_review_feedback_failed",
                    task_id=task_id,
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                    error=exc.summary if isinstance(exc, CommandError) else str(exc),
                )
                return
            log_event(
                LOGGER,
                "pipeline_review_feedback_finished",
                task_id=task_id,
                pr_number=pr_number,
            )
