from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
import threading

import pytest

from prlander.config import AppConfig, ProjectConfig, RuntimeConfig
from prlander.directives import Directive, DirectiveDispatcher
from prlander.events import FanoutEventSink, LoggingEventSink, NullEventSink
from prlander.git_ops import GitRepoManager
from prlander.github_gateway import GitHubGateway
from prlander.models import PullRequestReview, PullRequestReviewComment, PullRequestSnapshot
from prlander.pipeline import CommandReviewPipeline, DisabledReviewPipeline
from prlander.scheduler import RepeatingTimer
from prlander.service_runner import ServiceRunner, build_project_runtimes, run_service
from prlander.state import StateStore


class FakeGitHub:
    def __init__(self) -> None:
        self.merged: list[int] = []
        self.reviews: list[PullRequestReview] = []

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        return PullRequestSnapshot(
            number=pr_number,
            title="PR",
            state="open",
            merged=False,
            head_ref="feat/x",
            base_ref="main",
        )

    def merge_pull_request(
        self, pr_number: int, *, merge_method: str = "squash", commit_title: str | None = None
    ) -> str | None:
        _ = merge_method, commit_title
        self.merged.append(pr_number)
        return None

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        raise AssertionError(f"unexpected comment on #{issue_number}: {body}")

    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        _ = pr_number
        return list(self.reviews)

    def list_pull_request_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        _ = pr_number
        return []


class FakeGit:
    def __init__(self, checkout_path: Path) -> None:
        self.checkout_path = checkout_path

    def rebase_branch(self, branch: str, base_branch: str) -> bool:
        _ = branch, base_branch
        return True

    def force_push_branch(self, branch: str) -> None:
        _ = branch


class RecordingDispatcher(DirectiveDispatcher):
    def __init__(self) -> None:
        self.directives: list[Directive] = []

    def dispatch(self, directive: Directive) -> None:
        self.directives.append(directive)


class FakeTimer(RepeatingTimer):
    def __init__(self, name: str, interval: float, callback: Callable[[], object]) -> None:
        self.name = name
        self.interval = interval
        self.callback = callback
        self.events: list[str] = []

    def start(self) -> None:
        self.events.append("start")

    def cancel(self) -> None:
        self.events.append("cancel")


def _config(tmp_path: Path, *, pipeline_enabled: bool = False) -> AppConfig:
    project = ProjectConfig(
        project_id="web",
        owner="acme",
        name="web",
        pipeline_enabled=pipeline_enabled,
        re_review_command=("agent", "review") if pipeline_enabled else (),
        review_feedback_command=("agent", "fix") if pipeline_enabled else (),
    )
    return AppConfig(
        runtime=RuntimeConfig(
            base_dir=tmp_path / "state",
            merge_queue_interval_seconds=5,
            pr_monitor_interval_seconds=9,
            github_token_env="PRLANDER_TEST_TOKEN",
        ),
        projects=(project,),
    )


def _runtimes(config: AppConfig, github: FakeGitHub, tmp_path: Path) -> tuple:
    project = config.projects[0]
    return ((project, github, FakeGit(tmp_path / "checkout")),)


def test_run_once_processes_queue_and_monitor(tmp_path: Path) -> None:
    config = _config(tmp_path)
    state = StateStore(tmp_path / "state.db")
    github = FakeGitHub()
    github.reviews = [
        PullRequestReview(
            review_id=3, state="CHANGES_REQUESTED", body="Fix", user_login="a", submitted_at=None
        )
    ]
    state.insert_task(
        task_id="queued",
        project_id="web",
        title="Q",
        column="in_review",
        pr_number=1,
        pr_branch="feat/q",
    )
    state.insert_task(
        task_id="review",
        project_id="web",
        title="R",
        column="in_review",
        pr_number=2,
        pr_branch="feat/r",
    )
    state.enqueue_merge_entry(
        task_id="queued", project_id="web", pr_number=1, pr_branch="feat/q", base_branch="main"
    )
    dispatcher = RecordingDispatcher()
    runner = ServiceRunner(
        config=config,
        state=state,
        project_runtimes=_runtimes(config, github, tmp_path),
        directives=dispatcher,
        events=NullEventSink(),
    )

    runner.run(once=True)

    assert github.merged == [1]
    done = state.get_task("queued")
    assert done is not None and done.column == "done"
    assert [directive.task_id for directive in dispatcher.directives] == ["review"]


def test_run_starts_loops_until_stopped(tmp_path: Path) -> None:
    config = _config(tmp_path)
    timers: list[FakeTimer] = []

    def factory(name: str, interval: float, callback: Callable[[], object]) -> FakeTimer:
        timer = FakeTimer(name, interval, callback)
        timers.append(timer)
        return timer

    stop = threading.Event()
    stop.set()
    runner = ServiceRunner(
        config=config,
        state=StateStore(tmp_path / "state.db"),
        project_runtimes=_runtimes(config, FakeGitHub(), tmp_path),
        directives=RecordingDispatcher(),
        timer_factory=factory,
    )

    runner.run(once=False, stop_event=stop)

    assert [(timer.name, timer.interval) for timer in timers] == [
        ("prlander-merge-queue", 5),
        ("prlander-pr-monitor", 9),
    ]
    assert all(timer.events == ["start", "cancel"] for timer in timers)


def test_run_handles_keyboard_interrupt(tmp_path: Path) -> None:
    config = _config(tmp_path)
    timers: list[FakeTimer] = []

    def factory(name: str, interval: float, callback: Callable[[], object]) -> FakeTimer:
        timer = FakeTimer(name, interval, callback)
        timers.append(timer)
        return timer

    class InterruptingEvent(threading.Event):
        def wait(self, timeout: float | None = None) -> bool:
            _ = timeout
            raise KeyboardInterrupt

    runner = ServiceRunner(
        config=config,
        state=StateStore(tmp_path / "state.db"),
        project_runtimes=_runtimes(config, FakeGitHub(), tmp_path),
        directives=RecordingDispatcher(),
        timer_factory=factory,
    )

    runner.run(once=False, stop_event=InterruptingEvent())

    assert all(timer.events == ["start", "cancel"] for timer in timers)


def test_run_requires_projects(tmp_path: Path) -> None:
    runner = ServiceRunner(
        config=_config(tmp_path), state=StateStore(tmp_path / "state.db"), project_runtimes=()
    )
    with pytest.raises(RuntimeError, match="No projects configured"):
        runner.run(once=True)


def test_build_project_runtimes_shares_token(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("PRLANDER_TEST_TOKEN", "pat")
    config = _config(tmp_path)

    ((project, github, git),) = build_project_runtimes(config)

    assert project is config.projects[0]
    assert github == GitHubGateway("acme", "web", token="pat")
    assert isinstance(git, GitRepoManager)
    assert git.credentials is not None
    assert git.credentials.token == "pat"

    monkeypatch.delenv("PRLANDER_TEST_TOKEN")
    ((_, anonymous, plain_git),) = build_project_runtimes(config)
    assert anonymous.token is None
    assert plain_git.credentials is None


def test_run_service_wires_pipeline_and_sinks(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    seen: list[ServiceRunner] = []

    def fake_run(self: ServiceRunner, *, once: bool, stop_event: object = None) -> None:
        _ = stop_event
        assert once is True
        seen.append(self)

    monkeypatch.setattr(ServiceRunner, "run", fake_run)
    closed: list[bool] = []
    monkeypatch.setattr(CommandReviewPipeline, "close", lambda self: closed.append(True))
    config = _config(tmp_path, pipeline_enabled=True)
    extra = NullEventSink()

    run_service(
        config=config,
        state=StateStore(tmp_path / "state.db"),
        once=True,
        project_runtimes=_runtimes(config, FakeGitHub(), tmp_path),
        extra_sinks=(extra,),
    )

    (runner,) = seen
    assert isinstance(runner.pipeline, CommandReviewPipeline)
    assert isinstance(runner.events, FanoutEventSink)
    assert closed == [True]


def test_run_service_without_pipeline_projects(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    seen: list[ServiceRunner] = []

    def fake_run(self: ServiceRunner, *, once: bool, stop_event: object = None) -> None:
        _ = once, stop_event
        seen.append(self)

    monkeypatch.setattr(ServiceRunner, "run", fake_run)
    config = _config(tmp_path)

    run_service(
        config=config,
        state=StateStore(tmp_path / "state.db"),
        once=False,
        project_runtimes=_runtimes(config, FakeGitHub(), tmp_path),
    )

    (runner,) = seen
    assert isinstance(runner.pipeline, DisabledReviewPipeline)
    assert isinstance(runner.events, LoggingEventSink)
