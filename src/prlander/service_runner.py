from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading

from prlander.config import AppConfig, ProjectConfig
from prlander.directives import CommandDirectiveDispatcher, DirectiveDispatcher
from prlander.events import EventSink, FanoutEventSink, LoggingEventSink
from prlander.git_ops import GitCredentials, GitRepoManager
from prlander.github_gateway import GitHubGateway
from prlander.merge_queue import MergeQueue
from prlander.observability import log_event
from prlander.pipeline import CommandReviewPipeline, DisabledReviewPipeline, ReviewPipeline
from prlander.pr_monitor import PullRequestMonitor
from prlander.scheduler import TimerFactory, thread_timer_factory
from prlander.state import StateStore


LOGGER = logging.getLogger("prlander.service_runner")

ProjectRuntime = tuple[ProjectConfig, GitHubGateway, GitRepoManager]


@dataclass(frozen=True)
class ServiceRunner:
    config: AppConfig
    state: StateStore
    project_runtimes: tuple[ProjectRuntime, ...]
    pipeline: ReviewPipeline = field(default_factory=DisabledReviewPipeline)
    directives: DirectiveDispatcher | None = None
    events: EventSink = field(default_factory=LoggingEventSink)
    timer_factory: TimerFactory = thread_timer_factory

    def build_merge_queue(self) -> MergeQueue:
        return MergeQueue(
            config=self.config,
            state=self.state,
            github_by_project=self._github_by_project(),
            git_by_project={project.project_id: git for project, _, git in self.project_runtimes},
            pipeline=self.pipeline,
            events=self.events,
            timer_factory=self.timer_factory,
        )

    def build_pr_monitor(self) -> PullRequestMonitor:
        return PullRequestMonitor(
            config=self.config,
            state=self.state,
            github_by_project=self._github_by_project(),
            directives=self.directives or CommandDirectiveDispatcher(self.config),
            pipeline=self.pipeline,
            events=self.events,
            timer_factory=self.timer_factory,
        )

    def run(self, *, once: bool, stop_event: threading.Event | None = None) -> None:
        """Run both loops until `stop_event` is set or the process is interrupted.

        With `once`, recover interrupted entries, run one tick of each loop and return.
        """
        if not self.project_runtimes:
            raise RuntimeError("No projects configured for service runner")
        merge_queue = self.build_merge_queue()
        pr_monitor = self.build_pr_monitor()
        log_event(
            LOGGER,
            "service_started",
            once=once,
            project_count=len(self.project_runtimes),
            pipeline_projects=sum(
                1 for project, _, _ in self.project_runtimes if project.pipeline_enabled
            ),
        )

        if once:
            merge_queue.recover()
            merge_queue.poll()
            pr_monitor.poll()
            log_event(LOGGER, "service_stopped", once=True)
            return

        stop = stop_event or threading.Event()
        merge_queue.start(self.config.runtime.merge_queue_interval_seconds)
        pr_monitor.start(self.config.runtime.pr_monitor_interval_seconds)
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            log_event(LOGGER, "service_interrupted")
        finally:
            merge_queue.stop()
            pr_monitor.stop()
            log_event(LOGGER, "service_stopped", once=False)

    def _github_by_project(self) -> dict[str, GitHubGateway]:
        return {project.project_id: github for project, github, _ in self.project_runtimes}


def build_project_runtimes(config: AppConfig) -> tuple[ProjectRuntime, ...]:
    credentials = GitCredentials.from_env(config.runtime.github_token_env)
    token = credentials.token if credentials is not None else None
    runtimes: list[ProjectRuntime] = []
    for project in config.projects:
        runtimes.append(
            (
                project,
                GitHubGateway(project.owner, project.name, token=token),
                GitRepoManager(config.runtime, project, credentials=credentials),
            )
        )
    return tuple(runtimes)


def run_service(
    *,
    config: AppConfig,
    state: StateStore,
    once: bool,
    project_runtimes: tuple[ProjectRuntime, ...] | None = None,
    extra_sinks: tuple[EventSink, ...] = (),
    stop_event: threading.Event | None = None,
) -> None:
    runtimes = project_runtimes if project_runtimes is not None else build_project_runtimes(config)
    pipeline: ReviewPipeline = DisabledReviewPipeline()
    if any(project.pipeline_enabled for project, _, _ in runtimes):
        pipeline = CommandReviewPipeline(
            config,
            state,
            checkout_paths={project.project_id: git.checkout_path for project, _, git in runtimes},
        )
    events: EventSink = LoggingEventSink()
    if extra_sinks:
        events = FanoutEventSink((events, *extra_sinks))

    runner = ServiceRunner(
        config=config,
        state=state,
        project_runtimes=runtimes,
        pipeline=pipeline,
        directives=CommandDirectiveDispatcher(config),
        events=events,
    )
    try:
        runner.run(once=once, stop_event=stop_event)
    finally:
        if isinstance(pipeline, CommandReviewPipeline):
            pipeline.close()
