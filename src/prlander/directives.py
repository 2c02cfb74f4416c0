from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging

from prlander.config import AppConfig
from prlander.observability import log_event
from prlander.shell import run


LOGGER = logging.getLogger("prlander.directives")


@dataclass(frozen=True)
class Directive:
    project_id: str
    delegate: str
    task_id: str
    content: str


class DirectiveDispatcher(ABC):
    @abstractmethod
    def dispatch(self, directive: Directive) -> None:
        """Deliver a directive to the project's responsible delegate."""


class CommandDirectiveDispatcher(DirectiveDispatcher):
    """Pipes directives into the project's `directive_command`.

    Projects without a command only get the `directive_dispatched` log line,
    which is enough for a host that tails the structured log.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def dispatch(self, directive: Directive) -> None:
        project = self._config.project(directive.project_id)
        command = project.directive_command if project is not None else ()
        log_event(
            LOGGER,
            "directive_dispatched",
            project_id=directive.project_id,
            delegate=directive.delegate,
            task_id=directive.task_id,
            via_command=bool(command),
        )
        if not command:
            return
        run([*command, directive.delegate, directive.task_id], input_text=directive.content)
