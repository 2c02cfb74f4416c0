from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO


ROOT_LOGGER_NAME: Final[str] = "prlander"
_FIELD_PREVIEW_CHARS: Final[int] = 120
_LINE_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] [%(project)s] %(message)s"
)
# Events that still print in "low" mode; warnings and errors always print.
_LIFECYCLE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "merge_queue_entry_approved",
        "merge_queue_entry_removed",
        "merge_queue_rebase_conflict",
        "merge_queue_force_push_failed",
        "merge_queue_re_review_started",
        "merge_queue_merged",
        "merge_queue_merge_failed",
        "merge_queue_recovered",
        "merge_queue_external_merge_detected",
        "merge_queue_external_close_detected",
        "pr_monitor_pr_merged",
        "pr_monitor_pr_closed",
        "pr_monitor_changes_requested",
        "pr_monitor_review_budget_exceeded",
        "pr_monitor_dispatch_failed",
        "directive_dispatched",
        "github_pr_merged",
        "github_issue_comment_failed",
        "git_force_push_failed",
    }
)
_current_project: ContextVar[str] = ContextVar("prlander_project", default="-")

VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Reset the ``prlander`` logger tree for a CLI invocation.

    ``verbose`` accepts ``True``/``"high"`` for every event, ``"low"`` for
    lifecycle events plus warnings, and ``False``/``None`` for silence. When
    ``state_dir`` is given, lines are also appended to ``<state_dir>/logs``.
    """
    mode = _parse_mode(verbose)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.propagate = False
    _drop_handlers(root)

    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(DailyLogFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        handler.addFilter(_RecordFilter(lifecycle_only=mode == "low"))
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def format_event(event: str, fields: Mapping[str, object]) -> str:
    rendered = [("event", _render_value(event))]
    rendered.extend((key, _render_value(fields[key])) for key in sorted(fields))
    return " ".join(f"{key}={value}" for key, value in rendered)


@contextmanager
def logging_project_context(project_id: str | None) -> Iterator[None]:
    """Tag every record emitted inside the block with ``project_id``."""
    token = _current_project.set(project_id or "-")
    try:
        yield
    finally:
        _current_project.reset(token)


def _parse_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    lowered = verbose.strip().lower()
    if lowered == "low":
        return "low"
    if lowered == "high":
        return "high"
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _drop_handlers(logger: logging.Logger) -> None:
    while logger.handlers:
        handler = logger.handlers.pop()
        handler.close()


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif value is True or value is False:
        text = str(value).lower()
    elif isinstance(value, int | float):
        text = repr(value)
    elif isinstance(value, str):
        text = _preview(value)
    else:
        text = f"<{type(value).__name__}>"
    if "=" in text or text != "".join(text.split()):
        return json.dumps(text)
    return text


def _preview(text: str) -> str:
    single_line = " ".join(text.split())
    if not single_line:
        return "<empty>"
    if len(single_line) <= _FIELD_PREVIEW_CHARS:
        return single_line
    return single_line[:_FIELD_PREVIEW_CHARS] + "..."


def _extract_event_name(message: str) -> str | None:
    head, _, _ = message.partition(" ")
    key, sep, name = head.partition("=")
    if key != "event" or not sep or not name:
        return None
    return name


class _RecordFilter(logging.Filter):
    """Stamps the active project and, in low mode, drops chatty info records."""

    def __init__(self, *, lifecycle_only: bool) -> None:
        super().__init__()
        self._lifecycle_only = lifecycle_only

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "project"):
            record.project = _current_project.get()
        if not self._lifecycle_only or record.levelno >= logging.WARNING:
            return True
        return _extract_event_name(record.getMessage()) in _LIFECYCLE_EVENTS


class DailyLogFileHandler(logging.Handler):
    """Appends to ``<logs_dir>/YYYY-MM-DD.log``, switching files at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        super().__init__()
        self.logs_dir = logs_dir
        self._open: tuple[str, TextIO] | None = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            stream = self._stream_for(datetime.now(timezone.utc).date().isoformat())
            stream.write(line + "\n")
            stream.flush()
        except Exception:  # noqa: BLE001
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._release_stream()
        finally:
            self.release()
        super().close()

    def _stream_for(self, day: str) -> TextIO:
        if self._open is not None and self._open[0] == day:
            return self._open[1]
        self._release_stream()
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stream = (self.logs_dir / f"{day}.log").open("a", encoding="utf-8")
        self._open = (day, stream)
        return stream

    def _release_stream(self) -> None:
        if self._open is not None:
            _, stream = self._open
            self._open = None
            stream.close()
