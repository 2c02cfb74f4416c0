from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
import logging
import threading

from prlander.observability import log_event


LOGGER = logging.getLogger("prlander.scheduler")


class RepeatingTimer(ABC):
    @abstractmethod
    def start(self) -> None:
        """Begin invoking the callback every interval."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop invoking the callback. Safe to call more than once."""


TimerFactory = Callable[[str, float, Callable[[], object]], RepeatingTimer]


class ThreadRepeatingTimer(RepeatingTimer):
    """Runs a callback on a daemon thread, waiting one interval before each call.

    The callback runs on the timer thread, so a slow call delays the next one
    instead of overlapping it.
    """

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], object]) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._name = name
        self._interval_seconds = interval_seconds
        self._callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._interval_seconds + 1.0)

    def _run(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            try:
                self._callback()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "timer_callback_failed",
                    timer=self._name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )


def thread_timer_factory(
    name: str, interval_seconds: float, callback: Callable[[], object]
) -> RepeatingTimer:
    return ThreadRepeatingTimer(name, interval_seconds, callback)
