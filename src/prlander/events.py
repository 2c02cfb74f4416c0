from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
import logging
from queue import SimpleQueue
from typing import Literal

from prlander.models import KanbanTask, MergeQueueEntry
from prlander.observability import log_event


LOGGER = logging.getLogger("prlander.events")

EventName = Literal[
    "merge-queue:entry-updated",
    "merge-queue:updated",
    "kanban:task-updated",
    "kanban:task-deleted",
]


@dataclass(frozen=True)
class Notification:
    name: EventName
    entry: MergeQueueEntry | None = None
    entries: tuple[MergeQueueEntry, ...] = ()
    task: KanbanTask | None = None
    task_id: str | None = None


def entry_updated(entry: MergeQueueEntry) -> Notification:
    return Notification(name="merge-queue:entry-updated", entry=entry)


def queue_updated(entries: Sequence[MergeQueueEntry]) -> Notification:
    return Notification(name="merge-queue:updated", entries=tuple(entries))


def task_updated(task: KanbanTask) -> Notification:
    return Notification(name="kanban:task-updated", task=task, task_id=task.task_id)


def task_deleted(task_id: str) -> Notification:
    return Notification(name="kanban:task-deleted", task_id=task_id)


class EventSink(ABC):
    @abstractmethod
    def emit(self, notification: Notification) -> None:
        """Deliver a notification. Implementations must not block for long."""


class NullEventSink(EventSink):
    def emit(self, notification: Notification) -> None:
        _ = notification


class LoggingEventSink(EventSink):
    def emit(self, notification: Notification) -> None:
        fields: dict[str, object] = {"name": notification.name}
        if notification.entry is not None:
            fields["entry_id"] = notification.entry.entry_id
            fields["status"] = notification.entry.status
            fields["pr_number"] = notification.entry.pr_number
        if notification.name == "merge-queue:updated":
            fields["entry_count"] = len(notification.entries)
        if notification.task is not None:
            fields["column"] = notification.task.column
        if notification.task_id is not None:
            fields["task_id"] = notification.task_id
        log_event(LOGGER, "notification_emitted", **fields)


class QueueEventSink(EventSink):
    """Hands notifications to another thread, e.g. a dashboard refresh loop."""

    def __init__(self, queue: SimpleQueue[Notification] | None = None) -> None:
        self.queue: SimpleQueue[Notification] = queue if queue is not None else SimpleQueue()

    def emit(self, notification: Notification) -> None:
        self.queue.put(notification)


class FanoutEventSink(EventSink):
    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self._sinks = tuple(sinks)

    def emit(self, notification: Notification) -> None:
        for sink in self._sinks:
            try:
                sink.emit(notification)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "notification_delivery_failed",
                    name=notification.name,
                    sink=type(sink).__name__,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
