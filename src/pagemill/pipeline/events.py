"""In-process publish/subscribe bus for task and page updates."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pagemill.pipeline.models import PageStatus

logger = logging.getLogger(__name__)


class TaskEventType(str, Enum):
    TASK_UPDATED = "task:updated"
    TASK_STATUS_CHANGED = "task:status_changed"
    TASK_PROGRESS_CHANGED = "task:progress_changed"
    TASK_DELETED = "task:deleted"
    PAGE_UPDATED = "page:updated"


TASK_WILDCARD = "task:*"
PAGE_WILDCARD = "page:*"
_WILDCARDS = (TASK_WILDCARD, PAGE_WILDCARD)


@dataclass(slots=True, frozen=True)
class TaskEvent:
    type: TaskEventType
    task_id: str
    timestamp: int
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class PageEvent:
    type: TaskEventType
    task_id: str
    page_id: int
    page: int
    status: PageStatus
    timestamp: int
    fields: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[TaskEvent | PageEvent], None]


class EventBus:
    """Fan-out of task/page events to subscribers.

    Handlers run synchronously on the emitting thread. A handler that raises is logged
    and skipped, so a broken subscriber never fails the worker that emitted the event.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: TaskEventType | str, handler: EventHandler) -> Callable[[], None]:
        key = _topic_key(topic)
        with self._lock:
            self._listeners.setdefault(key, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(key, handler)

        return _unsubscribe

    def unsubscribe(self, topic: TaskEventType | str, handler: EventHandler) -> bool:
        key = _topic_key(topic)
        with self._lock:
            handlers = self._listeners.get(key)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._listeners[key]
            return True

    def emit_task_event(
        self,
        event_type: TaskEventType,
        task_id: str,
        **fields: Any,
    ) -> TaskEvent:
        event = TaskEvent(
            type=event_type,
            task_id=task_id,
            timestamp=_now_ms(),
            fields=fields,
        )
        self.publish(event)
        return event

    def emit_page_event(  # noqa: PLR0913
        self,
        event_type: TaskEventType,
        *,
        task_id: str,
        page_id: int,
        page: int,
        status: PageStatus,
        **fields: Any,
    ) -> PageEvent:
        event = PageEvent(
            type=event_type,
            task_id=task_id,
            page_id=page_id,
            page=page,
            status=status,
            timestamp=_now_ms(),
            fields=fields,
        )
        self.publish(event)
        return event

    def publish(self, event: TaskEvent | PageEvent) -> None:
        topic = event.type.value
        wildcard = f"{topic.split(':', 1)[0]}:*"
        with self._lock:
            handlers = [
                *self._listeners.get(topic, ()),
                *self._listeners.get(wildcard, ()),
            ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, topic)

    def listener_count(self, topic: TaskEventType | str | None = None) -> int:
        with self._lock:
            if topic is None:
                return sum(len(handlers) for handlers in self._listeners.values())
            return len(self._listeners.get(_topic_key(topic), ()))

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()


def _topic_key(topic: TaskEventType | str) -> str:
    if isinstance(topic, TaskEventType):
        return topic.value
    if topic in _WILDCARDS:
        return topic
    try:
        return TaskEventType(topic).value
    except ValueError as error:
        raise ValueError(f"Unknown event topic: {topic}") from error


def _now_ms() -> int:
    return int(time.time() * 1000)
