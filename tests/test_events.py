from __future__ import annotations

import logging
import threading
import time

import allure
import pytest

from pagemill.pipeline.events import (
    PAGE_WILDCARD,
    TASK_WILDCARD,
    EventBus,
    PageEvent,
    TaskEvent,
    TaskEventType,
)
from pagemill.pipeline.models import PageStatus

pytestmark = [
    allure.epic("Pipeline Core"),
    allure.feature("Event Bus"),
]


def test_specific_and_wildcard_subscribers_receive_task_events() -> None:
    bus = EventBus()
    specific: list[TaskEvent | PageEvent] = []
    wildcard: list[TaskEvent | PageEvent] = []
    pages: list[TaskEvent | PageEvent] = []
    bus.subscribe(TaskEventType.TASK_STATUS_CHANGED, specific.append)
    bus.subscribe(TASK_WILDCARD, wildcard.append)
    bus.subscribe(PAGE_WILDCARD, pages.append)

    before = int(time.time() * 1000)
    event = bus.emit_task_event(TaskEventType.TASK_STATUS_CHANGED, "task-1", status="processing")
    bus.emit_task_event(TaskEventType.TASK_PROGRESS_CHANGED, "task-1", progress=50)

    assert specific == [event]
    assert [item.type for item in wildcard] == [
        TaskEventType.TASK_STATUS_CHANGED,
        TaskEventType.TASK_PROGRESS_CHANGED,
    ]
    assert pages == []
    assert event.task_id == "task-1"
    assert event.fields == {"status": "processing"}
    assert before <= event.timestamp <= int(time.time() * 1000)


def test_page_events_carry_page_identity() -> None:
    bus = EventBus()
    received: list[TaskEvent | PageEvent] = []
    bus.subscribe("page:updated", received.append)

    bus.emit_page_event(
        TaskEventType.PAGE_UPDATED,
        task_id="task-1",
        page_id=7,
        page=2,
        status=PageStatus.COMPLETED,
        retry_count=1,
    )

    assert len(received) == 1
    event = received[0]
    assert isinstance(event, PageEvent)
    assert (event.task_id, event.page_id, event.page, event.status) == (
        "task-1",
        7,
        2,
        PageStatus.COMPLETED,
    )
    assert event.fields == {"retry_count": 1}


def test_unsubscribe_callable_and_listener_count() -> None:
    bus = EventBus()
    received: list[TaskEvent | PageEvent] = []
    unsubscribe = bus.subscribe(TaskEventType.TASK_UPDATED, received.append)
    bus.subscribe(TASK_WILDCARD, received.append)
    assert bus.listener_count(TaskEventType.TASK_UPDATED) == 1
    assert bus.listener_count() == 2

    unsubscribe()
    unsubscribe()
    bus.emit_task_event(TaskEventType.TASK_UPDATED, "task-1")

    assert bus.listener_count(TaskEventType.TASK_UPDATED) == 0
    assert len(received) == 1
    assert bus.unsubscribe(TaskEventType.TASK_UPDATED, received.append) is False

    bus.clear()
    assert bus.listener_count() == 0


def test_failing_handler_is_logged_and_does_not_block_others(
    caplog: pytest.LogCaptureFixture,
) -> None:
    bus = EventBus()
    received: list[TaskEvent | PageEvent] = []

    def _broken(_event: TaskEvent | PageEvent) -> None:
        raise RuntimeError("subscriber bug")

    bus.subscribe(TaskEventType.TASK_DELETED, _broken)
    bus.subscribe(TaskEventType.TASK_DELETED, received.append)

    with caplog.at_level(logging.ERROR, logger="pagemill.pipeline.events"):
        bus.emit_task_event(TaskEventType.TASK_DELETED, "task-1")

    assert len(received) == 1
    assert "subscriber bug" in caplog.text


def test_unknown_topic_is_rejected() -> None:
    bus = EventBus()
    with pytest.raises(ValueError, match="Unknown event topic"):
        bus.subscribe("task:exploded", lambda _event: None)


def test_concurrent_emitters_deliver_every_event() -> None:
    bus = EventBus()
    received: list[TaskEvent | PageEvent] = []
    lock = threading.Lock()

    def _record(event: TaskEvent | PageEvent) -> None:
        with lock:
            received.append(event)

    bus.subscribe(TASK_WILDCARD, _record)

    def _emit(worker: int) -> None:
        for index in range(50):
            bus.emit_task_event(TaskEventType.TASK_UPDATED, f"task-{worker}", index=index)

    threads = [threading.Thread(target=_emit, args=(worker,)) for worker in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(received) == 200
