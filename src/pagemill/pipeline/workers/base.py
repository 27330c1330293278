"""Polling worker skeleton shared by the split, convert and merge stages."""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import ClassVar, TypeVar
from uuid import uuid4

from pagemill.pipeline.events import EventBus, TaskEventType
from pagemill.pipeline.failure_classifier import classify_failure, format_error
from pagemill.pipeline.models import (
    PageView,
    TaskStatus,
    TaskView,
    WorkerInfo,
    WorkerRunSummary,
)
from pagemill.pipeline.repository import PipelineRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerStopped(Exception):
    """Stop was requested while an operation waited for its next retry."""


class WorkerBase(ABC):
    """Claims units of work from the repository until stopped.

    Subclasses implement ``run_once``, which claims at most one unit, drives it to a
    terminal or hand-back state, and reports whether anything was claimed. ``stop`` only
    prevents further claims; a unit already in progress runs to completion.
    """

    stage: ClassVar[str] = "worker"

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        events: EventBus,
        poll_interval_seconds: float = 2.0,
        worker_id: str | None = None,
    ) -> None:
        self.repository = repository
        self.events = events
        self.poll_interval_seconds = poll_interval_seconds
        self.worker_id = worker_id or f"{self.stage}-{uuid4()}"
        self.summary = WorkerRunSummary()
        self._random = random.Random()  # noqa: S311
        self._stop_event = threading.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and not self._stop_event.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def info(self) -> WorkerInfo:
        return WorkerInfo(worker_id=self.worker_id, is_running=self.is_running)

    def run(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Run the claim loop until stopped.

        Args:
            max_idle_polls: Return after this many consecutive empty polls
                (None = poll until ``stop`` is called).
        """

        self._running = True
        consecutive_idle = 0
        logger.info(
            "Worker %s started (poll interval %.1fs)",
            self.worker_id,
            self.poll_interval_seconds,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    processed = self.run_once()
                except Exception:
                    logger.exception("Worker %s: unexpected error in main loop", self.worker_id)
                    self.summary.errors += 1
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                if processed:
                    self.summary.processed += 1
                    consecutive_idle = 0
                    continue

                self.summary.idle_polls += 1
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        finally:
            self._running = False
            logger.info("Worker %s stopped", self.worker_id)
        return self.summary

    @abstractmethod
    def run_once(self) -> bool:
        """Process at most one unit of work; return whether a unit was claimed."""

    def stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Worker %s: stop requested", self.worker_id)
        self._stop_event.set()

    def claim_task(self, from_status: TaskStatus, to_status: TaskStatus) -> TaskView | None:
        return self.repository.claim_task(
            from_status=from_status,
            to_status=to_status,
            worker_id=self.worker_id,
        )

    def update_task_status(self, task_id: str, status: TaskStatus, **fields: object) -> bool:
        updated = self.repository.update_task_status(task_id=task_id, status=status, **fields)
        if not updated:
            logger.warning(
                "Worker %s: task %s kept its cancelled state, %s not applied",
                self.worker_id,
                task_id,
                status.value,
            )
        return updated

    def handle_error(self, task_id: str, error: BaseException) -> None:
        """Record a task failure; never raises."""

        message = format_error(error)
        logger.error("Worker %s: task %s failed: %s", self.worker_id, task_id, message)
        try:
            recorded = self.repository.fail_task(task_id=task_id, error=message)
        except Exception:
            logger.exception(
                "Worker %s: could not record failure of task %s",
                self.worker_id,
                task_id,
            )
            return
        if recorded:
            self.events.emit_task_event(
                TaskEventType.TASK_STATUS_CHANGED,
                task_id,
                status=TaskStatus.FAILED.value,
                error=message,
            )
            self.events.emit_task_event(
                TaskEventType.TASK_UPDATED,
                task_id,
                status=TaskStatus.FAILED.value,
                error=message,
            )

    def call_with_retry(
        self,
        operation: Callable[[], T],
        *,
        description: str,
        max_attempts: int,
        base_delay_seconds: float,
        max_delay_seconds: float = 30.0,
    ) -> T:
        """Call ``operation`` retrying retryable failures with exponential backoff.

        Raises:
            WorkerStopped: stop was requested while waiting for the next attempt.
        """

        attempt = 1
        while True:
            try:
                return operation()
            except Exception as error:
                classification = classify_failure(error)
                if not classification.retryable or attempt >= max(1, max_attempts):
                    raise
                delay = self.compute_retry_delay(
                    retry_number=attempt,
                    base_seconds=base_delay_seconds,
                    max_seconds=max_delay_seconds,
                )
                logger.warning(
                    "Worker %s: %s attempt %d/%d failed (%s), retrying in %.2fs",
                    self.worker_id,
                    description,
                    attempt,
                    max_attempts,
                    classification.failure_class.value,
                    delay,
                )
                self.summary.retried += 1
                if self._sleep_with_stop(delay):
                    raise WorkerStopped(
                        f"{description} interrupted by stop after attempt {attempt}",
                    ) from error
                attempt += 1

    def compute_retry_delay(
        self,
        *,
        retry_number: int,
        base_seconds: float,
        max_seconds: float,
    ) -> float:
        """Exponential delay for ``retry_number`` (1-based) with up to 25% jitter."""

        delay = base_seconds * (2 ** max(retry_number - 1, 0))
        delay += self._random.uniform(0, delay * 0.25)
        return min(max_seconds, delay)

    def publish_task(
        self,
        task: TaskView,
        *,
        status_changed: bool = False,
        progress_changed: bool = False,
    ) -> None:
        self.events.emit_task_event(TaskEventType.TASK_UPDATED, task.task_id, **task.event_fields())
        if progress_changed:
            self.events.emit_task_event(
                TaskEventType.TASK_PROGRESS_CHANGED,
                task.task_id,
                progress=task.progress,
                completed_count=task.completed_count,
                failed_count=task.failed_count,
            )
        if status_changed:
            self.events.emit_task_event(
                TaskEventType.TASK_STATUS_CHANGED,
                task.task_id,
                status=task.status.value,
            )

    def publish_page(self, page: PageView) -> None:
        self.events.emit_page_event(
            TaskEventType.PAGE_UPDATED,
            task_id=page.task_id,
            page_id=page.id,
            page=page.page,
            status=page.status,
            worker_id=page.worker_id,
            retry_count=page.retry_count,
            error=page.error,
        )

    def _sleep_with_stop(self, seconds: float) -> bool:
        """Wait up to ``seconds``; return True if stop was requested meanwhile."""

        return self._stop_event.wait(timeout=max(0.0, seconds))
