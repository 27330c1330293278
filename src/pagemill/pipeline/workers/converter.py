"""Converter stage: turns claimed page artifacts into markdown."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import timedelta
from typing import TypeVar

from sqlalchemy.exc import OperationalError

from pagemill.config import ConverterSettings
from pagemill.pipeline.backend.base import CompletionRequest, CompletionResult, CompletionService
from pagemill.pipeline.errors import InvalidOutputError, TransientError
from pagemill.pipeline.events import EventBus
from pagemill.pipeline.failure_classifier import classify_failure, format_error
from pagemill.pipeline.models import PageOutcome, PageView
from pagemill.pipeline.paths import ArtifactPathResolver
from pagemill.pipeline.repository import PipelineRepository
from pagemill.pipeline.workers.base import WorkerBase
from pagemill.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OUTCOME_WRITE_ATTEMPTS = 3
_OUTCOME_WRITE_DELAY_SECONDS = 0.1

_FENCE_OPEN_RE = re.compile(r"^```[\w-]*[ \t]*\n")
_FENCE_CLOSE_RE = re.compile(r"\n?```[ \t]*$")


def clean_markdown_content(content: str) -> str:
    """Strip a code fence wrapping the whole response, if any."""

    cleaned = content.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN_RE.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE_RE.sub("", cleaned, count=1)
    return cleaned.strip()


class ConverterWorker(WorkerBase):
    stage = "converter"

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        events: EventBus,
        paths: ArtifactPathResolver,
        completion: CompletionService,
        settings: ConverterSettings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings or ConverterSettings()
        super().__init__(
            repository=repository,
            events=events,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            worker_id=worker_id,
        )
        self.paths = paths
        self.completion = completion

    def run_once(self) -> bool:
        page = self.repository.claim_page(worker_id=self.worker_id)
        if page is None:
            return False
        logger.info(
            "Worker %s: converting page %d of task %s (attempt %d)",
            self.worker_id,
            page.page,
            page.task_id,
            page.retry_count + 1,
        )
        self.publish_page(page)
        try:
            self.convert_page(page)
        except Exception:
            logger.exception(
                "Worker %s: bookkeeping for page %s failed, releasing it",
                self.worker_id,
                page.id,
            )
            self._release(page)
        return True

    def convert_page(self, page: PageView) -> None:
        try:
            result = self._convert(page)
        except Exception as error:
            self._handle_page_failure(page, error)
            return

        outcome = self._write_outcome(
            lambda: self.repository.complete_page(
                page_id=page.id,
                worker_id=self.worker_id,
                content=result.content,
                input_tokens=result.tokens_in,
                output_tokens=result.tokens_out,
                conversion_time_ms=result.duration_ms,
            ),
        )
        if outcome is None:
            return
        self.summary.succeeded += 1
        logger.info(
            "Worker %s: page %d of task %s completed in %dms",
            self.worker_id,
            page.page,
            page.task_id,
            result.duration_ms,
        )
        self._publish_outcome(outcome)

    def _convert(self, page: PageView) -> CompletionResult:
        started = time.monotonic()
        response = self.completion.complete(
            CompletionRequest(
                artifact_path=self.paths.page_path(page.task_id, page.page),
                model=page.model,
                timeout_seconds=self.settings.timeout_seconds,
            ),
        )
        content = clean_markdown_content(response.content)
        if not content:
            raise TransientError("Completion returned empty content")
        if len(content) > self.settings.max_content_length:
            raise InvalidOutputError(
                f"Content exceeds maximum length: {len(content)} > "
                f"{self.settings.max_content_length}",
            )
        duration_ms = response.duration_ms or int((time.monotonic() - started) * 1000)
        return replace(response, content=content, duration_ms=duration_ms)

    def _handle_page_failure(self, page: PageView, error: Exception) -> None:
        classification = classify_failure(error)
        message = format_error(error)
        attempts = page.retry_count + 1
        if classification.retryable and attempts < self.settings.max_retries:
            delay = self.compute_retry_delay(
                retry_number=attempts,
                base_seconds=self.settings.retry_base_seconds,
                max_seconds=self.settings.retry_max_seconds,
            )
            logger.warning(
                "Worker %s: page %d of task %s failed (%s), retry %d/%d in %.2fs: %s",
                self.worker_id,
                page.page,
                page.task_id,
                classification.failure_class.value,
                attempts,
                self.settings.max_retries,
                delay,
                message,
            )
            run_after = utc_now() + timedelta(seconds=delay)
            requeued = self._write_outcome(
                lambda: self.repository.requeue_page(
                    page_id=page.id,
                    worker_id=self.worker_id,
                    error=message,
                    run_after=run_after,
                ),
            )
            if requeued is not None:
                self.summary.retried += 1
                self.publish_page(requeued)
            return

        logger.error(
            "Worker %s: page %d of task %s failed permanently after %d attempt(s) (%s): %s",
            self.worker_id,
            page.page,
            page.task_id,
            attempts,
            classification.failure_class.value,
            message,
        )
        outcome = self._write_outcome(
            lambda: self.repository.fail_page(
                page_id=page.id,
                worker_id=self.worker_id,
                error=message,
            ),
        )
        if outcome is None:
            return
        self.summary.failed += 1
        self._publish_outcome(outcome)

    def _publish_outcome(self, outcome: PageOutcome) -> None:
        self.publish_page(outcome.page)
        self.publish_task(
            outcome.task,
            status_changed=outcome.task_status_changed,
            progress_changed=True,
        )
        if outcome.task_status_changed:
            logger.info(
                "Worker %s: task %s finished converting, now %s",
                self.worker_id,
                outcome.task.task_id,
                outcome.task.status.value,
            )

    def _write_outcome(self, write: Callable[[], T]) -> T:
        """Run a page bookkeeping write, retrying briefly when the store is locked."""

        attempt = 1
        while True:
            try:
                return write()
            except OperationalError as error:
                if attempt >= _OUTCOME_WRITE_ATTEMPTS:
                    raise
                logger.warning(
                    "Worker %s: page write attempt %d/%d hit a lock conflict: %s",
                    self.worker_id,
                    attempt,
                    _OUTCOME_WRITE_ATTEMPTS,
                    error,
                )
                time.sleep(_OUTCOME_WRITE_DELAY_SECONDS * attempt)
                attempt += 1

    def _release(self, page: PageView) -> None:
        try:
            released = self.repository.release_page(page_id=page.id, worker_id=self.worker_id)
        except Exception:
            logger.exception("Worker %s: could not release page %s", self.worker_id, page.id)
            return
        if released:
            self.summary.released += 1
