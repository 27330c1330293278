"""Splitter stage: renders the selected pages of a PENDING task."""

from __future__ import annotations

import logging
import shutil

from pagemill.config import SplitterSettings
from pagemill.pipeline.backend.base import DocumentSplitter, SplitRequest, SplitResult
from pagemill.pipeline.errors import CorruptDocumentError
from pagemill.pipeline.events import EventBus
from pagemill.pipeline.models import TaskStatus, TaskView
from pagemill.pipeline.page_range import parse_page_range
from pagemill.pipeline.paths import ArtifactPathResolver
from pagemill.pipeline.repository import PipelineRepository
from pagemill.pipeline.workers.base import WorkerBase, WorkerStopped

logger = logging.getLogger(__name__)


class SplitterWorker(WorkerBase):
    stage = "splitter"

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        events: EventBus,
        paths: ArtifactPathResolver,
        splitter: DocumentSplitter,
        settings: SplitterSettings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings or SplitterSettings()
        super().__init__(
            repository=repository,
            events=events,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            worker_id=worker_id,
        )
        self.paths = paths
        self.splitter = splitter

    def run_once(self) -> bool:
        task = self.claim_task(TaskStatus.PENDING, TaskStatus.SPLITTING)
        if task is None:
            return False
        logger.info(
            "Worker %s: splitting task %s (%s)",
            self.worker_id,
            task.task_id,
            task.filename,
        )
        self.publish_task(task, status_changed=True)
        self.split_task(task)
        return True

    def split_task(self, task: TaskView) -> None:
        try:
            result = self.call_with_retry(
                lambda: self._split(task),
                description=f"split of task {task.task_id}",
                max_attempts=self.settings.max_retries,
                base_delay_seconds=self.settings.retry_base_seconds,
                max_delay_seconds=self.settings.retry_max_seconds,
            )
            updated = self.repository.complete_split(
                task_id=task.task_id,
                worker_id=self.worker_id,
                pages=result.pages,
                model=task.model,
            )
        except WorkerStopped:
            self._remove_split_dir(task.task_id)
            if self.repository.release_task(
                task_id=task.task_id,
                worker_id=self.worker_id,
                to_status=TaskStatus.PENDING,
            ):
                self.summary.released += 1
                logger.info("Worker %s: released task %s on stop", self.worker_id, task.task_id)
            return
        except Exception as error:
            self.handle_error(task.task_id, error)
            self.summary.failed += 1
            self._remove_split_dir(task.task_id)
            return

        if updated is None:
            logger.warning(
                "Worker %s: task %s changed state during split, discarding pages",
                self.worker_id,
                task.task_id,
            )
            self._remove_split_dir(task.task_id)
            return
        logger.info(
            "Worker %s: task %s split into %d pages",
            self.worker_id,
            task.task_id,
            updated.pages,
        )
        self.summary.succeeded += 1
        self.publish_task(updated, status_changed=True, progress_changed=True)

    def _split(self, task: TaskView) -> SplitResult:
        source_path = self.paths.source_path(task.task_id, task.filename)
        total_pages = self.splitter.count_pages(source_path, task.doc_type)
        selected = parse_page_range(task.page_range, total_pages)
        result = self.splitter.split(
            SplitRequest(
                task_id=task.task_id,
                source_path=source_path,
                doc_type=task.doc_type,
                pages=selected,
                artifact_path=lambda page: self.paths.page_path(task.task_id, page),
            ),
        )
        if not result.pages:
            raise CorruptDocumentError(f"Document {task.filename} produced no pages")
        return result

    def _remove_split_dir(self, task_id: str) -> None:
        split_dir = self.paths.task_dir(task_id)
        if split_dir.exists():
            shutil.rmtree(split_dir, ignore_errors=True)
