"""Merger stage: assembles converted pages into the final document."""

from __future__ import annotations

import logging

from pagemill.config import MergerSettings
from pagemill.pipeline.backend.base import MergeExporter, MergeRequest
from pagemill.pipeline.errors import MissingInputError
from pagemill.pipeline.events import EventBus
from pagemill.pipeline.models import TaskStatus, TaskView
from pagemill.pipeline.repository import PipelineRepository
from pagemill.pipeline.workers.base import WorkerBase, WorkerStopped

logger = logging.getLogger(__name__)


class MergerWorker(WorkerBase):
    stage = "merger"

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        events: EventBus,
        exporter: MergeExporter,
        settings: MergerSettings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings or MergerSettings()
        super().__init__(
            repository=repository,
            events=events,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            worker_id=worker_id,
        )
        self.exporter = exporter

    def run_once(self) -> bool:
        task = self.claim_task(TaskStatus.READY_TO_MERGE, TaskStatus.MERGING)
        if task is None:
            return False
        logger.info("Worker %s: merging task %s", self.worker_id, task.task_id)
        self.publish_task(task, status_changed=True)
        try:
            self.merge_task(task)
        except Exception:
            logger.exception(
                "Worker %s: bookkeeping for task %s failed, releasing it",
                self.worker_id,
                task.task_id,
            )
            self._release(task)
        return True

    def merge_task(self, task: TaskView) -> None:
        try:
            pages = self.repository.completed_page_contents(task.task_id)
            if not pages:
                raise MissingInputError(f"No completed pages found for task {task.task_id}")
            merged_path = self.call_with_retry(
                lambda: self.exporter.merge(
                    MergeRequest(task_id=task.task_id, filename=task.filename, pages=pages),
                ),
                description=f"merge of task {task.task_id}",
                max_attempts=self.settings.max_retries,
                base_delay_seconds=self.settings.retry_base_seconds,
                max_delay_seconds=self.settings.retry_max_seconds,
            )
        except WorkerStopped:
            if self._release(task):
                logger.info("Worker %s: released task %s on stop", self.worker_id, task.task_id)
            return
        except Exception as error:
            self.handle_error(task.task_id, error)
            self.summary.failed += 1
            return

        if not self.update_task_status(
            task.task_id,
            TaskStatus.COMPLETED,
            progress=100,
            worker_id=None,
            merged_path=str(merged_path),
            error=None,
        ):
            return
        logger.info(
            "Worker %s: task %s merged %d pages into %s",
            self.worker_id,
            task.task_id,
            len(pages),
            merged_path,
        )
        self.summary.succeeded += 1
        updated = self.repository.get_task(task.task_id)
        if updated is not None:
            self.publish_task(updated, status_changed=True, progress_changed=True)

    def _release(self, task: TaskView) -> bool:
        try:
            released = self.repository.release_task(
                task_id=task.task_id,
                worker_id=self.worker_id,
                to_status=TaskStatus.READY_TO_MERGE,
            )
        except Exception:
            logger.exception("Worker %s: could not release task %s", self.worker_id, task.task_id)
            return False
        if released:
            self.summary.released += 1
        return released
