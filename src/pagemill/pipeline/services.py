"""Use-case services for hosts driving the pipeline."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from pagemill.pipeline.events import EventBus, TaskEventType
from pagemill.pipeline.models import PageView, TaskCreate, TaskView
from pagemill.pipeline.page_range import PageRangeFormatError, validate_page_range
from pagemill.pipeline.paths import ArtifactPathResolver
from pagemill.pipeline.repository import PipelineRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreateTaskCommand:
    """High-level command to register a document for conversion."""

    source_file: Path
    page_range: str = ""
    model: str = ""
    doc_type: str | None = None
    filename: str | None = None


class TaskService:
    """Coordinates upload storage, task rows and event publication."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        events: EventBus,
        paths: ArtifactPathResolver,
    ) -> None:
        self.repository = repository
        self.events = events
        self.paths = paths

    def create_task(self, command: CreateTaskCommand) -> TaskView:
        """Copy the upload under the task directory and queue it for splitting."""

        if not command.source_file.is_file():
            raise FileNotFoundError(f"Source file not found: {command.source_file}")
        if not validate_page_range(command.page_range):
            raise PageRangeFormatError(f"Invalid page range format: {command.page_range!r}")

        task_id = str(uuid4())
        filename = command.filename or command.source_file.name
        target = self.paths.source_path(task_id, filename)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(command.source_file, target)

        task = self.repository.create_task(
            TaskCreate(
                task_id=task_id,
                filename=filename,
                doc_type=command.doc_type or Path(filename).suffix.lstrip(".").lower(),
                page_range=command.page_range.strip(),
                model=command.model,
            ),
        )
        logger.info("Created task %s for %s", task.task_id, filename)
        self.events.emit_task_event(TaskEventType.TASK_UPDATED, task.task_id, **task.event_fields())
        return task

    def cancel_task(self, task_id: str) -> TaskView:
        task = self.repository.cancel_task(task_id)
        logger.info("Cancelled task %s", task_id)
        self._publish_status(task)
        return task

    def retry_page(self, page_id: int) -> PageView:
        page, task = self.repository.retry_page(page_id)
        logger.info("Page %d of task %s queued for retry", page.page, page.task_id)
        self.events.emit_page_event(
            TaskEventType.PAGE_UPDATED,
            task_id=page.task_id,
            page_id=page.id,
            page=page.page,
            status=page.status,
            retry_count=page.retry_count,
        )
        self._publish_status(task)
        return page

    def retry_failed_pages(self, task_id: str) -> int:
        count, task = self.repository.retry_failed_pages(task_id)
        logger.info("Task %s: %d failed page(s) queued for retry", task_id, count)
        self._publish_status(task)
        return count

    def delete_task(self, task_id: str) -> None:
        """Delete a task row, its pages and its upload directory."""

        self.repository.delete_task(task_id)
        upload_dir = self.paths.upload_dir(task_id)
        if upload_dir.exists():
            shutil.rmtree(upload_dir, ignore_errors=True)
        logger.info("Deleted task %s", task_id)
        self.events.emit_task_event(TaskEventType.TASK_DELETED, task_id)

    def _publish_status(self, task: TaskView) -> None:
        self.events.emit_task_event(TaskEventType.TASK_UPDATED, task.task_id, **task.event_fields())
        self.events.emit_task_event(
            TaskEventType.TASK_STATUS_CHANGED,
            task.task_id,
            status=task.status.value,
        )
