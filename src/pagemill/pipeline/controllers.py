"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from pagemill.config import Settings
from pagemill.pipeline.backend.local import (
    EchoCompletionService,
    MarkdownMergeExporter,
    PlainTextSplitter,
)
from pagemill.pipeline.events import EventBus
from pagemill.pipeline.models import TaskStatus
from pagemill.pipeline.orchestrator import WorkerOrchestrator
from pagemill.pipeline.paths import ArtifactPathResolver
from pagemill.pipeline.repository import PipelineRepository
from pagemill.pipeline.services import CreateTaskCommand, TaskService

LOCAL_PAGE_SUFFIX = ".txt"
ACTIVE_TASK_STATUSES = (
    TaskStatus.PENDING,
    TaskStatus.SPLITTING,
    TaskStatus.PROCESSING,
    TaskStatus.READY_TO_MERGE,
    TaskStatus.MERGING,
)


@dataclass(slots=True)
class CreateTaskCliCommand:
    """CLI input for registering a document."""

    db_path: Path | None
    uploads_dir: Path | None
    source_file: Path
    page_range: str
    model: str | None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str
    show_content: bool = False


@dataclass(slots=True)
class MutateTaskCommand:
    db_path: Path | None
    uploads_dir: Path | None
    task_id: str


@dataclass(slots=True)
class RetryPageCommand:
    db_path: Path | None
    uploads_dir: Path | None
    page_id: int


@dataclass(slots=True)
class RunWorkersCommand:
    """CLI input for running the worker pool in the foreground."""

    db_path: Path | None
    uploads_dir: Path | None
    converters: int | None
    until_idle: bool
    max_seconds: float | None = None


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    uploads_dir: Path | None


class PipelineCliController:
    """Thin adapter between click commands and pipeline services."""

    def create_task(self, command: CreateTaskCliCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        with _repository(settings) as repository:
            task = _task_service(settings, repository).create_task(
                CreateTaskCommand(
                    source_file=command.source_file,
                    page_range=command.page_range,
                    model=command.model or settings.default_model,
                ),
            )
        return [
            f"Task created: {task.task_id}",
            f"File: {task.filename} type={task.doc_type or '-'} "
            f"pages={task.page_range or 'all'} status={task.status.value}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status.lower()) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} file={task.filename} status={task.status.value} "
                f"progress={task.progress}% pages={task.completed_count}+{task.failed_count}"
                f"/{task.pages} created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            pages = repository.list_pages(command.task_id) if task is not None else []
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.task_id}",
            f"File: {task.filename}",
            f"Status: {task.status.value}",
            f"Progress: {task.progress}%",
            f"Pages: {task.pages} completed={task.completed_count} failed={task.failed_count}",
            f"Page range: {task.page_range or 'all'}",
            f"Model: {task.model or '-'}",
            f"Error: {task.error or '-'}",
            f"Output: {task.merged_path or '-'}",
        ]
        for page in pages:
            lines.append(
                f"  page {page.page} (id={page.id} source={page.page_source}) "
                f"status={page.status.value} retries={page.retry_count} "
                f"tokens={page.input_tokens}/{page.output_tokens} "
                f"time={page.conversion_time_ms}ms error={page.error or '-'}",
            )
            if command.show_content and page.content:
                lines.extend(f"    | {line}" for line in page.content.splitlines())
        return lines

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        with _repository(settings) as repository:
            _task_service(settings, repository).cancel_task(command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def delete_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        with _repository(settings) as repository:
            _task_service(settings, repository).delete_task(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def retry_failed(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        with _repository(settings) as repository:
            count = _task_service(settings, repository).retry_failed_pages(command.task_id)
        return [f"Pages re-queued: {count} (task_id={command.task_id})"]

    def retry_page(self, command: RetryPageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        with _repository(settings) as repository:
            page = _task_service(settings, repository).retry_page(command.page_id)
        return [f"Page re-queued: {page.page} of task {page.task_id}"]

    def run_workers(self, command: RunWorkersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        if command.converters is not None:
            settings.workers.converter = replace(
                settings.workers.converter,
                count=command.converters,
            )
        settings.validate()

        with _repository(settings) as repository:
            orchestrator = _orchestrator(settings, repository)
            orchestrator.start()
            started = time.monotonic()
            try:
                while True:
                    if command.until_idle and not _has_active_tasks(repository):
                        break
                    if (
                        command.max_seconds is not None
                        and time.monotonic() - started >= command.max_seconds
                    ):
                        break
                    time.sleep(settings.workers.converter.poll_interval_seconds)
            except KeyboardInterrupt:
                pass
            finally:
                orchestrator.stop()
            counts = repository.count_tasks_by_status()

        return [
            "Workers stopped: "
            + " ".join(f"{status.value}={counts.get(status, 0)}" for status in TaskStatus),
        ]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, uploads_dir=command.uploads_dir)
        with _repository(settings) as repository:
            result = _orchestrator(settings, repository).cleanup_orphaned_work()
        return [
            f"Orphaned pages reset: {result.orphaned_pages}",
            f"Orphaned splitting tasks reset: {result.orphaned_splitting_tasks}",
            f"Orphaned merging tasks reset: {result.orphaned_merging_tasks}",
            f"Orphaned pending pages failed: {result.orphaned_pending_pages}",
            f"Total: {result.total}",
        ]


def _has_active_tasks(repository: PipelineRepository) -> bool:
    counts = repository.count_tasks_by_status()
    return any(counts.get(status, 0) for status in ACTIVE_TASK_STATUSES)


def _paths(settings: Settings) -> ArtifactPathResolver:
    return ArtifactPathResolver(settings.uploads_dir, page_suffix=LOCAL_PAGE_SUFFIX)


def _task_service(settings: Settings, repository: PipelineRepository) -> TaskService:
    return TaskService(repository=repository, events=EventBus(), paths=_paths(settings))


def _orchestrator(settings: Settings, repository: PipelineRepository) -> WorkerOrchestrator:
    paths = _paths(settings)
    return WorkerOrchestrator(
        repository=repository,
        events=EventBus(),
        paths=paths,
        uploads_dir=settings.uploads_dir,
        splitter=PlainTextSplitter(),
        completion=EchoCompletionService(),
        exporter=MarkdownMergeExporter(paths),
        settings=settings.workers,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[PipelineRepository]:
    repository = PipelineRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
