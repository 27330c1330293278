"""Persistent task/page store for the conversion pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from pagemill.pipeline.backend.base import SplitPage
from pagemill.pipeline.errors import InvalidTransitionError, PageNotFoundError, TaskNotFoundError
from pagemill.pipeline.models import (
    IN_FLIGHT_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    PageContent,
    PageOutcome,
    PageStatus,
    PageView,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from pagemill.storage.alembic_runner import upgrade_head
from pagemill.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from pagemill.storage.sqlmodel_models import Task, TaskDetail

logger = logging.getLogger(__name__)

ORPHANED_PAGE_ERROR = "orphaned: parent task is no longer processing"
STALE_PAGE_ERROR = "page processing timed out; released by health check"

_ORPHAN_PARENT_STATUSES = (
    TaskStatus.CREATED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
    TaskStatus.COMPLETED,
    TaskStatus.PARTIAL_FAILED,
)
_RETRY_BLOCKED_TASK_STATUSES = frozenset(
    {
        TaskStatus.CANCELLED,
        TaskStatus.SPLITTING,
        TaskStatus.MERGING,
        TaskStatus.PENDING,
        TaskStatus.CREATED,
    },
)


class PipelineRepository:
    """Task and page persistence facade backed by SQLModel + SQLite.

    Every transaction starts with ``BEGIN IMMEDIATE``, so claims and counter updates from
    concurrent worker threads are serialized by SQLite's write lock. Claims are a FIFO select
    followed by a compare-and-swap update; losing the swap means "no work".
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Register an uploaded document."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Task(
                task_id=payload.task_id or str(uuid4()),
                filename=payload.filename,
                doc_type=payload.doc_type,
                page_range=payload.page_range,
                pages=0,
                model=payload.model,
                status=payload.status.value,
                progress=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(
                statement.order_by(col(Task.created_at).desc()).limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def count_tasks_by_status(self) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.status, func.count()).group_by(col(Task.status)),
            ).all()
        return {TaskStatus(status): int(count) for status, count in rows}

    def claim_task(
        self,
        *,
        from_status: TaskStatus,
        to_status: TaskStatus,
        worker_id: str,
    ) -> TaskView | None:
        """Atomically claim the oldest unowned task in ``from_status``."""

        now = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Task)
                    .where(
                        Task.status == from_status.value,
                        col(Task.worker_id).is_(None),
                    )
                    .order_by(col(Task.created_at).asc(), col(Task.task_id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == candidate.task_id,
                        col(Task.status) == from_status.value,
                        col(Task.worker_id).is_(None),
                    )
                    .values(status=to_status.value, worker_id=worker_id, updated_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None

                claimed = session.get(Task, candidate.task_id, populate_existing=True)
                view = _to_task_view(claimed)
                session.commit()
                return view
        except OperationalError as error:
            logger.warning(
                "Claim %s -> %s by %s hit a lock conflict: %s",
                from_status.value,
                to_status.value,
                worker_id,
                error,
            )
            return None

    def update_task_status(
        self,
        *,
        task_id: str,
        status: TaskStatus,
        **fields: object,
    ) -> bool:
        """Set task status plus extra columns; a CANCELLED task is never overridden."""

        values: dict[str, object] = {
            **fields,
            "status": status.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) != TaskStatus.CANCELLED.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                if self.get_task(task_id) is None:
                    raise TaskNotFoundError(task_id)
                return False
            session.commit()
            return True

    def fail_task(self, *, task_id: str, error: str) -> bool:
        """Mark task FAILED with ``error`` and release its claim."""

        return self.update_task_status(
            task_id=task_id,
            status=TaskStatus.FAILED,
            error=error,
            worker_id=None,
        )

    def release_task(self, *, task_id: str, worker_id: str, to_status: TaskStatus) -> bool:
        """Hand a claimed task back to ``to_status`` without recording a failure."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.worker_id) == worker_id,
                    col(Task.status) != TaskStatus.CANCELLED.value,
                )
                .values(
                    status=to_status.value,
                    worker_id=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_split(
        self,
        *,
        task_id: str,
        worker_id: str,
        pages: Sequence[SplitPage],
        model: str,
    ) -> TaskView | None:
        """Create PENDING page rows and move the task to PROCESSING in one transaction.

        Returns ``None`` when the task is no longer SPLITTING under ``worker_id``, for
        example because it was cancelled while the document was being split.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            if row.status != TaskStatus.SPLITTING.value or row.worker_id != worker_id:
                session.rollback()
                return None

            for split_page in pages:
                session.add(
                    TaskDetail(
                        task_id=task_id,
                        page=split_page.page,
                        page_source=split_page.source_page,
                        status=PageStatus.PENDING.value,
                        model=model,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            row.status = TaskStatus.PROCESSING.value
            row.pages = len(pages)
            row.progress = 0
            row.completed_count = 0
            row.failed_count = 0
            row.error = None
            row.worker_id = None
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    # Pages

    def list_pages(self, task_id: str) -> list[PageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDetail)
                .where(TaskDetail.task_id == task_id)
                .order_by(col(TaskDetail.page).asc()),
            ).all()
            return [_to_page_view(row) for row in rows]

    def get_page(self, page_id: int) -> PageView | None:
        with Session(self.engine) as session:
            row = session.get(TaskDetail, page_id)
            return _to_page_view(row) if row is not None else None

    def count_pages_by_status(self, task_id: str) -> dict[PageStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDetail.status, func.count())
                .where(TaskDetail.task_id == task_id)
                .group_by(col(TaskDetail.status)),
            ).all()
        return {PageStatus(status): int(count) for status, count in rows}

    def claim_page(self, *, worker_id: str) -> PageView | None:
        """Atomically claim the next eligible PENDING page of a PROCESSING task."""

        now = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(TaskDetail)
                    .join(Task, col(Task.task_id) == col(TaskDetail.task_id))
                    .where(
                        TaskDetail.status == PageStatus.PENDING.value,
                        col(TaskDetail.worker_id).is_(None),
                        Task.status == TaskStatus.PROCESSING.value,
                        or_(
                            col(TaskDetail.next_attempt_at).is_(None),
                            col(TaskDetail.next_attempt_at) <= now,
                        ),
                    )
                    .order_by(
                        col(TaskDetail.retry_count).asc(),
                        col(TaskDetail.page).asc(),
                        col(TaskDetail.id).asc(),
                    )
                    .limit(1),
                ).first()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(TaskDetail)
                    .where(
                        col(TaskDetail.id) == candidate.id,
                        col(TaskDetail.status) == PageStatus.PENDING.value,
                        col(TaskDetail.worker_id).is_(None),
                    )
                    .values(
                        status=PageStatus.PROCESSING.value,
                        worker_id=worker_id,
                        started_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None

                claimed = session.get(TaskDetail, candidate.id, populate_existing=True)
                view = _to_page_view(claimed)
                session.commit()
                return view
        except OperationalError as error:
            logger.warning("Page claim by %s hit a lock conflict: %s", worker_id, error)
            return None

    def complete_page(  # noqa: PLR0913
        self,
        *,
        page_id: int,
        worker_id: str,
        content: str,
        input_tokens: int,
        output_tokens: int,
        conversion_time_ms: int,
    ) -> PageOutcome | None:
        """Store converted content and advance the parent's counters."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            page = self._owned_page(session=session, page_id=page_id, worker_id=worker_id)
            if page is None:
                return None
            page.status = PageStatus.COMPLETED.value
            page.content = content
            page.error = None
            page.input_tokens = input_tokens
            page.output_tokens = output_tokens
            page.conversion_time_ms = conversion_time_ms
            page.next_attempt_at = None
            page.completed_at = now
            page.worker_id = None
            page.updated_at = now

            task = self._get_task_row(session=session, task_id=page.task_id)
            task.completed_count += 1
            changed = _settle_task(task, now=now)
            return self._commit_outcome(session=session, page=page, task=task, changed=changed)

    def fail_page(self, *, page_id: int, worker_id: str, error: str) -> PageOutcome | None:
        """Mark a page FAILED for good and advance the parent's counters."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            page = self._owned_page(session=session, page_id=page_id, worker_id=worker_id)
            if page is None:
                return None
            page.status = PageStatus.FAILED.value
            page.error = error
            page.retry_count += 1
            page.next_attempt_at = None
            page.completed_at = now
            page.worker_id = None
            page.updated_at = now

            task = self._get_task_row(session=session, task_id=page.task_id)
            task.failed_count += 1
            changed = _settle_task(task, now=now)
            return self._commit_outcome(session=session, page=page, task=task, changed=changed)

    def requeue_page(
        self,
        *,
        page_id: int,
        worker_id: str,
        error: str,
        run_after: datetime,
    ) -> PageView | None:
        """Release a page for another attempt no earlier than ``run_after``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            page = self._owned_page(session=session, page_id=page_id, worker_id=worker_id)
            if page is None:
                return None
            page.status = PageStatus.PENDING.value
            page.error = error
            page.retry_count += 1
            page.next_attempt_at = to_db_datetime(run_after)
            page.started_at = None
            page.worker_id = None
            page.updated_at = now
            session.add(page)
            session.commit()
            session.refresh(page)
            return _to_page_view(page)

    def release_page(self, *, page_id: int, worker_id: str) -> bool:
        """Hand a claimed page back to PENDING without counting an attempt."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskDetail)
                .where(
                    col(TaskDetail.id) == page_id,
                    col(TaskDetail.status) == PageStatus.PROCESSING.value,
                    col(TaskDetail.worker_id) == worker_id,
                )
                .values(
                    status=PageStatus.PENDING.value,
                    worker_id=None,
                    started_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def completed_page_contents(self, task_id: str) -> list[PageContent]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDetail)
                .where(
                    TaskDetail.task_id == task_id,
                    TaskDetail.status == PageStatus.COMPLETED.value,
                )
                .order_by(col(TaskDetail.page).asc()),
            ).all()
            return [PageContent(page=row.page, content=row.content) for row in rows]

    # Orphan recovery

    def reset_orphaned_pages(self) -> int:
        """Release PROCESSING pages still owned by workers of a previous process."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskDetail)
                .where(
                    col(TaskDetail.status) == PageStatus.PROCESSING.value,
                    col(TaskDetail.worker_id).is_not(None),
                )
                .values(
                    status=PageStatus.PENDING.value,
                    worker_id=None,
                    started_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def reset_orphaned_splitting_tasks(self) -> int:
        return self._reset_orphaned_tasks(
            from_status=TaskStatus.SPLITTING,
            to_status=TaskStatus.PENDING,
        )

    def reset_orphaned_merging_tasks(self) -> int:
        return self._reset_orphaned_tasks(
            from_status=TaskStatus.MERGING,
            to_status=TaskStatus.READY_TO_MERGE,
        )

    def fail_orphaned_pending_pages(self) -> int:
        """Fail PENDING pages whose parent task will never schedule them again.

        The parent's ``failed_count`` is bumped for each page so that the counters keep
        adding up to the number of finished pages.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDetail, Task)
                .join(Task, col(Task.task_id) == col(TaskDetail.task_id))
                .where(
                    TaskDetail.status == PageStatus.PENDING.value,
                    col(Task.status).in_([status.value for status in _ORPHAN_PARENT_STATUSES]),
                ),
            ).all()
            if not rows:
                return 0

            tasks: dict[str, Task] = {}
            for page, task in rows:
                page.status = PageStatus.FAILED.value
                page.error = ORPHANED_PAGE_ERROR
                page.next_attempt_at = None
                page.completed_at = now
                page.updated_at = now
                session.add(page)
                task.failed_count += 1
                tasks[task.task_id] = task
            for task in tasks.values():
                task.progress = _progress(task)
                task.updated_at = now
                session.add(task)
            session.commit()
            return len(rows)

    def recover_stale_pages(
        self,
        *,
        stale_after: timedelta,
        exclude_worker_ids: Iterable[str] = (),
        max_retries: int | None = None,
    ) -> int:
        """Release PROCESSING pages claimed longer than ``stale_after`` ago.

        Each timeout counts as a failed attempt. A page whose ``retry_count`` reaches
        ``max_retries`` is failed for good instead of being queued again.
        """

        now = to_db_datetime(utc_now())
        cutoff = to_db_datetime(utc_now() - stale_after)
        excluded = list(exclude_worker_ids)
        with Session(self.engine) as session:
            statement = select(TaskDetail, Task).join(
                Task,
                col(Task.task_id) == col(TaskDetail.task_id),
            ).where(
                TaskDetail.status == PageStatus.PROCESSING.value,
                col(TaskDetail.started_at) < cutoff,
            )
            if excluded:
                statement = statement.where(col(TaskDetail.worker_id).not_in(excluded))
            rows = session.exec(statement).all()
            if not rows:
                return 0

            tasks: dict[str, Task] = {}
            for page, task in rows:
                page.retry_count += 1
                page.worker_id = None
                page.started_at = None
                page.error = STALE_PAGE_ERROR
                page.next_attempt_at = None
                page.updated_at = now
                if max_retries is not None and page.retry_count >= max_retries:
                    page.status = PageStatus.FAILED.value
                    page.completed_at = now
                    task.failed_count += 1
                    tasks[task.task_id] = task
                else:
                    page.status = PageStatus.PENDING.value
                session.add(page)
            for task in tasks.values():
                if _settle_task(task, now=now):
                    logger.info(
                        "Task %s finished converting after page timeouts, now %s",
                        task.task_id,
                        task.status,
                    )
                session.add(task)
            session.commit()
            return len(rows)

    # Operator actions

    def retry_page(self, page_id: int) -> tuple[PageView, TaskView]:
        """Put one FAILED or COMPLETED page back into the queue."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            page = session.get(TaskDetail, page_id)
            if page is None:
                raise PageNotFoundError(page_id)
            previous = PageStatus(page.status)
            if previous not in {PageStatus.FAILED, PageStatus.COMPLETED}:
                raise InvalidTransitionError(
                    f"Only failed or completed pages can be retried, got {page.status}.",
                )
            task = self._get_task_row(session=session, task_id=page.task_id)
            _ensure_retry_allowed(task)

            _reset_page(page, now=now)
            session.add(page)
            if previous == PageStatus.FAILED:
                task.failed_count = max(0, task.failed_count - 1)
            else:
                task.completed_count = max(0, task.completed_count - 1)
            _reopen_task(task, now=now)
            session.add(task)
            session.commit()
            session.refresh(page)
            session.refresh(task)
            return _to_page_view(page), _to_task_view(task)

    def retry_failed_pages(self, task_id: str) -> tuple[int, TaskView]:
        """Put every FAILED page of a task back into the queue.

        A FAILED task whose pages all completed (the merge failed) goes back to
        READY_TO_MERGE instead.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            task = self._get_task_row(session=session, task_id=task_id)
            _ensure_retry_allowed(task)
            pages = session.exec(
                select(TaskDetail).where(
                    TaskDetail.task_id == task_id,
                    TaskDetail.status == PageStatus.FAILED.value,
                ),
            ).all()
            if pages:
                for page in pages:
                    _reset_page(page, now=now)
                    session.add(page)
                task.failed_count = 0
                _reopen_task(task, now=now)
            elif (
                task.status == TaskStatus.FAILED.value
                and task.pages > 0
                and task.completed_count == task.pages
            ):
                task.status = TaskStatus.READY_TO_MERGE.value
                task.error = None
                task.worker_id = None
                task.updated_at = now
            else:
                session.rollback()
                return 0, _to_task_view(task)
            session.add(task)
            session.commit()
            session.refresh(task)
            return len(pages), _to_task_view(task)

    def cancel_task(self, task_id: str) -> TaskView:
        """Cancel a task that has not finished yet."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous in TERMINAL_TASK_STATUSES:
                raise InvalidTransitionError(f"Task cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id, col(Task.status) == previous.value)
                .values(status=TaskStatus.CANCELLED.value, worker_id=None, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            cancelled = session.get(Task, task_id, populate_existing=True)
            view = _to_task_view(cancelled)
            session.commit()
            return view

    def delete_task(self, task_id: str) -> None:
        """Delete a task and its pages; in-flight tasks must be cancelled first."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if TaskStatus(row.status) in IN_FLIGHT_TASK_STATUSES:
                raise InvalidTransitionError(
                    f"Task {task_id} is {row.status}; cancel it before deleting.",
                )
            session.exec(sa_delete(TaskDetail).where(col(TaskDetail.task_id) == task_id))
            session.delete(row)
            session.commit()

    # Internals

    def _reset_orphaned_tasks(self, *, from_status: TaskStatus, to_status: TaskStatus) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.status) == from_status.value, col(Task.worker_id).is_not(None))
                .values(
                    status=to_status.value,
                    worker_id=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _owned_page(self, *, session: Session, page_id: int, worker_id: str) -> TaskDetail | None:
        page = session.get(TaskDetail, page_id)
        if page is None:
            raise PageNotFoundError(page_id)
        if page.status != PageStatus.PROCESSING.value or page.worker_id != worker_id:
            logger.warning(
                "Page %s is no longer held by %s (status=%s, owner=%s)",
                page_id,
                worker_id,
                page.status,
                page.worker_id,
            )
            session.rollback()
            return None
        return page

    def _get_task_row(self, *, session: Session, task_id: str) -> Task:
        row = session.get(Task, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _commit_outcome(
        self,
        *,
        session: Session,
        page: TaskDetail,
        task: Task,
        changed: bool,
    ) -> PageOutcome:
        session.add(page)
        session.add(task)
        session.commit()
        session.refresh(page)
        session.refresh(task)
        return PageOutcome(
            page=_to_page_view(page),
            task=_to_task_view(task),
            task_status_changed=changed,
        )


def _progress(task: Task) -> int:
    if task.pages <= 0:
        return 0
    finished = task.completed_count + task.failed_count
    return min(100, (finished * 100 * 2 + task.pages) // (task.pages * 2))


def _settle_task(task: Task, *, now: datetime) -> bool:
    """Recompute progress; finish a PROCESSING task once every page is done."""

    task.progress = _progress(task)
    task.updated_at = now
    if task.status != TaskStatus.PROCESSING.value:
        return False
    if task.completed_count + task.failed_count < task.pages:
        return False
    task.status = (
        TaskStatus.PARTIAL_FAILED.value
        if task.failed_count > 0
        else TaskStatus.READY_TO_MERGE.value
    )
    task.worker_id = None
    return True


def _ensure_retry_allowed(task: Task) -> None:
    if TaskStatus(task.status) in _RETRY_BLOCKED_TASK_STATUSES:
        raise InvalidTransitionError(
            f"Pages of task {task.task_id} cannot be retried while it is {task.status}.",
        )


def _reset_page(page: TaskDetail, *, now: datetime) -> None:
    page.status = PageStatus.PENDING.value
    page.worker_id = None
    page.content = ""
    page.error = None
    page.retry_count = 0
    page.next_attempt_at = None
    page.input_tokens = 0
    page.output_tokens = 0
    page.conversion_time_ms = 0
    page.started_at = None
    page.completed_at = None
    page.updated_at = now


def _reopen_task(task: Task, *, now: datetime) -> None:
    task.status = TaskStatus.PROCESSING.value
    task.worker_id = None
    task.error = None
    task.merged_path = None
    task.progress = _progress(task)
    task.updated_at = now


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        filename=row.filename,
        doc_type=row.doc_type,
        page_range=row.page_range,
        pages=row.pages,
        model=row.model,
        status=TaskStatus(row.status),
        progress=row.progress,
        worker_id=row.worker_id,
        completed_count=row.completed_count,
        failed_count=row.failed_count,
        error=row.error,
        merged_path=row.merged_path,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_page_view(row: TaskDetail) -> PageView:
    return PageView(
        id=row.id or 0,
        task_id=row.task_id,
        page=row.page,
        page_source=row.page_source,
        status=PageStatus(row.status),
        worker_id=row.worker_id,
        model=row.model,
        content=row.content,
        error=row.error,
        retry_count=row.retry_count,
        next_attempt_at=to_utc_aware_datetime(row.next_attempt_at),
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        conversion_time_ms=row.conversion_time_ms,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=to_utc_aware_datetime(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
