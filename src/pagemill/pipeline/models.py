"""Domain models for the conversion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    CREATED = "created"
    FAILED = "failed"
    PENDING = "pending"
    SPLITTING = "splitting"
    PROCESSING = "processing"
    READY_TO_MERGE = "ready_to_merge"
    MERGING = "merging"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PARTIAL_FAILED = "partial_failed"


class PageStatus(str, Enum):
    """Durable page lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    ENCRYPTED_INPUT = "encrypted_input"
    CORRUPT_INPUT = "corrupt_input"
    INVALID_FORMAT = "invalid_format"
    INVALID_PAGE_RANGE = "invalid_page_range"
    MISSING_INPUT = "missing_input"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    OUTPUT_INVALID = "output_invalid"
    UNKNOWN = "unknown"


TERMINAL_TASK_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.PARTIAL_FAILED,
    },
)
IN_FLIGHT_TASK_STATUSES = frozenset(
    {TaskStatus.SPLITTING, TaskStatus.PROCESSING, TaskStatus.MERGING},
)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for registering an uploaded document."""

    filename: str
    task_id: str | None = None
    doc_type: str = ""
    page_range: str = ""
    model: str = ""
    status: TaskStatus = TaskStatus.PENDING


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    filename: str
    doc_type: str
    page_range: str
    pages: int
    model: str
    status: TaskStatus
    progress: int
    worker_id: str | None
    completed_count: int
    failed_count: int
    error: str | None
    merged_path: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def pending_count(self) -> int:
        return max(0, self.pages - self.completed_count - self.failed_count)

    def event_fields(self) -> dict[str, Any]:
        """Partial fields published with task events."""

        return {
            "status": self.status.value,
            "progress": self.progress,
            "pages": self.pages,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "worker_id": self.worker_id,
            "error": self.error,
            "merged_path": self.merged_path,
        }


@dataclass(slots=True)
class PageView:
    """Readable view of one page of a task."""

    id: int
    task_id: str
    page: int
    page_source: int
    status: PageStatus
    worker_id: str | None
    model: str
    content: str
    error: str | None
    retry_count: int
    next_attempt_at: datetime | None
    input_tokens: int
    output_tokens: int
    conversion_time_ms: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class PageOutcome:
    """Result of finishing one page: the page, its parent, and whether the parent moved."""

    page: PageView
    task: TaskView
    task_status_changed: bool


@dataclass(slots=True)
class PageContent:
    """Converted content of one completed page, in merge order."""

    page: int
    content: str


@dataclass(slots=True)
class CleanupResult:
    """Counts reported by one orphan recovery pass."""

    orphaned_pages: int = 0
    orphaned_splitting_tasks: int = 0
    orphaned_merging_tasks: int = 0
    orphaned_pending_pages: int = 0

    @property
    def total(self) -> int:
        return (
            self.orphaned_pages
            + self.orphaned_splitting_tasks
            + self.orphaned_merging_tasks
            + self.orphaned_pending_pages
        )


@dataclass(slots=True)
class WorkerInfo:
    worker_id: str
    is_running: bool


@dataclass(slots=True)
class WorkerStatus:
    """Snapshot of the supervised worker pool."""

    is_running: bool
    splitter: WorkerInfo | None
    converters: list[WorkerInfo]
    merger: WorkerInfo | None
    directories: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        def _info(info: WorkerInfo | None) -> dict[str, Any] | None:
            if info is None:
                return None
            return {"worker_id": info.worker_id, "is_running": info.is_running}

        return {
            "is_running": self.is_running,
            "splitter": _info(self.splitter),
            "converters": [_info(info) for info in self.converters],
            "merger": _info(self.merger),
            "directories": dict(self.directories),
        }


@dataclass(slots=True)
class WorkerRunSummary:
    """Counters accumulated by one worker loop."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    released: int = 0
    idle_polls: int = 0
    errors: int = 0
