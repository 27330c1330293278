"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from pagemill.pipeline.backend.base import SplitPage
from pagemill.pipeline.events import PAGE_WILDCARD, TASK_WILDCARD, EventBus, PageEvent, TaskEvent
from pagemill.pipeline.models import TaskCreate, TaskStatus, TaskView
from pagemill.pipeline.paths import ArtifactPathResolver
from pagemill.pipeline.repository import PipelineRepository

SPLITTER_TEST_WORKER = "splitter-test"


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[PipelineRepository]:
    repo = PipelineRepository(tmp_path / "pipeline.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorded_events(events: EventBus) -> list[TaskEvent | PageEvent]:
    """Every event published on the ``events`` bus, in order."""

    recorded: list[TaskEvent | PageEvent] = []
    events.subscribe(TASK_WILDCARD, recorded.append)
    events.subscribe(PAGE_WILDCARD, recorded.append)
    return recorded


@pytest.fixture()
def paths(tmp_path: Path) -> ArtifactPathResolver:
    return ArtifactPathResolver(tmp_path / "uploads", page_suffix=".txt")


@pytest.fixture()
def make_processing_task(
    repository: PipelineRepository,
) -> Callable[..., TaskView]:
    """Create a task and split it into ``pages`` PENDING pages without a splitter."""

    def _make(*, pages: int = 3, filename: str = "doc.txt", model: str = "") -> TaskView:
        task = repository.create_task(TaskCreate(filename=filename, model=model))
        claimed = repository.claim_task(
            from_status=TaskStatus.PENDING,
            to_status=TaskStatus.SPLITTING,
            worker_id=SPLITTER_TEST_WORKER,
        )
        assert claimed is not None
        assert claimed.task_id == task.task_id
        split = repository.complete_split(
            task_id=task.task_id,
            worker_id=SPLITTER_TEST_WORKER,
            pages=[
                SplitPage(page=page, source_page=page, artifact_path=Path(f"page-{page}.txt"))
                for page in range(1, pages + 1)
            ],
            model=model,
        )
        assert split is not None
        return split

    return _make
