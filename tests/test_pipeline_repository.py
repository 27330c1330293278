from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from pagemill.pipeline.backend.base import SplitPage
from pagemill.pipeline.errors import (
    InvalidTransitionError,
    PageNotFoundError,
    TaskNotFoundError,
)
from pagemill.pipeline.models import PageStatus, TaskCreate, TaskStatus, TaskView
from pagemill.pipeline.repository import (
    ORPHANED_PAGE_ERROR,
    STALE_PAGE_ERROR,
    PipelineRepository,
)
from pagemill.storage.common import utc_now

pytestmark = [
    allure.epic("Pipeline Core"),
    allure.feature("Task Store Reliability"),
]


def _claim_page_ids(
    db_path: Path,
    worker_id: str,
    start_event: threading.Event,
    result_queue: queue.Queue[tuple[str, int]],
) -> None:
    repository = PipelineRepository(db_path)
    try:
        start_event.wait(timeout=2)
        while True:
            page = repository.claim_page(worker_id=worker_id)
            if page is None:
                return
            result_queue.put((worker_id, page.id))
    finally:
        repository.close()


def _claim_task_once(
    db_path: Path,
    worker_id: str,
    start_event: threading.Event,
    result_queue: queue.Queue[tuple[str, str | None]],
) -> None:
    repository = PipelineRepository(db_path)
    try:
        start_event.wait(timeout=2)
        claimed = repository.claim_task(
            from_status=TaskStatus.PENDING,
            to_status=TaskStatus.SPLITTING,
            worker_id=worker_id,
        )
        result_queue.put((worker_id, claimed.task_id if claimed is not None else None))
    finally:
        repository.close()


def _claim_all_pages(repository: PipelineRepository, worker_id: str, count: int) -> list[int]:
    page_ids = []
    for _ in range(count):
        page = repository.claim_page(worker_id=worker_id)
        assert page is not None
        page_ids.append(page.id)
    return page_ids


def _complete(repository: PipelineRepository, page_id: int, worker_id: str, content: str):
    return repository.complete_page(
        page_id=page_id,
        worker_id=worker_id,
        content=content,
        input_tokens=10,
        output_tokens=20,
        conversion_time_ms=30,
    )


def test_claim_task_is_fifo_and_sets_owner(repository: PipelineRepository) -> None:
    first = repository.create_task(TaskCreate(filename="a.pdf", page_range="1-2"))
    second = repository.create_task(TaskCreate(filename="b.pdf"))

    claimed = repository.claim_task(
        from_status=TaskStatus.PENDING,
        to_status=TaskStatus.SPLITTING,
        worker_id="splitter-1",
    )
    assert claimed is not None
    assert claimed.task_id == first.task_id
    assert claimed.status == TaskStatus.SPLITTING
    assert claimed.worker_id == "splitter-1"
    assert claimed.page_range == "1-2"

    claimed_next = repository.claim_task(
        from_status=TaskStatus.PENDING,
        to_status=TaskStatus.SPLITTING,
        worker_id="splitter-1",
    )
    assert claimed_next is not None
    assert claimed_next.task_id == second.task_id
    assert (
        repository.claim_task(
            from_status=TaskStatus.PENDING,
            to_status=TaskStatus.SPLITTING,
            worker_id="splitter-1",
        )
        is None
    )


def test_complete_split_creates_pending_pages(repository: PipelineRepository) -> None:
    task = repository.create_task(TaskCreate(filename="doc.pdf", model="vision-large"))
    repository.claim_task(
        from_status=TaskStatus.PENDING,
        to_status=TaskStatus.SPLITTING,
        worker_id="splitter-1",
    )

    split = repository.complete_split(
        task_id=task.task_id,
        worker_id="splitter-1",
        pages=[
            SplitPage(page=1, source_page=2, artifact_path=Path("page-1.png")),
            SplitPage(page=2, source_page=5, artifact_path=Path("page-2.png")),
        ],
        model="vision-large",
    )

    assert split is not None
    assert split.status == TaskStatus.PROCESSING
    assert split.pages == 2
    assert split.worker_id is None
    pages = repository.list_pages(task.task_id)
    assert [(page.page, page.page_source, page.status) for page in pages] == [
        (1, 2, PageStatus.PENDING),
        (2, 5, PageStatus.PENDING),
    ]
    assert all(page.model == "vision-large" for page in pages)


def test_complete_split_refuses_cancelled_task(repository: PipelineRepository) -> None:
    task = repository.create_task(TaskCreate(filename="doc.pdf"))
    repository.claim_task(
        from_status=TaskStatus.PENDING,
        to_status=TaskStatus.SPLITTING,
        worker_id="splitter-1",
    )
    repository.cancel_task(task.task_id)

    split = repository.complete_split(
        task_id=task.task_id,
        worker_id="splitter-1",
        pages=[SplitPage(page=1, source_page=1, artifact_path=Path("page-1.png"))],
        model="",
    )

    assert split is None
    assert repository.list_pages(task.task_id) == []
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.CANCELLED


def test_claim_page_orders_by_page_and_requires_processing_parent(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=3)

    first = repository.claim_page(worker_id="converter-1")
    second = repository.claim_page(worker_id="converter-2")
    assert first is not None
    assert second is not None
    assert (first.page, second.page) == (1, 2)
    assert first.status == PageStatus.PROCESSING
    assert first.worker_id == "converter-1"
    assert first.started_at is not None

    repository.cancel_task(task.task_id)
    assert repository.claim_page(worker_id="converter-1") is None


def test_page_completion_advances_counters_and_finishes_task(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=2)
    first_id, second_id = _claim_all_pages(repository, "converter-1", 2)

    first = _complete(repository, first_id, "converter-1", "# One")
    assert first is not None
    assert first.task_status_changed is False
    assert first.task.status == TaskStatus.PROCESSING
    assert first.task.progress == 50
    assert first.page.status == PageStatus.COMPLETED
    assert first.page.content == "# One"
    assert first.page.worker_id is None
    assert (first.page.input_tokens, first.page.output_tokens) == (10, 20)

    second = _complete(repository, second_id, "converter-1", "# Two")
    assert second is not None
    assert second.task_status_changed is True
    assert second.task.status == TaskStatus.READY_TO_MERGE
    assert second.task.progress == 100
    assert second.task.completed_count == 2
    assert [item.content for item in repository.completed_page_contents(task.task_id)] == [
        "# One",
        "# Two",
    ]


def test_failed_page_makes_task_partial_failed(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    make_processing_task(pages=3)
    page_ids = _claim_all_pages(repository, "converter-1", 3)

    _complete(repository, page_ids[0], "converter-1", "ok")
    outcome = repository.fail_page(page_id=page_ids[1], worker_id="converter-1", error="bad")
    assert outcome is not None
    assert outcome.page.status == PageStatus.FAILED
    assert outcome.page.retry_count == 1
    assert outcome.task.progress == 67
    assert outcome.task_status_changed is False

    last = _complete(repository, page_ids[2], "converter-1", "ok")
    assert last is not None
    assert last.task.status == TaskStatus.PARTIAL_FAILED
    assert (last.task.completed_count, last.task.failed_count) == (2, 1)


def test_page_updates_are_ownership_checked(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    make_processing_task(pages=1)
    page = repository.claim_page(worker_id="converter-1")
    assert page is not None

    assert _complete(repository, page.id, "converter-2", "stolen") is None
    assert repository.fail_page(page_id=page.id, worker_id="converter-2", error="x") is None
    assert (
        repository.requeue_page(
            page_id=page.id,
            worker_id="converter-2",
            error="x",
            run_after=utc_now(),
        )
        is None
    )
    stored = repository.get_page(page.id)
    assert stored is not None
    assert stored.status == PageStatus.PROCESSING
    assert stored.worker_id == "converter-1"

    with pytest.raises(PageNotFoundError):
        _complete(repository, 9999, "converter-1", "missing")


def test_requeued_page_waits_for_its_backoff_gate(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    make_processing_task(pages=2)
    delayed_id, ready_id = _claim_all_pages(repository, "converter-1", 2)

    delayed = repository.requeue_page(
        page_id=delayed_id,
        worker_id="converter-1",
        error="busy",
        run_after=utc_now() + timedelta(hours=1),
    )
    assert delayed is not None
    assert delayed.status == PageStatus.PENDING
    assert delayed.retry_count == 1
    assert delayed.worker_id is None
    assert delayed.error == "busy"
    assert delayed.next_attempt_at is not None
    repository.requeue_page(
        page_id=ready_id,
        worker_id="converter-1",
        error="busy",
        run_after=utc_now() - timedelta(seconds=1),
    )

    reclaimed = repository.claim_page(worker_id="converter-2")
    assert reclaimed is not None
    assert reclaimed.id == ready_id
    assert reclaimed.retry_count == 1
    assert repository.claim_page(worker_id="converter-2") is None


def test_concurrent_page_claims_are_exclusive(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    make_processing_task(pages=20)
    start_event = threading.Event()
    result_queue: queue.Queue[tuple[str, int]] = queue.Queue()
    threads = [
        threading.Thread(
            target=_claim_page_ids,
            args=(repository.db_path, f"converter-{index}", start_event, result_queue),
        )
        for index in range(6)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=30)

    claims: list[tuple[str, int]] = []
    while not result_queue.empty():
        claims.append(result_queue.get_nowait())
    claimed_ids = [page_id for _, page_id in claims]
    assert len(claimed_ids) == 20
    assert len(set(claimed_ids)) == 20
    for worker_id, page_id in claims:
        page = repository.get_page(page_id)
        assert page is not None
        assert page.worker_id == worker_id


def test_concurrent_task_claims_have_one_winner(repository: PipelineRepository) -> None:
    task = repository.create_task(TaskCreate(filename="doc.pdf"))
    start_event = threading.Event()
    result_queue: queue.Queue[tuple[str, str | None]] = queue.Queue()
    threads = [
        threading.Thread(
            target=_claim_task_once,
            args=(repository.db_path, f"splitter-{index}", start_event, result_queue),
        )
        for index in range(5)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=30)

    results = [result_queue.get_nowait() for _ in range(5)]
    winners = [worker_id for worker_id, task_id in results if task_id == task.task_id]
    assert len(winners) == 1
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.worker_id == winners[0]


def test_cancelled_task_keeps_status_while_in_flight_pages_finish(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=2)
    page = repository.claim_page(worker_id="converter-1")
    assert page is not None

    cancelled = repository.cancel_task(task.task_id)
    assert cancelled.status == TaskStatus.CANCELLED

    outcome = _complete(repository, page.id, "converter-1", "late")
    assert outcome is not None
    assert outcome.task.status == TaskStatus.CANCELLED
    assert outcome.task.completed_count == 1
    assert outcome.task.progress == 50
    assert outcome.task_status_changed is False

    assert repository.update_task_status(task_id=task.task_id, status=TaskStatus.FAILED) is False
    assert repository.fail_task(task_id=task.task_id, error="late failure") is False
    with pytest.raises(InvalidTransitionError):
        repository.cancel_task(task.task_id)
    with pytest.raises(TaskNotFoundError):
        repository.update_task_status(task_id="missing", status=TaskStatus.FAILED)


def test_orphan_recovery_steps_are_counted_and_idempotent(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    merging = make_processing_task(pages=1)
    (merge_page_id,) = _claim_all_pages(repository, "old-converter", 1)
    _complete(repository, merge_page_id, "old-converter", "done")
    assert (
        repository.claim_task(
            from_status=TaskStatus.READY_TO_MERGE,
            to_status=TaskStatus.MERGING,
            worker_id="old-merger",
        )
        is not None
    )

    processing = make_processing_task(pages=2)
    orphan_page = repository.claim_page(worker_id="old-converter")
    assert orphan_page is not None

    abandoned = make_processing_task(pages=2)
    repository.fail_task(task_id=abandoned.task_id, error="gave up")

    splitting = repository.create_task(TaskCreate(filename="split.pdf"))
    repository.claim_task(
        from_status=TaskStatus.PENDING,
        to_status=TaskStatus.SPLITTING,
        worker_id="old-splitter",
    )

    assert repository.reset_orphaned_pages() == 1
    assert repository.reset_orphaned_splitting_tasks() == 1
    assert repository.reset_orphaned_merging_tasks() == 1
    assert repository.fail_orphaned_pending_pages() == 2

    released = repository.get_page(orphan_page.id)
    assert released is not None
    assert released.status == PageStatus.PENDING
    assert released.worker_id is None
    assert released.started_at is None

    split_task = repository.get_task(splitting.task_id)
    merge_task = repository.get_task(merging.task_id)
    failed_task = repository.get_task(abandoned.task_id)
    processing_task = repository.get_task(processing.task_id)
    assert split_task is not None and split_task.status == TaskStatus.PENDING
    assert split_task.worker_id is None
    assert merge_task is not None and merge_task.status == TaskStatus.READY_TO_MERGE
    assert merge_task.worker_id is None
    assert failed_task is not None
    assert failed_task.status == TaskStatus.FAILED
    assert (failed_task.failed_count, failed_task.progress) == (2, 100)
    assert all(
        page.status == PageStatus.FAILED and page.error == ORPHANED_PAGE_ERROR
        for page in repository.list_pages(abandoned.task_id)
    )
    assert processing_task is not None
    assert processing_task.status == TaskStatus.PROCESSING

    assert repository.reset_orphaned_pages() == 0
    assert repository.reset_orphaned_splitting_tasks() == 0
    assert repository.reset_orphaned_merging_tasks() == 0
    assert repository.fail_orphaned_pending_pages() == 0


def test_recover_stale_pages_skips_live_workers(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    make_processing_task(pages=1)
    page = repository.claim_page(worker_id="converter-1")
    assert page is not None

    assert repository.recover_stale_pages(stale_after=timedelta(hours=1)) == 0
    assert (
        repository.recover_stale_pages(
            stale_after=timedelta(seconds=-1),
            exclude_worker_ids=["converter-1"],
        )
        == 0
    )
    assert repository.recover_stale_pages(stale_after=timedelta(seconds=-1)) == 1

    stored = repository.get_page(page.id)
    assert stored is not None
    assert stored.status == PageStatus.PENDING
    assert stored.worker_id is None
    assert stored.retry_count == 1


def test_recover_stale_pages_fails_page_that_keeps_timing_out(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=2)
    first_id, second_id = _claim_all_pages(repository, "converter-1", 2)
    _complete(repository, first_id, "converter-1", "ok")

    for timeouts in (1, 2):
        assert (
            repository.recover_stale_pages(stale_after=timedelta(seconds=-1), max_retries=3) == 1
        )
        requeued = repository.get_page(second_id)
        assert requeued is not None
        assert requeued.status == PageStatus.PENDING
        assert requeued.retry_count == timeouts
        reclaimed = repository.claim_page(worker_id="converter-1")
        assert reclaimed is not None
        assert reclaimed.id == second_id

    assert repository.recover_stale_pages(stale_after=timedelta(seconds=-1), max_retries=3) == 1

    failed = repository.get_page(second_id)
    assert failed is not None
    assert failed.status == PageStatus.FAILED
    assert failed.retry_count == 3
    assert failed.error == STALE_PAGE_ERROR
    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.PARTIAL_FAILED
    assert (stored.completed_count, stored.failed_count, stored.progress) == (1, 1, 100)


def test_retry_page_reopens_finished_task(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=2)
    first_id, second_id = _claim_all_pages(repository, "converter-1", 2)
    _complete(repository, first_id, "converter-1", "ok")
    repository.fail_page(page_id=second_id, worker_id="converter-1", error="bad")

    page, reopened = repository.retry_page(second_id)

    assert page.status == PageStatus.PENDING
    assert page.retry_count == 0
    assert page.error is None
    assert reopened.status == TaskStatus.PROCESSING
    assert (reopened.completed_count, reopened.failed_count) == (1, 0)
    assert reopened.progress == 50

    with pytest.raises(InvalidTransitionError):
        repository.retry_page(second_id)

    completed_page, reopened_again = repository.retry_page(first_id)
    assert completed_page.content == ""
    assert reopened_again.completed_count == 0

    repository.cancel_task(task.task_id)
    repository.fail_orphaned_pending_pages()
    with pytest.raises(InvalidTransitionError):
        repository.retry_page(second_id)
    with pytest.raises(PageNotFoundError):
        repository.retry_page(9999)


def test_retry_failed_pages_resets_failed_counter(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=3)
    page_ids = _claim_all_pages(repository, "converter-1", 3)
    _complete(repository, page_ids[0], "converter-1", "ok")
    repository.fail_page(page_id=page_ids[1], worker_id="converter-1", error="bad")
    repository.fail_page(page_id=page_ids[2], worker_id="converter-1", error="bad")

    count, reopened = repository.retry_failed_pages(task.task_id)

    assert count == 2
    assert reopened.status == TaskStatus.PROCESSING
    assert reopened.failed_count == 0
    assert reopened.progress == 33
    assert repository.count_pages_by_status(task.task_id) == {
        PageStatus.COMPLETED: 1,
        PageStatus.PENDING: 2,
    }
    assert repository.retry_failed_pages(task.task_id)[0] == 0


def test_retry_failed_pages_requeues_failed_merge(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=1)
    (page_id,) = _claim_all_pages(repository, "converter-1", 1)
    _complete(repository, page_id, "converter-1", "ok")
    repository.claim_task(
        from_status=TaskStatus.READY_TO_MERGE,
        to_status=TaskStatus.MERGING,
        worker_id="merger-1",
    )
    repository.fail_task(task_id=task.task_id, error="disk full")

    count, requeued = repository.retry_failed_pages(task.task_id)

    assert count == 0
    assert requeued.status == TaskStatus.READY_TO_MERGE
    assert requeued.error is None


def test_delete_task_cascades_and_refuses_in_flight(
    repository: PipelineRepository,
    make_processing_task: Callable[..., TaskView],
) -> None:
    task = make_processing_task(pages=2)
    with pytest.raises(InvalidTransitionError):
        repository.delete_task(task.task_id)

    repository.cancel_task(task.task_id)
    repository.delete_task(task.task_id)

    assert repository.get_task(task.task_id) is None
    assert repository.list_pages(task.task_id) == []
    with pytest.raises(TaskNotFoundError):
        repository.delete_task(task.task_id)


def test_list_and_count_tasks(repository: PipelineRepository) -> None:
    first = repository.create_task(TaskCreate(filename="a.pdf"))
    second = repository.create_task(TaskCreate(filename="b.pdf", status=TaskStatus.CREATED))

    assert [task.task_id for task in repository.list_tasks()] == [second.task_id, first.task_id]
    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.CREATED)] == [
        second.task_id,
    ]
    assert repository.count_tasks_by_status() == {TaskStatus.PENDING: 1, TaskStatus.CREATED: 1}
