"""Supervisor that recovers orphaned work and runs the stage workers on threads."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

from pagemill.config import WorkerSettings
from pagemill.pipeline.backend.base import CompletionService, DocumentSplitter, MergeExporter
from pagemill.pipeline.backend.local import MarkdownMergeExporter
from pagemill.pipeline.events import EventBus
from pagemill.pipeline.models import CleanupResult, WorkerStatus
from pagemill.pipeline.paths import ArtifactPathResolver
from pagemill.pipeline.repository import PipelineRepository
from pagemill.pipeline.workers import ConverterWorker, MergerWorker, SplitterWorker, WorkerBase

logger = logging.getLogger(__name__)


class WorkerOrchestrator:
    """Owns the worker pool of one process.

    ``start`` first returns work orphaned by a previous process to claimable states, then
    launches one splitter, ``converter.count`` converters and one merger, each on its own
    daemon thread, plus an optional health-check thread.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        events: EventBus,
        paths: ArtifactPathResolver,
        uploads_dir: Path,
        splitter: DocumentSplitter,
        completion: CompletionService,
        exporter: MergeExporter | None = None,
        settings: WorkerSettings | None = None,
    ) -> None:
        self.repository = repository
        self.events = events
        self.paths = paths
        self.uploads_dir = uploads_dir
        self.splitter = splitter
        self.completion = completion
        self.exporter = exporter or MarkdownMergeExporter(paths)
        self.settings = settings or WorkerSettings()

        self._lock = threading.Lock()
        self._running = False
        self._splitter_worker: SplitterWorker | None = None
        self._converter_workers: list[ConverterWorker] = []
        self._merger_worker: MergerWorker | None = None
        self._threads: list[threading.Thread] = []
        self._health_stop = threading.Event()
        self._health_thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                logger.warning("Workers are already running")
                return

            logger.info("Starting pipeline workers")
            self.cleanup_orphaned_work()
            try:
                self.paths.init(self.uploads_dir)
                self._splitter_worker = SplitterWorker(
                    repository=self.repository,
                    events=self.events,
                    paths=self.paths,
                    splitter=self.splitter,
                    settings=self.settings.splitter,
                )
                self._launch(self._splitter_worker)
                for _ in range(self.settings.converter.count):
                    converter = ConverterWorker(
                        repository=self.repository,
                        events=self.events,
                        paths=self.paths,
                        completion=self.completion,
                        settings=self.settings.converter,
                    )
                    self._converter_workers.append(converter)
                    self._launch(converter)
                self._merger_worker = MergerWorker(
                    repository=self.repository,
                    events=self.events,
                    exporter=self.exporter,
                    settings=self.settings.merger,
                )
                self._launch(self._merger_worker)
                self._start_health_check()
            except Exception:
                logger.exception("Failed to start pipeline workers")
                self._shutdown(join_timeout_seconds=self.settings.graceful_shutdown_seconds)
                raise

            self._running = True
            logger.info(
                "Pipeline workers started: 1 splitter, %d converter(s), 1 merger",
                len(self._converter_workers),
            )

    def stop(self, join_timeout_seconds: float | None = None) -> None:
        with self._lock:
            if not self._running:
                logger.warning("Workers are not running")
                return
            logger.info("Stopping pipeline workers")
            timeout = (
                self.settings.graceful_shutdown_seconds
                if join_timeout_seconds is None
                else join_timeout_seconds
            )
            self._shutdown(join_timeout_seconds=timeout)
            self._running = False
            logger.info("Pipeline workers stopped")

    def get_worker_info(self) -> WorkerStatus:
        directories: dict[str, str] = {}
        if self.paths.is_initialized:
            directories["uploads"] = str(self.paths.uploads_dir)
        return WorkerStatus(
            is_running=self._running,
            splitter=self._splitter_worker.info() if self._splitter_worker else None,
            converters=[worker.info() for worker in self._converter_workers],
            merger=self._merger_worker.info() if self._merger_worker else None,
            directories=directories,
        )

    def cleanup_orphaned_work(self) -> CleanupResult:
        """Return work claimed by a previous process to claimable states.

        Each step runs on its own; a failing step is logged and reported as 0.
        """

        logger.info("Checking for orphaned work from a previous session")
        result = CleanupResult(
            orphaned_pages=self._run_cleanup_step(
                "orphaned pages",
                self.repository.reset_orphaned_pages,
            ),
            orphaned_splitting_tasks=self._run_cleanup_step(
                "orphaned splitting tasks",
                self.repository.reset_orphaned_splitting_tasks,
            ),
            orphaned_merging_tasks=self._run_cleanup_step(
                "orphaned merging tasks",
                self.repository.reset_orphaned_merging_tasks,
            ),
            orphaned_pending_pages=self._run_cleanup_step(
                "orphaned pending pages",
                self.repository.fail_orphaned_pending_pages,
            ),
        )
        if result.total:
            logger.info("Orphan recovery finished: %d item(s) recovered", result.total)
        else:
            logger.info("No orphaned work found")
        return result

    def check_health(self) -> int:
        """Release pages held past the page timeout by workers no longer running.

        Pages owned by a converter of this orchestrator that is still running are left
        alone, even when they exceed the timeout: the timeout only reclaims pages whose
        owner is gone, such as a converter of another process sharing the store. A
        converter's own calls are bounded by ``converter.timeout_seconds`` instead.
        """

        live_workers = [worker.worker_id for worker in self._converter_workers if worker.is_running]
        try:
            recovered = self.repository.recover_stale_pages(
                stale_after=timedelta(seconds=self.settings.health_check.page_timeout_seconds),
                exclude_worker_ids=live_workers,
                max_retries=self.settings.converter.max_retries,
            )
        except Exception:
            logger.exception("Health check failed")
            return 0
        if recovered:
            logger.warning("Health check released %d stale page(s)", recovered)
        return recovered

    def _run_cleanup_step(self, name: str, step: Callable[[], int]) -> int:
        try:
            count = step()
        except Exception:
            logger.exception("Orphan recovery step failed: %s", name)
            return 0
        if count:
            logger.warning("Recovered %d %s", count, name)
        return count

    def _launch(self, worker: WorkerBase) -> None:
        thread = threading.Thread(
            target=self._run_worker,
            args=(worker,),
            daemon=True,
            name=worker.worker_id,
        )
        self._threads.append(thread)
        thread.start()

    def _run_worker(self, worker: WorkerBase) -> None:
        try:
            worker.run()
        except Exception:
            logger.exception("Worker %s crashed", worker.worker_id)

    def _start_health_check(self) -> None:
        health = self.settings.health_check
        if not health.enabled or health.interval_seconds <= 0:
            return
        self._health_stop.clear()
        self._health_thread = threading.Thread(
            target=self._health_loop,
            daemon=True,
            name="pagemill-health-check",
        )
        self._health_thread.start()

    def _health_loop(self) -> None:
        interval = self.settings.health_check.interval_seconds
        while not self._health_stop.wait(timeout=interval):
            self.check_health()

    def _shutdown(self, *, join_timeout_seconds: float) -> None:
        self._health_stop.set()
        workers: list[WorkerBase] = [*self._converter_workers]
        if self._splitter_worker is not None:
            workers.insert(0, self._splitter_worker)
        if self._merger_worker is not None:
            workers.append(self._merger_worker)
        for worker in workers:
            worker.stop()

        deadline = time.monotonic() + max(0.0, join_timeout_seconds)
        threads = [*self._threads]
        if self._health_thread is not None:
            threads.append(self._health_thread)
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning("Thread %s did not stop within the shutdown timeout", thread.name)

        self._threads = []
        self._health_thread = None
        self._splitter_worker = None
        self._converter_workers = []
        self._merger_worker = None
