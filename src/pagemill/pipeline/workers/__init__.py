"""Pipeline stage workers."""

from pagemill.pipeline.workers.base import WorkerBase, WorkerStopped
from pagemill.pipeline.workers.converter import ConverterWorker
from pagemill.pipeline.workers.merger import MergerWorker
from pagemill.pipeline.workers.splitter import SplitterWorker

__all__ = [
    "ConverterWorker",
    "MergerWorker",
    "SplitterWorker",
    "WorkerBase",
    "WorkerStopped",
]
