"""Interfaces of the collaborators the workers drive."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pagemill.pipeline.models import PageContent


@dataclass(slots=True)
class SplitRequest:
    """Inputs required to render the selected pages of one document."""

    task_id: str
    source_path: Path
    doc_type: str
    pages: list[int]
    artifact_path: Callable[[int], Path]


@dataclass(slots=True)
class SplitPage:
    """One rendered page: its position in the task and in the source document."""

    page: int
    source_page: int
    artifact_path: Path


@dataclass(slots=True)
class SplitResult:
    pages: list[SplitPage] = field(default_factory=list)

    @property
    def rendered_pages(self) -> int:
        return len(self.pages)


@dataclass(slots=True)
class CompletionRequest:
    artifact_path: Path
    model: str
    timeout_seconds: float


@dataclass(slots=True)
class CompletionResult:
    """Converted page text plus usage metadata."""

    content: str
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: int = 0


@dataclass(slots=True)
class MergeRequest:
    task_id: str
    filename: str
    pages: list[PageContent]


class DocumentSplitter(Protocol):
    """Renders document pages to per-page artifacts."""

    def count_pages(self, source_path: Path, doc_type: str) -> int:
        """Return number of pages in the source document."""

    def split(self, request: SplitRequest) -> SplitResult:
        """Render requested pages to ``request.artifact_path(page)`` locations."""


class CompletionService(Protocol):
    """Converts one page artifact into markdown."""

    def complete(self, request: CompletionRequest) -> CompletionResult:
        """Return markdown for the page, raising typed pipeline errors on failure."""


class MergeExporter(Protocol):
    """Writes the final document from converted page contents."""

    def merge(self, request: MergeRequest) -> Path:
        """Write merged output and return its path."""
