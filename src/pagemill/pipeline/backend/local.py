"""Local reference collaborators used by the CLI and tests.

``PlainTextSplitter`` treats a UTF-8 text file as a paged document, with pages separated
by form-feed characters. ``EchoCompletionService`` returns a page's text unchanged.
"""

from __future__ import annotations

import time
from pathlib import Path

from pagemill.pipeline.backend.base import (
    CompletionRequest,
    CompletionResult,
    MergeRequest,
    SplitPage,
    SplitRequest,
    SplitResult,
)
from pagemill.pipeline.errors import (
    CorruptDocumentError,
    EncryptedDocumentError,
    MissingInputError,
)
from pagemill.pipeline.paths import ArtifactPathResolver

PAGE_SEPARATOR = "\f"
ENCRYPTED_MARKER = "%ENCRYPTED"
MERGE_PAGE_SEPARATOR = "\n\n---\n\n"


class PlainTextSplitter:
    """Splits form-feed separated text documents into one file per page."""

    def count_pages(self, source_path: Path, doc_type: str) -> int:  # noqa: ARG002
        return len(_read_pages(source_path))

    def split(self, request: SplitRequest) -> SplitResult:
        texts = _read_pages(request.source_path)
        pages: list[SplitPage] = []
        for index, source_page in enumerate(request.pages, start=1):
            path = request.artifact_path(index)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(texts[source_page - 1], encoding="utf-8")
            pages.append(SplitPage(page=index, source_page=source_page, artifact_path=path))
        return SplitResult(pages=pages)


class EchoCompletionService:
    """Returns the page artifact text; tokens are counted as whitespace-separated words."""

    def complete(self, request: CompletionRequest) -> CompletionResult:
        started = time.monotonic()
        try:
            text = request.artifact_path.read_text(encoding="utf-8")
        except FileNotFoundError as error:
            raise MissingInputError(f"Page artifact not found: {request.artifact_path}") from error
        tokens = len(text.split())
        return CompletionResult(
            content=text,
            tokens_in=tokens,
            tokens_out=tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


class MarkdownMergeExporter:
    """Joins page contents with page markers into ``{stem}.md`` next to the upload."""

    def __init__(self, paths: ArtifactPathResolver) -> None:
        self.paths = paths

    def merge(self, request: MergeRequest) -> Path:
        blocks = [f"<!-- Page {item.page} -->\n\n{item.content}" for item in request.pages]
        output_path = self.paths.merged_path(request.task_id, request.filename)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(MERGE_PAGE_SEPARATOR.join(blocks), encoding="utf-8")
        return output_path


def _read_pages(source_path: Path) -> list[str]:
    try:
        raw = source_path.read_bytes()
    except FileNotFoundError as error:
        raise MissingInputError(f"Source document not found: {source_path}") from error
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as error:
        raise CorruptDocumentError(f"Source document is not valid UTF-8: {error}") from error
    if text.split("\n", 1)[0].strip() == ENCRYPTED_MARKER:
        raise EncryptedDocumentError("Source document is password protected")

    pages = text.split(PAGE_SEPARATOR)
    if len(pages) > 1 and not pages[-1].strip():
        pages.pop()
    return pages
