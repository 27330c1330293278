"""Parse user page selections such as ``"1-3,7,10-20"`` into page numbers."""

from __future__ import annotations

import logging
import re

from pagemill.pipeline.errors import NonRetryableError
from pagemill.pipeline.models import FailureClass

logger = logging.getLogger(__name__)

_SELECTION_RE = re.compile(r"^\d+(-\d+)?(,\d+(-\d+)?)*$")
_WHITESPACE_RE = re.compile(r"\s+")


class PageRangeError(NonRetryableError, ValueError):
    failure_class = FailureClass.INVALID_PAGE_RANGE


class PageRangeFormatError(PageRangeError):
    pass


class InvertedPageRangeError(PageRangeError):
    pass


class EmptyPageSelectionError(PageRangeError):
    pass


def validate_page_range(selection: str | None) -> bool:
    """Check selection syntax only; bounds are checked by ``parse_page_range``."""

    normalized = _normalize(selection)
    return not normalized or _SELECTION_RE.match(normalized) is not None


def parse_page_range(selection: str | None, total_pages: int) -> list[int]:
    """Resolve ``selection`` against a document of ``total_pages`` pages.

    An empty selection means every page. Ranges are clamped to the document, single pages
    beyond it are dropped with a warning, and the result is sorted without duplicates.
    """

    normalized = _normalize(selection)
    if not normalized:
        return list(range(1, total_pages + 1))
    if _SELECTION_RE.match(normalized) is None:
        raise PageRangeFormatError(f"Invalid page range format: {selection!r}")

    pages: set[int] = set()
    for part in normalized.split(","):
        if "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
            if start > end:
                raise InvertedPageRangeError(f"Invalid page range {part}: start > end")
            if start > total_pages:
                logger.warning(
                    "Page range %s starts beyond document end (%d pages), skipped",
                    part,
                    total_pages,
                )
                continue
            pages.update(range(max(1, start), min(end, total_pages) + 1))
            continue
        page = int(part)
        if 1 <= page <= total_pages:
            pages.add(page)
        else:
            logger.warning("Page %d out of bounds (1-%d), skipped", page, total_pages)

    if not pages:
        raise EmptyPageSelectionError(
            f"No valid pages in range {selection!r} for a document of {total_pages} pages",
        )
    return sorted(pages)


def _normalize(selection: str | None) -> str:
    if selection is None:
        return ""
    return _WHITESPACE_RE.sub("", selection)
