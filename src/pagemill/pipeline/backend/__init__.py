"""Collaborator contracts and local reference implementations."""

from pagemill.pipeline.backend.base import (
    CompletionRequest,
    CompletionResult,
    CompletionService,
    DocumentSplitter,
    MergeExporter,
    MergeRequest,
    SplitPage,
    SplitRequest,
    SplitResult,
)
from pagemill.pipeline.backend.local import (
    EchoCompletionService,
    MarkdownMergeExporter,
    PlainTextSplitter,
)

__all__ = [
    "CompletionRequest",
    "CompletionResult",
    "CompletionService",
    "DocumentSplitter",
    "EchoCompletionService",
    "MarkdownMergeExporter",
    "MergeExporter",
    "MergeRequest",
    "PlainTextSplitter",
    "SplitPage",
    "SplitRequest",
    "SplitResult",
]
