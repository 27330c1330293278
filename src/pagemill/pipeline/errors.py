"""Exception types raised by collaborators and by the pipeline repository.

Collaborators (splitters, completion services, exporters) signal how a failure should be
treated by raising one of the typed errors below. The workers never inspect message text;
``pagemill.pipeline.failure_classifier`` maps exception types to a ``FailureClass``.
"""

from __future__ import annotations

from typing import ClassVar

from pagemill.pipeline.models import FailureClass


class PipelineError(Exception):
    """Base class for failures raised by pipeline collaborators."""

    failure_class: ClassVar[FailureClass] = FailureClass.UNKNOWN


class TransientError(PipelineError):
    """Failure that is expected to clear on a later attempt."""

    failure_class = FailureClass.TRANSIENT


class RateLimitError(TransientError):
    failure_class = FailureClass.RATE_LIMITED


class NonRetryableError(PipelineError):
    """Failure that will repeat on every attempt with the same input."""

    failure_class = FailureClass.INVALID_FORMAT


class EncryptedDocumentError(NonRetryableError):
    failure_class = FailureClass.ENCRYPTED_INPUT


class CorruptDocumentError(NonRetryableError):
    failure_class = FailureClass.CORRUPT_INPUT


class UnsupportedFormatError(NonRetryableError):
    failure_class = FailureClass.INVALID_FORMAT


class MissingInputError(NonRetryableError):
    failure_class = FailureClass.MISSING_INPUT


class AccessDeniedError(NonRetryableError):
    failure_class = FailureClass.ACCESS_OR_AUTH


class QuotaExceededError(NonRetryableError):
    failure_class = FailureClass.BILLING_OR_QUOTA


class InvalidOutputError(NonRetryableError):
    failure_class = FailureClass.OUTPUT_INVALID


class TaskNotFoundError(RuntimeError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class PageNotFoundError(RuntimeError):
    def __init__(self, page_id: int) -> None:
        super().__init__(f"Page not found: {page_id}")
        self.page_id = page_id


class InvalidTransitionError(RuntimeError):
    """Requested status change is not allowed from the current state."""
