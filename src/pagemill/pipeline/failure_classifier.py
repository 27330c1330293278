"""Deterministic failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from pagemill.pipeline.errors import PipelineError
from pagemill.pipeline.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1
ERROR_MESSAGE_LIMIT = 500

RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT,
        FailureClass.RATE_LIMITED,
        FailureClass.TIMEOUT,
        FailureClass.UNKNOWN,
    },
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify an exception by its type into a retry class."""

    if isinstance(error, PipelineError):
        failure_class = error.failure_class
        return FailureClassification(
            failure_class=failure_class,
            reason_code=f"{failure_class.value}_{type(error).__name__}",
            matched_rule="pipeline_error",
        )
    if isinstance(error, FileNotFoundError):
        return FailureClassification(
            failure_class=FailureClass.MISSING_INPUT,
            reason_code="missing_input_file",
            matched_rule="file_not_found",
        )
    if isinstance(error, TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="timeout",
            matched_rule="timeout_error",
        )
    if isinstance(error, ConnectionError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="connection_error",
            matched_rule="connection_error",
        )
    return FailureClassification(
        failure_class=FailureClass.UNKNOWN,
        reason_code=f"unknown_{type(error).__name__}",
        matched_rule="fallback_unknown",
    )


def format_error(error: BaseException | str, *, limit: int = ERROR_MESSAGE_LIMIT) -> str:
    """Render an error for storage, truncated to ``limit`` characters."""

    message = error if isinstance(error, str) else (str(error) or type(error).__name__)
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."
