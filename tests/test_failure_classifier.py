from __future__ import annotations

import allure
import pytest

from pagemill.pipeline.errors import (
    AccessDeniedError,
    CorruptDocumentError,
    EncryptedDocumentError,
    InvalidOutputError,
    MissingInputError,
    QuotaExceededError,
    RateLimitError,
    TransientError,
    UnsupportedFormatError,
)
from pagemill.pipeline.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    RETRYABLE_FAILURE_CLASSES,
    classify_failure,
    format_error,
)
from pagemill.pipeline.models import FailureClass

pytestmark = [
    allure.epic("Pipeline Core"),
    allure.feature("Failure Taxonomy"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "failure_class", "retryable"),
    [
        (TransientError("busy"), FailureClass.TRANSIENT, True),
        (RateLimitError("slow down"), FailureClass.RATE_LIMITED, True),
        (EncryptedDocumentError("locked"), FailureClass.ENCRYPTED_INPUT, False),
        (CorruptDocumentError("broken"), FailureClass.CORRUPT_INPUT, False),
        (UnsupportedFormatError("xlsb"), FailureClass.INVALID_FORMAT, False),
        (MissingInputError("gone"), FailureClass.MISSING_INPUT, False),
        (AccessDeniedError("401"), FailureClass.ACCESS_OR_AUTH, False),
        (QuotaExceededError("402"), FailureClass.BILLING_OR_QUOTA, False),
        (InvalidOutputError("too long"), FailureClass.OUTPUT_INVALID, False),
        (FileNotFoundError("page-1.png"), FailureClass.MISSING_INPUT, False),
        (TimeoutError("took too long"), FailureClass.TIMEOUT, True),
        (ConnectionResetError("reset"), FailureClass.TRANSIENT, True),
        (KeyError("surprise"), FailureClass.UNKNOWN, True),
    ],
)
def test_classifier_maps_exception_types(
    error: Exception,
    failure_class: FailureClass,
    retryable: bool,
) -> None:
    classification = classify_failure(error)
    assert classification.failure_class == failure_class
    assert classification.retryable is retryable


def test_classifier_ignores_message_text() -> None:
    classification = classify_failure(RuntimeError("quota exceeded, rate limit, 429"))
    assert classification.failure_class == FailureClass.UNKNOWN
    assert classification.matched_rule == "fallback_unknown"


def test_retryable_classes() -> None:
    assert RETRYABLE_FAILURE_CLASSES == {
        FailureClass.TRANSIENT,
        FailureClass.RATE_LIMITED,
        FailureClass.TIMEOUT,
        FailureClass.UNKNOWN,
    }


def test_format_error_truncates_long_messages() -> None:
    formatted = format_error(RuntimeError("x" * 600))
    assert len(formatted) == 500
    assert formatted.endswith("...")
    assert format_error(ValueError()) == "ValueError"
    assert format_error("short") == "short"
