# =============================================================================
# Error Taxonomy & Classifier
# =============================================================================
#
# Every failure in the pipeline ends up in one of two buckets:
#
#   PERMANENT - retrying cannot help (bad input, missing record or file,
#               4xx from the service, explicit "do not retry" signals)
#   TRANSIENT - may succeed later (timeouts, connection errors, 5xx,
#               rate limiting, open circuit, anything unrecognised)
#
# `classify()` is total: it accepts exceptions, HTTP status codes and raw
# error strings and never raises. Both the durable job queue and the in-job
# retry loops use it to decide between "retry" and "give up".
#
# HIERARCHY:
#   PipelineError
#   ├── PermanentError
#   │   ├── ValidationError
#   │   ├── NotFoundError
#   │   │   ├── DocumentNotFoundError
#   │   │   ├── PageNotFoundError
#   │   │   └── SourceFileNotFoundError
#   │   └── StageFailedError        - stage already recorded as error
#   ├── TransientError
#   ├── ServiceError                - external AI service (has status_code)
#   │   ├── ServiceTimeoutError
#   │   └── ServiceUnavailableError
#   ├── CircuitOpenError            - call rejected without being attempted
#   └── InvalidTransitionError      - illegal state machine move
# =============================================================================

from __future__ import annotations

import enum
import re
from typing import Any


class ErrorClass(str, enum.Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class PermanentError(PipelineError):
    """An error that must not be retried."""


class ValidationError(PermanentError):
    """Bad input: malformed job arguments, unsupported file format, etc."""


class NotFoundError(PermanentError):
    """A record or file the operation depends on does not exist."""


class DocumentNotFoundError(NotFoundError):
    def __init__(self, document_id: Any = None):
        self.document_id = document_id
        super().__init__("Document not found")


class PageNotFoundError(NotFoundError):
    def __init__(self, page_id: Any = None):
        self.page_id = page_id
        super().__init__("Page not found")


class SourceFileNotFoundError(NotFoundError):
    def __init__(self, document_id: Any = None, path: str | None = None):
        self.document_id = document_id
        self.path = path
        super().__init__("Document file not found")


class StageFailedError(PermanentError):
    """
    A page stage exhausted its in-job retries (or hit a permanent error or an
    open circuit) and its status has already been set to `error`.

    Raised out of the stage job so the queue discards the job instead of
    re-running a stage that is terminal until an explicit re-run.
    """

    def __init__(self, page_id: Any, stage: str, page_number: int | None, cause: Any):
        self.page_id = page_id
        self.stage = stage
        self.page_number = page_number
        self.cause = cause
        super().__init__(f"Page {page_number} {stage} failed: {describe(cause)}")


class TransientError(PipelineError):
    """An error worth retrying."""


class ServiceError(PipelineError):
    """
    Failure reported by an external AI service.

    `status_code` is the HTTP status when the service answered, None when the
    request never got a response.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ServiceTimeoutError(ServiceError):
    def __init__(self, message: str = "Request timed out"):
        super().__init__(message, status_code=None)


class ServiceUnavailableError(ServiceError):
    def __init__(self, message: str = "Service unavailable"):
        super().__init__(message, status_code=None)


class CircuitOpenError(PipelineError):
    """The breaker for `name` is open; the operation was not attempted."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"circuit_open: {name}")


class InvalidTransitionError(PipelineError):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "rate limit",
    "circuit_open",
)
_PERMANENT_PATTERNS = (
    "not found",
    "invalid",
    "unsupported",
    "do not retry",
)
_STATUS_IN_TEXT = re.compile(r"\b([45]\d\d)\b")
_MAX_CAUSE_DEPTH = 10


def classify_status(status_code: int) -> ErrorClass:
    """HTTP status -> class. 408 and 429 are retryable 4xx codes."""
    if status_code in (408, 429):
        return ErrorClass.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


def _classify_text(text: str) -> ErrorClass:
    lowered = text.lower()
    if any(p in lowered for p in _TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT
    if any(p in lowered for p in _PERMANENT_PATTERNS):
        return ErrorClass.PERMANENT
    if "model" in lowered and "not" in lowered:
        return ErrorClass.PERMANENT
    match = _STATUS_IN_TEXT.search(lowered)
    if match:
        return classify_status(int(match.group(1)))
    return ErrorClass.TRANSIENT


def classify(error: Any) -> ErrorClass:
    """
    Map any failure value onto PERMANENT or TRANSIENT.

    Deterministic and total: the same value always yields the same class and
    no input raises. Unrecognised values are TRANSIENT.

    Foreign exceptions are judged by their HTTP status code when they carry
    one, else by the exception they were raised from (`raise ... from`),
    else by their message.
    """
    return _classify(error, 0)


def _classify(error: Any, depth: int) -> ErrorClass:
    if isinstance(error, ErrorClass):
        return error
    if isinstance(error, (PermanentError, InvalidTransitionError)):
        return ErrorClass.PERMANENT
    if isinstance(error, (TransientError, CircuitOpenError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, ServiceError):
        if error.status_code is None:
            return ErrorClass.TRANSIENT
        return classify_status(error.status_code)
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, (FileNotFoundError, NotADirectoryError, PermissionError)):
        return ErrorClass.PERMANENT
    if isinstance(error, LookupError):
        return ErrorClass.PERMANENT
    if isinstance(error, (ValueError, TypeError)):
        return ErrorClass.PERMANENT
    if isinstance(error, bool):
        return ErrorClass.TRANSIENT
    if isinstance(error, int):
        return classify_status(error)
    if isinstance(error, str):
        return _classify_text(error)
    if isinstance(error, BaseException):
        status_code = _status_code_of(error)
        if status_code is not None:
            return classify_status(status_code)
        if error.__cause__ is not None and depth < _MAX_CAUSE_DEPTH:
            return _classify(error.__cause__, depth + 1)
        return _classify_text(str(error))
    return ErrorClass.TRANSIENT


def _status_code_of(error: BaseException) -> int | None:
    # openai.APIStatusError carries status_code, httpx.HTTPStatusError a response
    for holder in (error, getattr(error, "response", None)):
        code = getattr(holder, "status_code", None)
        if isinstance(code, int) and not isinstance(code, bool):
            return code
    return None


def is_permanent(error: Any) -> bool:
    return classify(error) is ErrorClass.PERMANENT


def is_transient(error: Any) -> bool:
    return classify(error) is ErrorClass.TRANSIENT


def describe(error: Any) -> str:
    """Human-readable one-liner for status fields and job error logs."""
    if isinstance(error, BaseException):
        text = str(error)
        return text or type(error).__name__
    return str(error)
