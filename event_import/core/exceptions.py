"""
Error taxonomy shared by the import pipeline.

Row-level problems (``TransformError``, geocoding misses) are collected on the
job and never abort a batch. Handler-level problems abort only the affected
import job, which the pipeline controller moves to ``failed``.
"""
from __future__ import annotations

import re
from typing import Any, Optional


class EventImportError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(EventImportError):
    """Malformed input rejected before any row is processed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(EventImportError):
    """A referenced dataset, catalog, import file or job does not exist."""

    def __init__(self, resource: str, identifier: Any, message: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(message or f"{resource} {identifier} not found")


class GeocodingError(EventImportError):
    """All providers failed for an address, or the result was unusable."""

    def __init__(self, message: str, address: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.address = address
        self.provider = provider


class TransformError(EventImportError):
    """A single transform failed on a single row."""

    def __init__(
        self,
        message: str,
        *,
        row_number: Optional[int] = None,
        field: Optional[str] = None,
        value: Any = None,
        transform_type: Optional[str] = None,
        rejects_row: bool = False,
    ):
        super().__init__(message)
        self.rejects_row = rejects_row
        self.row_number = row_number
        self.field = field
        self.value = value
        self.transform_type = transform_type

    def to_dict(self) -> dict:
        return {
            "row": self.row_number,
            "field": self.field,
            "value": None if self.value is None else str(self.value),
            "transform": self.transform_type,
            "error": self.message,
            "rejected": self.rejects_row,
        }


class PipelineStageError(EventImportError):
    """A stage handler could not complete; fatal to the job."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.reason = message


class InvalidStageTransition(EventImportError):
    """A stage change that the transition table does not allow."""

    def __init__(self, from_stage: str, to_stage: str):
        super().__init__(f"Invalid stage transition: {from_stage} -> {to_stage}")
        self.from_stage = from_stage
        self.to_stage = to_stage


_DOMAIN_ERRORS = (ValidationError, NotFoundError, GeocodingError, TransformError, PipelineStageError, InvalidStageTransition)

_SCRUB_PATTERNS = [
    (re.compile(r"\b[a-z][a-z0-9+.-]*://[^\s'\"]+", re.IGNORECASE), "<url>"),
    (re.compile(r"(?:[A-Za-z]:)?(?:[\\/][\w.\-]+){2,}"), "<path>"),
    (re.compile(r"(password|passwd|secret|token|api[_-]?key)\s*[=:]\s*\S+", re.IGNORECASE), r"\1=***"),
]

# Generic messages for infrastructure failures, checked in order
_GENERIC_MESSAGES = [
    (("connection", "econnrefused", "could not connect", "operationalerror"), "Database connection error"),
    (("timeout", "timed out"), "Operation timed out"),
    (("memory", "resource"), "Insufficient resources to complete the operation"),
    (("permission", "unauthorized", "forbidden"), "Permission denied"),
    (("no such file", "file not found", "enoent"), "Source file not found"),
    (("rate limit", "429"), "Rate limit exceeded"),
    (("quota", "limit exceeded"), "Quota exceeded"),
]

MAX_ERROR_MESSAGE_LENGTH = 500


def _scrub(message: str) -> str:
    for pattern, replacement in _SCRUB_PATTERNS:
        message = pattern.sub(replacement, message)
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def sanitize_error_message(error: BaseException) -> str:
    """
    Build the user-visible message for an error.

    Domain errors keep their own wording with URLs, filesystem paths and
    credentials scrubbed. Anything else collapses into a generic category
    message so driver or stack internals never reach a job record.
    """
    if isinstance(error, _DOMAIN_ERRORS):
        return _scrub(str(error))

    lowered = f"{type(error).__name__} {error}".lower()
    for keywords, generic in _GENERIC_MESSAGES:
        if any(keyword in lowered for keyword in keywords):
            return generic
    return "Internal processing error"


def error_type_name(error: BaseException) -> str:
    if isinstance(error, _DOMAIN_ERRORS):
        return type(error).__name__
    return "InternalError"
