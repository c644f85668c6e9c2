from __future__ import annotations

import json
import socket
import sqlite3
from typing import Any, Literal

import httpx

ErrorKind = Literal[
    "INVALID_INPUT",
    "EMPTY_INPUT",
    "NOT_FOUND",
    "ACCESS_DENIED",
    "UNCONFIGURED",
    "TIMEOUT",
    "RATE_LIMITED",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "SERVICE_UNAVAILABLE",
    "LLM_API_ERROR",
    "MALFORMED_RESPONSE",
    "SCHEMA_VIOLATION",
    "TERMINAL_STATE",
    "STORAGE_ERROR",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorKind, str] = {
    "INVALID_INPUT": "Request is missing required input.",
    "EMPTY_INPUT": "No document content was provided for analysis.",
    "NOT_FOUND": "Analysis not found.",
    "ACCESS_DENIED": "Access denied: analysis belongs to a different user.",
    "UNCONFIGURED": "AI analysis is not configured; placeholder data was used.",
    "TIMEOUT": "Analysis request timed out. Please retry.",
    "RATE_LIMITED": "AI service rate limit exceeded. Please retry later.",
    "UNAUTHORIZED": "AI service rejected the configured API key.",
    "FORBIDDEN": "AI service access is forbidden for the configured API key.",
    "SERVICE_UNAVAILABLE": "AI service is unavailable. Please retry later.",
    "LLM_API_ERROR": "AI service request failed. Please retry.",
    "MALFORMED_RESPONSE": (
        "Failed to parse AI response as JSON. The AI may have returned malformed data."
    ),
    "SCHEMA_VIOLATION": "AI response is missing required analysis fields.",
    "TERMINAL_STATE": "Analysis has already finished and can no longer change.",
    "STORAGE_ERROR": "Storage operation failed while saving analysis data.",
    "UNKNOWN_ERROR": "Unexpected error occurred during analysis.",
}

NON_RETRYABLE_KINDS: frozenset[str] = frozenset(
    {
        "INVALID_INPUT",
        "EMPTY_INPUT",
        "MALFORMED_RESPONSE",
        "SCHEMA_VIOLATION",
        "TERMINAL_STATE",
    }
)


class AnalysisError(Exception):
    """Base class for failures that carry a classified kind."""

    kind: ErrorKind = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.status_code = status_code


class InvalidInputError(AnalysisError):
    """Raised when a caller violates a precondition."""

    kind: ErrorKind = "INVALID_INPUT"


class EmptyInputError(InvalidInputError):
    """Raised when the AI client receives no documents."""

    kind: ErrorKind = "EMPTY_INPUT"


class JobNotFoundError(AnalysisError):
    kind: ErrorKind = "NOT_FOUND"


class AccessDeniedError(AnalysisError):
    kind: ErrorKind = "ACCESS_DENIED"


class LLMAPIError(AnalysisError):
    """Raised when the AI provider call fails; kind carries the cause."""

    kind: ErrorKind = "LLM_API_ERROR"


class LLMTimeoutError(LLMAPIError):
    kind: ErrorKind = "TIMEOUT"

    def __init__(self, message: str = "Analysis request timed out") -> None:
        super().__init__(message, status_code=408)


class MalformedResponseError(AnalysisError):
    kind: ErrorKind = "MALFORMED_RESPONSE"


class SchemaViolationError(AnalysisError):
    """Raised when AI output cannot be repaired into the result schema."""

    kind: ErrorKind = "SCHEMA_VIOLATION"

    def __init__(
        self,
        message: str,
        *,
        missing_fields: list[str] | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])
        self.errors = list(errors or [])


class TerminalStateError(AnalysisError):
    """Raised when a write targets a job that already finished."""

    kind: ErrorKind = "TERMINAL_STATE"


def classify_llm_api_error(error: BaseException) -> ErrorKind:
    if isinstance(error, AnalysisError):
        return error.kind
    if isinstance(error, json.JSONDecodeError):
        return "MALFORMED_RESPONSE"

    status_code = extract_http_status_code(error)
    if status_code is not None:
        return classify_status_code(status_code)

    if is_timeout_exception(error):
        return "TIMEOUT"
    if "rate limit" in str(error).lower():
        return "RATE_LIMITED"
    if isinstance(error, (ConnectionError, httpx.NetworkError)):
        return "LLM_API_ERROR"
    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    if isinstance(error, RuntimeError):
        return "LLM_API_ERROR"
    return "UNKNOWN_ERROR"


def classify_status_code(status_code: int) -> ErrorKind:
    if status_code == 429:
        return "RATE_LIMITED"
    if status_code == 401:
        return "UNAUTHORIZED"
    if status_code == 403:
        return "FORBIDDEN"
    if status_code == 408:
        return "TIMEOUT"
    if 500 <= status_code <= 599:
        return "SERVICE_UNAVAILABLE"
    return "LLM_API_ERROR"


def to_llm_api_error(error: Exception) -> AnalysisError:
    """Wrap a raw provider exception into a classified ``LLMAPIError``."""
    if isinstance(error, AnalysisError):
        return error

    kind = classify_llm_api_error(error)
    if kind == "TIMEOUT":
        wrapped: LLMAPIError = LLMTimeoutError(f"Analysis request timed out: {error}")
    else:
        wrapped = LLMAPIError(
            f"{ERROR_FRIENDLY_MESSAGES[kind]} ({error.__class__.__name__}: {error})",
            kind=kind,
            status_code=extract_http_status_code(error),
        )
    wrapped.__cause__ = error
    return wrapped


def is_retryable_llm_exception(error: BaseException) -> bool:
    if not isinstance(error, Exception):
        return False
    return classify_llm_api_error(error) not in NON_RETRYABLE_KINDS


def is_rate_limited_exception(error: BaseException) -> bool:
    if isinstance(error, AnalysisError):
        return error.kind == "RATE_LIMITED"
    if extract_http_status_code(error) == 429:
        return True
    return "rate limit" in str(error).lower()


def is_timeout_exception(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, socket.timeout, httpx.TimeoutException)):
        return True
    class_name = error.__class__.__name__.lower()
    return "timeout" in class_name or "timed out" in str(error).lower()


def extract_http_status_code(error: BaseException) -> int | None:
    for field_name in ("status_code", "code", "status", "http_status"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def build_error_details(error: BaseException) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]
    kind = getattr(error, "kind", None)
    if kind is not None:
        details.append(f"kind={kind}")
    status_code = extract_http_status_code(error)
    if status_code is not None:
        details.append(f"status_code={status_code}")

    for field_name in ("body", "response_body", "payload"):
        value = getattr(error, field_name, None)
        if value is None:
            continue
        details.append(f"{field_name}={value}")
    return "\n".join(details)


def is_storage_error_exception(error: BaseException) -> bool:
    if isinstance(error, sqlite3.Error):
        return True
    if isinstance(error, OSError):
        return True
    return False


def _to_int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
