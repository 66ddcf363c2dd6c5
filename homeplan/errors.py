"""
Error taxonomy and classification for upstream calls.

Every failure that crosses the client boundary is mapped to exactly one
ErrorKind. The kind drives the retry policy (retry only transient kinds),
the backoff base delay, and what gets logged.

Classification is an ordered list of pure rules; the first rule that
matches wins:
  1. Network failures (connection refused, DNS, transport errors)
  2. HTTP status codes (429, 401/403, 5xx, other 4xx)
  3. Message heuristics (timeout, quota / resource exhausted)
  4. Content safety blocks
  5. Everything else: UNKNOWN, retried a few times
"""

from __future__ import annotations

import errno
import socket
from enum import Enum
from typing import Any, Callable, Optional

import httpx

DEFAULT_RETRY_AFTER_SECONDS = 60.0

_NETWORK_ERRNOS = frozenset(
    {errno.ECONNREFUSED, errno.ECONNRESET, errno.ETIMEDOUT, errno.EHOSTUNREACH, errno.ENETUNREACH}
)
_NETWORK_PHRASES = ("econnrefused", "enotfound", "etimedout", "connection refused", "name or service not known")


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    AUTH = "auth"
    SERVER = "server"
    UNKNOWN = "unknown"


# ── Exception hierarchy ──


class PlanClientError(Exception):
    """Base for all plan client errors."""

    pass


class ConfigurationError(PlanClientError):
    """Missing or invalid configuration (e.g. no API key) at construction time."""

    pass


class TemplateError(PlanClientError):
    """Template body references variables it does not declare."""

    pass


class ClassifiedError(PlanClientError):
    """A failure tagged with its kind and retry policy."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        retryable: bool,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        retry_after_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = retryable
        self.code = code or kind.name
        self.http_status = http_status
        self.retry_after_seconds = retry_after_seconds

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, retryable={self.retryable}, message={self.message!r})"

    def log_fields(self) -> dict[str, Any]:
        """Key/value context for structured log events."""
        return {
            "error_kind": self.kind.value,
            "retryable": self.retryable,
            "error_code": self.code,
            "http_status": self.http_status,
            "error": self.message,
        }


class InputValidationError(ClassifiedError):
    """The caller's PlanInput is invalid. The only error generate_plan raises."""

    def __init__(self, message: str, details: Optional[list[str]] = None) -> None:
        super().__init__(message, ErrorKind.VALIDATION, False, code="INVALID_INPUT")
        self.details = details or []


class CircuitOpenError(ClassifiedError):
    def __init__(self, retry_in_seconds: float = 0.0) -> None:
        super().__init__(
            "Service temporarily unavailable due to repeated failures",
            ErrorKind.SERVER,
            False,
            code="CIRCUIT_BREAKER_OPEN",
        )
        self.retry_in_seconds = max(0.0, retry_in_seconds)


class RequestTimeoutError(ClassifiedError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Request timed out after {timeout_seconds:g}s", ErrorKind.TIMEOUT, True, code="TIMEOUT")
        self.timeout_seconds = timeout_seconds


class StreamInterruptedError(ClassifiedError):
    """A stream failed after yielding at least one fragment; carries what was produced."""

    def __init__(self, cause: ClassifiedError, partial_text: str) -> None:
        super().__init__(
            f"Stream interrupted: {cause.message}",
            cause.kind,
            False,
            code="STREAM_INTERRUPTED",
            http_status=cause.http_status,
        )
        self.cause = cause
        self.partial_text = partial_text


# ── Classification rules ──


def _status_code(exc: BaseException) -> Optional[int]:
    for value in (
        getattr(exc, "status_code", None),
        getattr(exc, "code", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    ):
        # bool is an int subclass; a True "code" is not a status
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value < 600:
            return value
    return None


def _retry_after(exc: BaseException) -> float:
    value = getattr(exc, "retry_after", None)
    if value is None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
        if headers is not None:
            try:
                value = headers.get("retry-after") or headers.get("Retry-After")
            except AttributeError:
                value = None
    try:
        seconds = float(value) if value is not None else DEFAULT_RETRY_AFTER_SECONDS
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    return seconds if seconds > 0 else DEFAULT_RETRY_AFTER_SECONDS


def _network_rule(exc: BaseException, msg: str) -> Optional[ClassifiedError]:
    is_network = isinstance(exc, (ConnectionError, socket.gaierror, httpx.TransportError))
    if not is_network and isinstance(exc, OSError) and exc.errno in _NETWORK_ERRNOS:
        is_network = True
    if not is_network and any(p in msg for p in _NETWORK_PHRASES):
        is_network = True
    if is_network:
        return ClassifiedError("Network connection failed", ErrorKind.NETWORK, True, code="NETWORK_ERROR")
    return None


def _status_rule(exc: BaseException, msg: str) -> Optional[ClassifiedError]:
    status = _status_code(exc)
    if status is None:
        return None
    if status == 429:
        return ClassifiedError(
            "Rate limit exceeded",
            ErrorKind.RATE_LIMIT,
            True,
            code="RATE_LIMIT",
            http_status=status,
            retry_after_seconds=_retry_after(exc),
        )
    if status in (401, 403):
        return ClassifiedError("Authentication failed", ErrorKind.AUTH, False, code="AUTH_ERROR", http_status=status)
    if status >= 500:
        return ClassifiedError(
            f"Server error: {status}", ErrorKind.SERVER, True, code="SERVER_ERROR", http_status=status
        )
    if status >= 400:
        return ClassifiedError(
            f"Client error: {status}", ErrorKind.VALIDATION, False, code="CLIENT_ERROR", http_status=status
        )
    return None


def _heuristic_rule(exc: BaseException, msg: str) -> Optional[ClassifiedError]:
    if isinstance(exc, TimeoutError) or "timeout" in msg or "timed out" in msg:
        return ClassifiedError("Request timeout", ErrorKind.TIMEOUT, True, code="TIMEOUT")
    if "quota" in msg or "limit" in msg or "resource exhausted" in msg or "resource_exhausted" in msg:
        return ClassifiedError(
            "API quota or rate limit exceeded",
            ErrorKind.RATE_LIMIT,
            True,
            code="QUOTA_EXCEEDED",
            retry_after_seconds=_retry_after(exc),
        )
    return None


def _safety_rule(exc: BaseException, msg: str) -> Optional[ClassifiedError]:
    if "safety" in msg or "blocked" in msg:
        return ClassifiedError("Content blocked by safety filters", ErrorKind.VALIDATION, False, code="SAFETY_BLOCK")
    return None


_RULES: tuple[Callable[[BaseException, str], Optional[ClassifiedError]], ...] = (
    _network_rule,
    _status_rule,
    _heuristic_rule,
    _safety_rule,
)


def classify_error(exc: BaseException) -> ClassifiedError:
    """Map any exception to a ClassifiedError. Already-classified errors pass through."""
    if isinstance(exc, ClassifiedError):
        return exc
    msg = str(exc).lower()
    for rule in _RULES:
        classified = rule(exc, msg)
        if classified is not None:
            classified.__cause__ = exc
            return classified
    # Default: treat unknown as transient (retry a few times)
    classified = ClassifiedError(str(exc) or type(exc).__name__, ErrorKind.UNKNOWN, True, code="UNKNOWN_ERROR")
    classified.__cause__ = exc
    return classified
