"""Retry classification and exponential backoff.

This module provides:
- error_code: Extract a symbolic network error code from an exception
- is_retryable_*: Predicates classifying failures as transient or fatal
- calculate_backoff_delay: Exponential backoff with jitter (milliseconds)
- retry_with_backoff: Bounded retry loop driven by the predicates above

Classification fails closed: anything that isn't recognizably transient is
not retried.
"""

from __future__ import annotations

import errno
import logging
import random
import re
import socket
import ssl
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from websockets.exceptions import ConnectionClosed

from filesync.client.errors import (
    ClientError,
    CloseEvent,
    ErrorEvent,
    OperationCancelledError,
    is_graphql_errors,
)
from filesync.core.config import (
    DEFAULT_BACKOFF_LIMIT_MS,
    DEFAULT_JITTER_MS,
    DEFAULT_MAX_REQUEST_ATTEMPTS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_LIMIT = DEFAULT_MAX_REQUEST_ATTEMPTS

# Transient network failures shared by the HTTP and WebSocket clients
RETRYABLE_NETWORK_ERROR_CODES = (
    "ETIMEDOUT",
    "ECONNRESET",
    "EADDRINUSE",
    "ECONNREFUSED",
    "EPIPE",
    "ENOTFOUND",
    "ENETUNREACH",
    "EAI_AGAIN",
    "EADDRNOTAVAIL",
    "EHOSTUNREACH",
    "ERR_SSL_SSL/TLS_ALERT_BAD_RECORD_MAC",
    "EPROTO",
)

# 1000 normal closure, 1008 policy violation, 4401 unauthorized, 4403 forbidden
NON_RETRYABLE_CLOSE_CODES = (1000, 1008, 4401, 4403)

# Close code used when the connection dropped without a close frame
ABNORMAL_CLOSURE = 1006

RETRYABLE_HTTP_STATUS_CODES = (408, 413, 429, 500, 502, 503, 504, 521, 522, 524)

NON_RETRYABLE_AUTH_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"unauthenticated",
        r"unauthorized",
        r"forbidden",
        r"not allowed",
        r"permission denied",
    )
)

NON_RETRYABLE_AUTH_CODES = ("UNAUTHENTICATED", "UNAUTHORIZED", "FORBIDDEN")

TRANSIENT_SERVER_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"internal server error",
        r"bad gateway",
        r"service unavailable",
        r"gateway time-?out",
        r"timed out",
        r"temporarily unavailable",
        r"too many requests",
        r"request timeout",
        r"\b(408|429|5\d\d)\b",
    )
)

TRANSIENT_SERVER_CODES = (
    "INTERNAL_SERVER_ERROR",
    "SERVICE_UNAVAILABLE",
    "BAD_GATEWAY",
    "GATEWAY_TIMEOUT",
)

_GAI_ERROR_CODES = {
    socket.EAI_AGAIN: "EAI_AGAIN",
    socket.EAI_NONAME: "ENOTFOUND",
}
if hasattr(socket, "EAI_NODATA"):
    _GAI_ERROR_CODES[socket.EAI_NODATA] = "ENOTFOUND"


def error_code(error: Any) -> str | None:
    """Extract a symbolic network error code from an error.

    Follows __cause__/__context__ chains so that errors wrapped by httpx or
    websockets are classified by their underlying OS error.

    Args:
        error: Exception, or mapping with a "code" key.

    Returns:
        A code such as "ECONNRESET", or None if none can be determined.
    """
    if isinstance(error, dict):
        code = error.get("code")
        return code if isinstance(code, str) else None

    seen: set[int] = set()
    while isinstance(error, BaseException) and id(error) not in seen:
        seen.add(id(error))

        code = getattr(error, "code", None)
        if isinstance(code, str) and code:
            return code

        if isinstance(error, httpx.TimeoutException | TimeoutError):
            return "ETIMEDOUT"
        if isinstance(error, socket.gaierror):
            return _GAI_ERROR_CODES.get(error.errno)
        if isinstance(error, ssl.SSLCertVerificationError):
            return "CERT_VERIFY_FAILED"
        if isinstance(error, ssl.SSLError):
            if "BAD_RECORD_MAC" in (error.reason or ""):
                return "ERR_SSL_SSL/TLS_ALERT_BAD_RECORD_MAC"
            return "EPROTO"
        if isinstance(error, OSError) and error.errno:
            name = errno.errorcode.get(error.errno)
            if name:
                return name

        error = error.__cause__ or error.__context__

    return None


def is_retryable_network_error_code(error: Any) -> bool:
    """Check if an error carries a retryable network error code.

    File-system codes such as ENOENT or EACCES are never retryable.
    """
    return error_code(error) in RETRYABLE_NETWORK_ERROR_CODES


def close_event_from(error: ConnectionClosed) -> CloseEvent:
    """Build a CloseEvent from a websockets ConnectionClosed exception."""
    frame = error.rcvd or error.sent
    if frame is None:
        return CloseEvent(code=ABNORMAL_CLOSURE, reason="", was_clean=False)
    return CloseEvent(code=frame.code, reason=frame.reason, was_clean=error.rcvd_then_sent is not None)


def is_retryable_close_event(event: CloseEvent) -> bool:
    """Check if a WebSocket close event is retryable.

    Returns True unless the close code indicates a clean or permanent closure.
    """
    return event.code not in NON_RETRYABLE_CLOSE_CODES


def is_retryable_error_event(event: ErrorEvent) -> bool:
    """Check if a WebSocket error event wraps a retryable network error."""
    return is_retryable_network_error_code(event.error)


def _is_auth_error(message: str, code: Any) -> bool:
    if code in NON_RETRYABLE_AUTH_CODES:
        return True
    return any(pattern.search(message) for pattern in NON_RETRYABLE_AUTH_PATTERNS)


def _is_transient_error(message: str, code: Any) -> bool:
    if code in TRANSIENT_SERVER_CODES:
        return True
    return any(pattern.search(message) for pattern in TRANSIENT_SERVER_PATTERNS)


def is_retryable_graphql_errors(errors: Any) -> bool:
    """Check if GraphQL errors are transient and worth retrying.

    Any authentication/authorization error makes the whole batch fatal.
    Otherwise the batch is retryable only if every error looks like a
    transient server failure. An empty list is not retryable.
    """
    if not is_graphql_errors(errors):
        return False

    classified = []
    for error in errors:
        extensions = error.get("extensions") or {}
        code = extensions.get("code") if isinstance(extensions, dict) else None
        message = error["message"]
        if _is_auth_error(message, code):
            return False
        classified.append(_is_transient_error(message, code))

    return all(classified)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list | tuple) and len(value) > 0 and all(isinstance(item, str) for item in value)


def is_retryable_error_cause(cause: Any) -> bool:
    """Determine if an error cause should be retried based on its shape.

    Dispatches close events, error events, exceptions carrying a network
    code, GraphQL error lists and plain strings to the matching predicate.
    Unrecognized shapes are not retryable.
    """
    if isinstance(cause, ClientError):
        cause = cause.cause

    if isinstance(cause, ConnectionClosed):
        cause = close_event_from(cause)

    if isinstance(cause, CloseEvent):
        return is_retryable_close_event(cause)

    if isinstance(cause, ErrorEvent):
        return is_retryable_error_event(cause)

    if isinstance(cause, BaseException):
        return is_retryable_network_error_code(cause)

    if is_graphql_errors(cause):
        return is_retryable_graphql_errors(cause)

    if isinstance(cause, str):
        return is_retryable_graphql_errors([{"message": cause}])

    if _is_string_list(cause):
        return is_retryable_graphql_errors([{"message": message} for message in cause])

    return False


def calculate_backoff_delay(
    attempt: int,
    limit_ms: float = DEFAULT_BACKOFF_LIMIT_MS,
    jitter_ms: float = DEFAULT_JITTER_MS,
) -> float:
    """Calculate exponential backoff delay with jitter.

    Args:
        attempt: The current retry attempt (1-indexed).
        limit_ms: Maximum delay before jitter, in milliseconds.
        jitter_ms: Random jitter range (+/- jitter_ms).

    Returns:
        Delay in milliseconds, never negative.
    """
    base = min(2**attempt * 100, limit_ms)
    return max(0.0, base + random.uniform(-jitter_ms, jitter_ms))


def retry_with_backoff(
    func: Callable[[], T],
    *,
    should_retry: Callable[[BaseException], bool] = is_retryable_error_cause,
    max_attempts: int = DEFAULT_RETRY_LIMIT,
    backoff_limit_ms: float = DEFAULT_BACKOFF_LIMIT_MS,
    jitter_ms: float = DEFAULT_JITTER_MS,
    cancel_event: threading.Event | None = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Execute a function, retrying classified-transient failures.

    Args:
        func: Function to execute.
        should_retry: Predicate deciding whether a failure is transient.
        max_attempts: Maximum number of attempts (including the first).
        backoff_limit_ms: Maximum backoff delay in milliseconds.
        jitter_ms: Jitter applied to each delay in milliseconds.
        cancel_event: When set, aborts the loop between attempts.
        on_retry: Optional callback invoked before each retry.
        sleep: Sleep function in seconds (default: interruptible wait).

    Returns:
        Result of the function.

    Raises:
        OperationCancelledError: If cancel_event was set while waiting.
        The last exception if it is not retryable or attempts run out.
    """
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Operation cancelled")

        attempt += 1
        try:
            return func()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                if attempt > 1:
                    logger.error(f"Giving up after {attempt} attempts: {e}")
                raise

            delay_ms = calculate_backoff_delay(attempt, backoff_limit_ms, jitter_ms)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay_ms / 1000:.2f}s..."
            )
            if on_retry:
                on_retry(attempt, e)

            if sleep is not None:
                sleep(delay_ms / 1000)
            elif cancel_event is not None:
                if cancel_event.wait(delay_ms / 1000):
                    raise OperationCancelledError("Operation cancelled") from e
            else:
                time.sleep(delay_ms / 1000)
