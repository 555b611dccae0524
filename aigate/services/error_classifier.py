"""
Error classification for retry and circuit-breaker decisions.

- is_retryable_error: default RetryOptions predicate
- is_service_failure: decides whether CircuitBreaker.execute tries the fallback
"""

import asyncio
import socket

import httpx

from aigate.services.errors import (
    BatchGroupFailure,
    PermanentError,
    RateLimitExceeded,
    ServiceUnavailable,
    TransientError,
)

RETRYABLE_STATUS_CODES = frozenset({408, 429})
RETRYABLE_MESSAGE_MARKERS = ("timeout", "network")
OVERLOAD_MESSAGE_MARKERS = ("capacity", "overload", "overloaded", "unavailable")

_OS_TRANSIENT_ERRORS = (
    socket.gaierror,
    ConnectionResetError,
    ConnectionRefusedError,
    ConnectionAbortedError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
)
_CONNECTION_FAILURES = (
    ConnectionResetError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
)


def get_status_code(error: BaseException) -> int | None:
    """Extract an HTTP status code from the common error shapes."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _unwrap(error: BaseException) -> BaseException:
    if isinstance(error, BatchGroupFailure):
        return error.cause
    return error


def is_retryable_error(error: BaseException) -> bool:
    """Return True for network/timeout errors, HTTP 5xx, 429 and 408."""
    error = _unwrap(error)

    if isinstance(error, (PermanentError, ServiceUnavailable, RateLimitExceeded)):
        return False
    if isinstance(error, (TransientError, *_OS_TRANSIENT_ERRORS)):
        return True

    status = get_status_code(error)
    if status is not None:
        return status >= 500 or status in RETRYABLE_STATUS_CODES

    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


def is_service_failure(error: BaseException) -> bool:
    """
    Return True when the dependency itself looks unhealthy.

    5xx, 429, connection reset/timeout, or a message mentioning capacity or
    overload. Permanent (client-side) errors never qualify.
    """
    error = _unwrap(error)

    if isinstance(error, PermanentError):
        return False
    if isinstance(error, (TransientError, *_CONNECTION_FAILURES)):
        return True

    status = get_status_code(error)
    if status is not None:
        return status >= 500 or status == 429

    message = str(error).lower()
    return any(marker in message for marker in OVERLOAD_MESSAGE_MARKERS)
