"""
Service layer exceptions.
"""

from datetime import datetime


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class TransientError(ServiceError):
    """Network, timeout, 5xx or 429 failure. Safe to retry."""

    pass


class PermanentError(ServiceError):
    """Non-retryable failure such as a 4xx other than 408/429."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        service_id: str | None = None,
    ):
        self.status = status
        super().__init__(message, service_id=service_id)


class TransportError(ServiceError):
    """Upstream inference call failed at the HTTP/transport level."""

    def __init__(
        self,
        status: int | None,
        message: str,
        service_id: str | None = None,
    ):
        self.status = status
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(f"{prefix}{message}", service_id=service_id)


class RequestTimeoutError(TransportError, TransientError):
    """Inference request timed out before a response arrived."""

    def __init__(self, timeout: float, service_id: str | None = None):
        self.timeout = timeout
        super().__init__(
            None, f"Inference request timeout after {timeout}s", service_id=service_id
        )


class UpstreamConnectionError(TransportError, TransientError):
    """Connection to the inference service failed or was reset."""

    def __init__(self, message: str, service_id: str | None = None):
        super().__init__(None, f"network error: {message}", service_id=service_id)


class ResponseValidationError(ServiceError):
    """Upstream response did not match the expected schema."""

    pass


class CacheError(ServiceError):
    """Cache operation failed."""

    pass


class ServiceUnavailable(ServiceError):
    """Circuit breaker is open and no fallback was supplied."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class RateLimitExceeded(ServiceError):
    """User exceeded their request quota for a service."""

    def __init__(
        self,
        service_id: str,
        user_id: str,
        reset_time: datetime | None = None,
        limit_type: str | None = None,
    ):
        self.user_id = user_id
        self.reset_time = reset_time
        self.limit_type = limit_type
        msg = f"Rate limit exceeded for user '{user_id}' on service '{service_id}'"
        if limit_type:
            msg += f" ({limit_type} limit)"
        if reset_time:
            msg += f", resets at {reset_time.isoformat()}"
        super().__init__(msg, service_id=service_id)


class BatchGroupFailure(ServiceError):
    """A batch group's upstream call failed; every member is rejected."""

    def __init__(self, kind: str, cause: BaseException, size: int = 0):
        self.kind = kind
        self.cause = cause
        self.size = size
        super().__init__(
            f"Batch of {size} '{kind}' request(s) failed: "
            f"{type(cause).__name__}: {cause}"
        )


class TaskNotFoundError(ServiceError):
    """No background task is registered under the given id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Unknown background task '{task_id}'")
