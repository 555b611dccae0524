"""
Service layer infrastructure - resilience patterns for inference calls.

Provides:
- CircuitBreaker: Short-circuits calls to failing services
- RateLimiter: Per-user hourly/daily request caps
- RetryExecutor: Exponential backoff with jitter
- ContentCache: Content-addressed cache with read-time expiry
- BatchCollector: Debounced batching with fan-out of results
- BackgroundTaskQueue: Fire-and-forget work with pollable status
- ResilienceRegistry: Owner of all per-service state

The Orchestrator facade lives in aigate.services.orchestrator.
"""

from aigate.services.errors import (
    BatchGroupFailure,
    CacheError,
    PermanentError,
    RateLimitExceeded,
    RequestTimeoutError,
    ResponseValidationError,
    ServiceError,
    ServiceUnavailable,
    TaskNotFoundError,
    TransientError,
    TransportError,
    UpstreamConnectionError,
)
from aigate.services.batching import BatchCollector, BatchConfig, BatchHandler
from aigate.services.cache import CacheStatus, ContentCache, MemoryCacheStore
from aigate.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from aigate.services.rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult
from aigate.services.registry import ResilienceRegistry
from aigate.services.retry import RetryExecutor, RetryOptions, with_retry
from aigate.services.task_queue import BackgroundTaskQueue, TaskStatus

__all__ = [
    # Errors
    "ServiceError",
    "TransientError",
    "PermanentError",
    "TransportError",
    "RequestTimeoutError",
    "UpstreamConnectionError",
    "ResponseValidationError",
    "CacheError",
    "ServiceUnavailable",
    "RateLimitExceeded",
    "BatchGroupFailure",
    "TaskNotFoundError",
    # Batching
    "BatchCollector",
    "BatchConfig",
    "BatchHandler",
    # Cache
    "ContentCache",
    "CacheStatus",
    "MemoryCacheStore",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Rate Limiter
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitResult",
    # Retry
    "RetryExecutor",
    "RetryOptions",
    "with_retry",
    # Tasks / Registry
    "BackgroundTaskQueue",
    "TaskStatus",
    "ResilienceRegistry",
]
