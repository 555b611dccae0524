"""
ResilienceRegistry - Owns the per-service breaker and rate-limit state plus the batch collector.

One instance replaces what would otherwise be process-wide globals, so tests
and embedding applications control its lifecycle explicitly.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from aigate.services.batching import BatchCollector, BatchConfig
from aigate.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from aigate.services.rate_limiter import RateLimitConfig, RateLimiter
from aigate.settings import Settings, global_settings


class ResilienceRegistry:
    def __init__(
        self,
        breaker_config: CircuitBreakerConfig | None = None,
        rate_limit_config: RateLimitConfig | None = None,
        batch_config: BatchConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.breakers = CircuitBreakerRegistry(breaker_config, clock=clock)
        self.rate_limiter = RateLimiter(rate_limit_config, clock=clock)
        self.batcher = BatchCollector(batch_config, clock=clock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
    ) -> "ResilienceRegistry":
        settings = settings or global_settings
        return cls(
            breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.cb_failure_threshold,
                reset_timeout=timedelta(seconds=settings.cb_reset_timeout_seconds),
                half_open_max_calls=settings.cb_half_open_max_calls,
            ),
            rate_limit_config=RateLimitConfig(
                max_requests_per_hour=settings.rate_limit_per_hour,
                max_requests_per_day=settings.rate_limit_per_day,
                cleanup_interval=timedelta(minutes=settings.rate_limit_cleanup_minutes),
            ),
            batch_config=BatchConfig(
                max_batch_size=settings.batch_max_size,
                max_wait_time=settings.batch_max_wait_ms / 1000,
                max_payload_chars=settings.batch_max_payload_chars,
            ),
        )

    def breaker(self, service_id: str) -> CircuitBreaker:
        return self.breakers.get(service_id)

    def get_status(self) -> dict[str, Any]:
        return {
            "circuit_breakers": self.breakers.get_all_status(),
            "open_circuits": self.breakers.get_open_circuits(),
            "batching": self.batcher.get_stats().to_dict(),
        }

    def reset(self) -> None:
        """Close every breaker and forget all rate-limit history."""
        self.breakers.reset_all()
        self.rate_limiter.reset()

    async def close(self) -> None:
        await self.batcher.close()
