"""
RateLimiter - Per-service sliding-window caps on a single user's request volume.

Each service keeps one ordered log of (timestamp, user_id) entries. A check
counts the user's entries inside the trailing hour and day windows; recording
is a separate step the caller takes only after deciding to proceed.
"""

import bisect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


@dataclass
class RateLimitConfig:
    """Configuration for one service's rate limits."""

    max_requests_per_hour: int = 10
    max_requests_per_day: int = 50
    cleanup_interval: timedelta = timedelta(minutes=5)


@dataclass
class RateLimitResult:
    """Outcome of a rate-limit check."""

    allowed: bool
    reset_time: datetime | None = None
    limit_type: str | None = None  # 'hourly' | 'daily'


@dataclass
class RateLimitState:
    """Request log for one service, sorted ascending by timestamp."""

    requests: deque[tuple[datetime, str]] = field(default_factory=deque)
    last_cleanup: datetime | None = None


class RateLimiter:
    """
    Sliding-window rate limiter keyed by service and user.

    Usage:
        limiter = RateLimiter()

        result = limiter.check_rate_limit("inference", user_id)
        if not result.allowed:
            raise RateLimitExceeded("inference", user_id, result.reset_time)

        limiter.record_rate_limit_request("inference", user_id)
    """

    def __init__(
        self,
        default_config: RateLimitConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._default_config = default_config or RateLimitConfig()
        self._configs: dict[str, RateLimitConfig] = {}
        self._states: dict[str, RateLimitState] = {}
        self._clock = clock

    def configure(self, service_id: str, config: RateLimitConfig) -> None:
        """Override limits for one service."""
        self._configs[service_id] = config

    def get_config(self, service_id: str) -> RateLimitConfig:
        return self._configs.get(service_id, self._default_config)

    def _get_state(self, service_id: str) -> RateLimitState:
        if service_id not in self._states:
            self._states[service_id] = RateLimitState()
        return self._states[service_id]

    def check_rate_limit(self, service_id: str, user_id: str) -> RateLimitResult:
        """Check whether user_id may issue another request to service_id."""
        config = self.get_config(service_id)
        state = self._get_state(service_id)
        now = self._clock()
        self._maybe_cleanup(state, config, now)

        for window, limit, limit_type in (
            (HOUR, config.max_requests_per_hour, "hourly"),
            (DAY, config.max_requests_per_day, "daily"),
        ):
            in_window = self._user_requests_since(state, user_id, now - window)
            if len(in_window) >= limit:
                reset_time = in_window[0] + window
                logger.info(
                    f"Rate limit hit for user '{user_id}' on '{service_id}': "
                    f"{len(in_window)}/{limit} {limit_type}, resets at {reset_time.isoformat()}"
                )
                return RateLimitResult(
                    allowed=False, reset_time=reset_time, limit_type=limit_type
                )

        return RateLimitResult(allowed=True)

    def record_rate_limit_request(self, service_id: str, user_id: str) -> None:
        """Record that user_id issued a request to service_id now."""
        state = self._get_state(service_id)
        entry = (self._clock(), user_id)
        if state.requests and state.requests[-1][0] > entry[0]:
            # Clock went backwards; keep the log sorted
            ordered = list(state.requests)
            bisect.insort(ordered, entry)
            state.requests = deque(ordered)
        else:
            state.requests.append(entry)

    def get_usage(self, service_id: str, user_id: str) -> dict[str, Any]:
        """Get remaining hourly and daily quota for a user."""
        config = self.get_config(service_id)
        state = self._get_state(service_id)
        now = self._clock()
        hourly = len(self._user_requests_since(state, user_id, now - HOUR))
        daily = len(self._user_requests_since(state, user_id, now - DAY))
        return {
            "service_id": service_id,
            "user_id": user_id,
            "hourly_used": hourly,
            "hourly_remaining": max(0, config.max_requests_per_hour - hourly),
            "daily_used": daily,
            "daily_remaining": max(0, config.max_requests_per_day - daily),
        }

    def reset(self, service_id: str | None = None) -> None:
        """Forget recorded requests for one service, or for all of them."""
        if service_id is None:
            self._states.clear()
        else:
            self._states.pop(service_id, None)

    def tracked_request_count(self, service_id: str) -> int:
        state = self._states.get(service_id)
        return len(state.requests) if state else 0

    @staticmethod
    def _user_requests_since(
        state: RateLimitState, user_id: str, cutoff: datetime
    ) -> list[datetime]:
        """Timestamps (oldest first) of user_id's requests strictly after cutoff."""
        return [ts for ts, uid in state.requests if uid == user_id and ts > cutoff]

    def _maybe_cleanup(
        self, state: RateLimitState, config: RateLimitConfig, now: datetime
    ) -> None:
        """Drop entries older than a day, at most once per cleanup_interval."""
        if state.last_cleanup and now - state.last_cleanup < config.cleanup_interval:
            return
        state.last_cleanup = now

        cutoff = now - DAY
        removed = 0
        while state.requests and state.requests[0][0] <= cutoff:
            state.requests.popleft()
            removed += 1
        if removed:
            logger.debug(f"Rate limiter pruned {removed} expired entries")
