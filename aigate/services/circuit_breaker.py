"""
CircuitBreaker - Short-circuits calls to a dependency that keeps failing.

States:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected or routed to a fallback
- HALF_OPEN: up to half_open_max_calls probes test whether the dependency recovered

Transitions:
- CLOSED → OPEN: failure_threshold consecutive failures
- OPEN → HALF_OPEN: first state read once reset_timeout has passed since the last failure
- HALF_OPEN → CLOSED: half_open_max_calls consecutive probe successes
- HALF_OPEN → OPEN: any failed probe
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from aigate.services.error_classifier import is_service_failure
from aigate.services.errors import ServiceUnavailable

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Per-service breaker tuning."""

    failure_threshold: int = 5
    reset_timeout: timedelta = timedelta(seconds=60)
    half_open_max_calls: int = 3  # probes admitted, and successes needed to close


@dataclass
class BreakerSnapshot:
    """Point-in-time view of one breaker."""

    service_id: str
    state: str
    failure_count: int
    success_count: int
    last_failure: str | None
    time_until_reset: float | None


class CircuitBreaker:
    """
    Guards a single service.

    Usage:
        breaker = CircuitBreaker("inference")

        answer = await breaker.execute(
            lambda: client.invoke_model(...),
            fallback=lambda: load_cached_answer(),
        )
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._probes_admitted = 0
        self._last_failure_time: datetime | None = None

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit moves to HALF_OPEN on read."""
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def can_request(self) -> bool:
        """Whether a call may proceed. Admitting a HALF_OPEN probe uses up a slot."""
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.OPEN:
            return False

        if self._probes_admitted >= self.config.half_open_max_calls:
            return False
        self._probes_admitted += 1
        return True

    def record_success(self) -> None:
        if self._state is CircuitState.CLOSED:
            self._failures = 0
            return
        if self._state is CircuitState.HALF_OPEN:
            self._probe_successes += 1
            if self._probe_successes >= self.config.half_open_max_calls:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        # Calls that were already in flight when the circuit opened are not counted
        if self._state is CircuitState.OPEN:
            return

        self._failures += 1
        self._last_failure_time = self._clock()
        if (
            self._state is CircuitState.HALF_OPEN
            or self._failures >= self.config.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """
        Run operation under the breaker.

        A rejected call returns fallback() when one is given. When an admitted
        call fails with a service failure, fallback() is tried once; if the
        fallback also fails, the operation's error is raised.

        Raises:
            ServiceUnavailable: If the call is rejected and no fallback exists
        """
        if not self.can_request():
            if fallback is None:
                raise ServiceUnavailable(
                    self.service_id, self.get_time_until_reset() or 0.0
                )
            logger.debug(f"Circuit '{self.service_id}' rejected call, using fallback")
            return await fallback()

        try:
            result = await operation()
        except Exception as exc:
            self.record_failure()
            if fallback is None or not is_service_failure(exc):
                raise
            logger.warning(
                f"Service '{self.service_id}' failed with {type(exc).__name__}: {exc}; "
                f"trying fallback"
            )
            try:
                return await fallback()
            except Exception as fallback_exc:
                logger.error(f"Fallback for '{self.service_id}' failed: {fallback_exc}")
                raise exc from fallback_exc

        self.record_success()
        return result

    def reset(self) -> None:
        """Force the circuit CLOSED and forget its failure history."""
        self._transition(CircuitState.CLOSED)
        self._last_failure_time = None

    def get_time_until_reset(self) -> float | None:
        """Seconds until an OPEN circuit starts admitting probes."""
        if self._state is not CircuitState.OPEN or self._last_failure_time is None:
            return None
        reopen_at = self._last_failure_time + self.config.reset_timeout
        return max(0.0, (reopen_at - self._clock()).total_seconds())

    def snapshot(self) -> BreakerSnapshot:
        state = self.state
        return BreakerSnapshot(
            service_id=self.service_id,
            state=state.value,
            failure_count=self._failures,
            success_count=self._probe_successes,
            last_failure=(
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            time_until_reset=self.get_time_until_reset(),
        )

    def get_status(self) -> dict[str, Any]:
        return asdict(self.snapshot())

    def _cooldown_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return False
        return self._clock() - self._last_failure_time >= self.config.reset_timeout

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        self._probe_successes = 0
        self._probes_admitted = 0

        if new_state is CircuitState.OPEN:
            logger.warning(
                f"Circuit breaker '{self.service_id}' OPEN after "
                f"{self._failures} failure(s)"
            )
        elif new_state is CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.service_id}' HALF_OPEN, probing")
        else:
            self._failures = 0
            if previous is not CircuitState.CLOSED:
                logger.info(f"Circuit breaker '{self.service_id}' CLOSED")


class CircuitBreakerRegistry:
    """
    One breaker per service, created on first use.

    Usage:
        breakers = CircuitBreakerRegistry()
        breaker = breakers.get("inference")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._default_config = default_config or CircuitBreakerConfig()
        self._overrides: dict[str, CircuitBreakerConfig] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._clock = clock

    def configure(self, service_id: str, config: CircuitBreakerConfig) -> None:
        """Override tuning for one service, including an existing breaker."""
        self._overrides[service_id] = config
        breaker = self._breakers.get(service_id)
        if breaker is not None:
            breaker.config = config

    def get(self, service_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(service_id)
        if breaker is None:
            config = self._overrides.get(service_id, self._default_config)
            breaker = CircuitBreaker(service_id, config, clock=self._clock)
            self._breakers[service_id] = breaker
        return breaker

    def find(self, service_id: str) -> CircuitBreaker | None:
        return self._breakers.get(service_id)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {sid: breaker.get_status() for sid, breaker in self._breakers.items()}

    def get_open_circuits(self) -> list[str]:
        return [
            sid
            for sid, breaker in self._breakers.items()
            if breaker.state is CircuitState.OPEN
        ]

    def reset(self, service_id: str) -> bool:
        """Reset one breaker. Returns False if the service has none yet."""
        breaker = self._breakers.get(service_id)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breaker(s)")
