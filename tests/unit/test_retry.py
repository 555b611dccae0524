"""Unit tests for retry with exponential backoff."""

import pytest

from aigate.services.error_classifier import is_retryable_error, is_service_failure
from aigate.services.errors import (
    BatchGroupFailure,
    PermanentError,
    RateLimitExceeded,
    ServiceUnavailable,
    TransientError,
    TransportError,
)
from aigate.services.retry import RetryExecutor, RetryOptions, with_retry


class Flaky:
    """Fails a fixed number of times, then succeeds."""

    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or TransportError(503, "service unavailable")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


@pytest.mark.unit
class TestRetryExecutor:
    """Test RetryExecutor.execute."""

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, recording_sleep, sleeps):
        op = Flaky(failures=2)
        executor = RetryExecutor(RetryOptions(max_attempts=3), sleep=recording_sleep)

        assert await executor.execute(op) == "done"
        assert op.calls == 3
        assert len(sleeps) == 2
        stats = executor.get_stats().to_dict()
        assert stats == {"attempts": 3, "retries": 2, "successes": 1, "failures": 0}

    @pytest.mark.asyncio
    async def test_non_retryable_called_once(self, recording_sleep, sleeps):
        op = Flaky(failures=5, error=TransportError(400, "bad request"))
        executor = RetryExecutor(sleep=recording_sleep)

        with pytest.raises(TransportError):
            await executor.execute(op)
        assert op.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_exhausted_attempts_reraise_last_error(self, recording_sleep):
        op = Flaky(failures=10)
        executor = RetryExecutor(RetryOptions(max_attempts=4), sleep=recording_sleep)

        with pytest.raises(TransportError) as exc_info:
            await executor.execute(op)
        assert exc_info.value.status == 503
        assert op.calls == 4

    @pytest.mark.asyncio
    async def test_delays_grow_within_bounds(self, recording_sleep, sleeps):
        options = RetryOptions(
            max_attempts=5, base_delay=1.0, max_delay=5.0, backoff_multiplier=2.0, jitter=0.1
        )
        with pytest.raises(TransportError):
            await RetryExecutor(options, sleep=recording_sleep).execute(Flaky(failures=10))

        assert len(sleeps) == 4
        for attempt, delay in enumerate(sleeps, start=1):
            plain = min(1.0 * 2.0 ** (attempt - 1), 5.0)
            assert plain <= delay <= 5.0
            assert delay <= 1.0 * 2.0 ** (attempt - 1) * 1.1

    @pytest.mark.asyncio
    async def test_custom_predicate(self, recording_sleep):
        op = Flaky(failures=1, error=ValueError("odd"))
        options = RetryOptions(retryable=lambda e: isinstance(e, ValueError))

        assert await with_retry(op, options, sleep=recording_sleep) == "done"
        assert op.calls == 2

    def test_compute_delay_without_jitter(self):
        options = RetryOptions(base_delay=0.5, backoff_multiplier=3.0, jitter=0.0)
        assert options.compute_delay(1) == 0.5
        assert options.compute_delay(3) == 4.5


@pytest.mark.unit
class TestErrorClassification:
    """Test retryable and service-failure classification."""

    @pytest.mark.parametrize(
        "error",
        [
            TransportError(500, "boom"),
            TransportError(502, "bad gateway"),
            TransportError(429, "slow down"),
            TransportError(408, "request timeout"),
            TransportError(None, "Inference request timeout after 60s"),
            TransientError("flaky"),
            ConnectionResetError(),
            TimeoutError(),
        ],
    )
    def test_retryable(self, error):
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            TransportError(400, "bad request"),
            TransportError(401, "unauthorized"),
            PermanentError("invalid prompt"),
            ServiceUnavailable("inference", 10),
            RateLimitExceeded("inference", "alice"),
            ValueError("something else"),
        ],
    )
    def test_not_retryable(self, error):
        assert is_retryable_error(error) is False

    def test_batch_failure_classified_by_cause(self):
        assert is_retryable_error(BatchGroupFailure("x", TransportError(503, "down")))
        assert not is_retryable_error(BatchGroupFailure("x", TransportError(404, "gone")))

    def test_service_failure(self):
        assert is_service_failure(TransportError(503, "down"))
        assert is_service_failure(TransportError(429, "busy"))
        assert is_service_failure(RuntimeError("model is over capacity"))
        assert not is_service_failure(TransportError(400, "bad"))
        assert not is_service_failure(PermanentError("nope", status=500))
        assert not is_service_failure(ValueError("parse"))
