"""Unit tests for the Orchestrator facade."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from aigate.ai.schema import (
    GenerationRequest,
    ModelConfig,
    ModelTier,
    SentimentPayload,
    SentimentResult,
    TextResponse,
)
from aigate.services.batching import BatchConfig
from aigate.services.cache import ContentCache
from aigate.services.circuit_breaker import CircuitBreakerConfig, CircuitState
from aigate.services.errors import (
    RateLimitExceeded,
    ServiceUnavailable,
    TransportError,
)
from aigate.services.orchestrator import (
    Orchestrator,
    close_orchestrator,
    get_orchestrator,
)
from aigate.services.rate_limiter import RateLimitConfig
from aigate.services.registry import ResilienceRegistry
from aigate.services.retry import RetryOptions
from aigate.services.task_queue import TaskStatus
from aigate.settings import Settings


@pytest_asyncio.fixture
async def orchestrator(fake_invoker, clock, recording_sleep):
    registry = ResilienceRegistry(
        breaker_config=CircuitBreakerConfig(
            failure_threshold=2, reset_timeout=timedelta(seconds=60)
        ),
        rate_limit_config=RateLimitConfig(),
        batch_config=BatchConfig(max_wait_time=0.01),
        clock=clock,
    )
    orch = Orchestrator(
        inference=fake_invoker,
        registry=registry,
        cache=ContentCache(clock=clock),
        retry_options=RetryOptions(max_attempts=3, base_delay=0.01, jitter=0.0),
        settings=Settings(),
        sleep=recording_sleep,
    )
    yield orch
    await orch.close()


def _request(prompt: str = "Announce the spring sale", **kwargs) -> GenerationRequest:
    return GenerationRequest(
        system_prompt="You write short social media posts.",
        prompt=prompt,
        user_id=kwargs.pop("user_id", "alice"),
        **kwargs,
    )


@pytest.mark.unit
class TestWithResilience:
    """End-to-end breaker behaviour through the facade."""

    @pytest.mark.asyncio
    async def test_open_fallback_and_recovery(self, orchestrator, clock):
        calls = []

        async def failing():
            calls.append("fail")
            raise TransportError(503, "unavailable")

        async def healthy():
            calls.append("ok")
            return "live"

        async def fallback():
            return "fallback"

        for _ in range(2):
            with pytest.raises(TransportError):
                await orchestrator.with_resilience("svc", failing)
        assert orchestrator.registry.breaker("svc").state == CircuitState.OPEN

        assert await orchestrator.with_resilience("svc", healthy, fallback) == "fallback"
        assert calls == ["fail", "fail"]

        with pytest.raises(ServiceUnavailable):
            await orchestrator.with_resilience("svc", healthy)

        clock.advance(seconds=60)
        for _ in range(3):
            assert await orchestrator.with_resilience("svc", healthy) == "live"
        assert orchestrator.registry.breaker("svc").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_tripping_call_still_fails_then_fallback_serves(self, orchestrator):
        failing_op = AsyncMock(side_effect=RuntimeError("boom"))
        fallback_op = AsyncMock(return_value="from fallback")
        breaker = orchestrator.registry.breaker("X")

        with pytest.raises(RuntimeError):
            await orchestrator.with_resilience("X", failing_op, fallback_op)
        assert breaker.failure_count == 1
        assert breaker.state == CircuitState.CLOSED

        with pytest.raises(RuntimeError):
            await orchestrator.with_resilience("X", failing_op, fallback_op)
        assert breaker.failure_count == 2
        assert breaker.state == CircuitState.OPEN

        assert await orchestrator.with_resilience("X", failing_op, fallback_op) == (
            "from fallback"
        )
        assert failing_op.await_count == 2
        fallback_op.assert_awaited_once()


@pytest.mark.unit
class TestGenerate:
    """Test the generate pipeline."""

    @pytest.mark.asyncio
    async def test_generates_then_serves_from_cache(self, orchestrator, fake_invoker):
        first = await orchestrator.generate(_request())
        assert first.data == TextResponse(text="generated text")
        assert first.from_cache is False
        assert first.tier == ModelTier.SMALL
        assert first.model == "gpt-4o-mini"

        second = await orchestrator.generate(_request("  announce the SPRING sale "))
        assert second.from_cache is True
        assert second.data == first.data
        assert second.cache_key == first.cache_key
        assert len(fake_invoker.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_can_be_bypassed(self, orchestrator, fake_invoker):
        await orchestrator.generate(_request(use_cache=False))
        result = await orchestrator.generate(_request(use_cache=False))
        assert result.from_cache is False
        assert result.cache_key is None
        assert len(fake_invoker.calls) == 2

    @pytest.mark.asyncio
    async def test_force_model(self, orchestrator, fake_invoker):
        result = await orchestrator.generate(
            _request(model_config=ModelConfig(force_model=ModelTier.LARGE))
        )
        assert result.tier == ModelTier.LARGE
        assert fake_invoker.calls[0]["model"] == "gpt-4.1"

    @pytest.mark.asyncio
    async def test_rate_limit_checked_before_upstream(self, orchestrator, fake_invoker):
        orchestrator.registry.rate_limiter.configure(
            "inference", RateLimitConfig(max_requests_per_hour=2)
        )
        await orchestrator.generate(_request("one"))
        await orchestrator.generate(_request("two"))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await orchestrator.generate(_request("three"))
        assert exc_info.value.user_id == "alice"
        assert exc_info.value.limit_type == "hourly"
        assert len(fake_invoker.calls) == 2
        assert orchestrator.get_rate_limit_usage("inference", "alice")["hourly_used"] == 2

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, orchestrator, fake_invoker, sleeps):
        orchestrator.registry.breakers.configure(
            "inference", CircuitBreakerConfig(failure_threshold=5)
        )
        fake_invoker.errors = [TransportError(503, "busy"), TransportError(502, "gateway")]

        result = await orchestrator.generate(_request())

        assert result.data.text == "generated text"
        assert len(fake_invoker.calls) == 3
        assert sleeps == [0.01, 0.02]
        assert orchestrator.registry.breaker("inference").failure_count == 0

    @pytest.mark.asyncio
    async def test_fallback_output_is_not_cached(self, orchestrator, fake_invoker):
        orchestrator.registry.breakers.configure(
            "inference", CircuitBreakerConfig(failure_threshold=5)
        )
        fake_invoker.errors = [TransportError(503, "busy") for _ in range(3)]

        async def canned():
            return TextResponse(text="canned")

        result = await orchestrator.generate(_request(fallback=canned))
        assert result.data.text == "canned"
        assert result.model is None
        assert result.tier is None
        assert len(fake_invoker.calls) == 3

        again = await orchestrator.generate(_request())
        assert again.from_cache is False
        assert again.data.text == "generated text"

    @pytest.mark.asyncio
    async def test_fallback_runs_once_after_retries(self, orchestrator, fake_invoker):
        orchestrator.registry.breakers.configure(
            "inference", CircuitBreakerConfig(failure_threshold=5)
        )
        fake_invoker.errors = [TransportError(503, "busy") for _ in range(3)]
        fallback_error = RuntimeError("fallback down")
        fallback = AsyncMock(side_effect=fallback_error)

        with pytest.raises(TransportError) as exc_info:
            await orchestrator.generate(_request(fallback=fallback))

        fallback.assert_awaited_once()
        assert exc_info.value.status == 503
        assert exc_info.value.__cause__ is fallback_error
        assert len(fake_invoker.calls) == 3

    @pytest.mark.asyncio
    async def test_open_circuit_serves_fallback_without_upstream(
        self, orchestrator, fake_invoker
    ):
        breaker = orchestrator.registry.breaker("inference")
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        fallback = AsyncMock(return_value=TextResponse(text="canned"))

        result = await orchestrator.generate(_request(fallback=fallback))

        assert result.data.text == "canned"
        fallback.assert_awaited_once()
        assert fake_invoker.calls == []

    @pytest.mark.asyncio
    async def test_client_built_from_settings(self):
        settings = Settings(
            inference_base_url="https://custom.test/v1",
            inference_api_key="sk-custom",
            temperature=0.2,
        )
        orch = Orchestrator(settings=settings)
        try:
            assert orch._inference._base_url == "https://custom.test/v1"
            assert orch._inference.default_temperature == 0.2
        finally:
            await orch.close()

    @pytest.mark.asyncio
    async def test_open_circuit_is_not_retried(self, orchestrator, fake_invoker):
        fake_invoker.errors = [TransportError(400, "bad"), TransportError(400, "bad")]
        for prompt in ("a", "b"):
            with pytest.raises(TransportError):
                await orchestrator.generate(_request(prompt))

        with pytest.raises(ServiceUnavailable):
            await orchestrator.generate(_request("c"))
        assert len(fake_invoker.calls) == 2

    @pytest.mark.asyncio
    async def test_background_generation(self, orchestrator):
        handle = orchestrator.generate_in_background(_request())
        assert orchestrator.get_task_status(handle.id) == TaskStatus.PENDING

        result = await orchestrator.wait_for_task(handle.id)
        assert orchestrator.get_task_status(handle.id) == TaskStatus.COMPLETED
        assert orchestrator.get_task_result(handle.id) is result
        assert result.data.text == "generated text"


@pytest.mark.unit
class TestWithBatchingAndRetry:
    """Test batched requests through the facade."""

    @pytest.mark.asyncio
    async def test_batches_concurrent_requests(self, orchestrator, fake_invoker):
        results = await asyncio.gather(
            orchestrator.with_batching_and_retry("sentiment_analysis", {"text": "love it"}),
            orchestrator.with_batching_and_retry(
                "sentiment_analysis", SentimentPayload(text="hate it")
            ),
        )

        assert all(isinstance(r, SentimentResult) for r in results)
        assert len(fake_invoker.calls) == 1
        assert fake_invoker.calls[0]["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_failed_group_is_retried(self, orchestrator, fake_invoker, sleeps):
        fake_invoker.errors = [TransportError(503, "busy")]

        results = await asyncio.gather(
            orchestrator.with_batching_and_retry("viral_scoring", {"content": "post a"}),
            orchestrator.with_batching_and_retry("viral_scoring", {"content": "post b"}),
        )

        assert [r.score for r in results] == [42.0, 42.0]
        assert len(fake_invoker.calls) == 2
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_by_kind(self, orchestrator):
        orchestrator.registry.rate_limiter.configure(
            "comment_response", RateLimitConfig(max_requests_per_hour=1)
        )
        await orchestrator.with_batching_and_retry(
            "comment_response", {"comment": "Nice!"}, user_id="bob"
        )

        with pytest.raises(RateLimitExceeded) as exc_info:
            await orchestrator.with_batching_and_retry(
                "comment_response", {"comment": "Again!"}, user_id="bob"
            )
        assert exc_info.value.service_id == "comment_response"

    @pytest.mark.asyncio
    async def test_kind_mismatch(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.with_batching_and_retry(
                "viral_scoring", SentimentPayload(text="x")
            )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_health_status(orchestrator):
    await orchestrator.generate(_request())
    status = orchestrator.get_health_status()

    assert set(status) >= {
        "circuit_breakers",
        "open_circuits",
        "batching",
        "cache",
        "retry",
        "background_tasks",
    }
    assert status["circuit_breakers"]["inference"]["state"] == "CLOSED"
    assert orchestrator.reset_circuit("inference") is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_global_orchestrator_lifecycle():
    first = get_orchestrator()
    assert get_orchestrator() is first

    await close_orchestrator()
    second = get_orchestrator()
    assert second is not first
    await close_orchestrator()
