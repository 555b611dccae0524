"""
Orchestrator - Unified entry point for resilient, batched, cached inference.

Combines:
- RateLimiter for per-user fairness (checked before anything else)
- ContentCache for identical generations within a freshness window
- ModelSelector for tier routing
- RetryExecutor + CircuitBreaker around every upstream call
- BatchCollector for mergeable request kinds
- BackgroundTaskQueue for fire-and-forget generations
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel

from aigate.ai.handlers import ModelInvoker, default_handlers
from aigate.ai.llm import InferenceClient
from aigate.ai.model_selector import resolve_model_name, select_model
from aigate.ai.schema import (
    ChatMessage,
    GenerationRequest,
    GenerationResult,
    ModelConfig,
    Priority,
    parse_payload,
)
from aigate.services.batching import GroupResult
from aigate.services.cache import ContentCache
from aigate.services.error_classifier import is_service_failure
from aigate.services.errors import RateLimitExceeded, ServiceUnavailable
from aigate.services.rate_limiter import RateLimitResult
from aigate.services.registry import ResilienceRegistry
from aigate.services.retry import RetryExecutor, RetryOptions, SleepFunc
from aigate.services.task_queue import BackgroundTaskQueue, TaskHandle, TaskStatus
from aigate.settings import Settings, global_settings

T = TypeVar("T")


class Orchestrator:
    """
    Services inference requests end-to-end.

    Usage:
        async with Orchestrator() as orchestrator:
            result = await orchestrator.generate(GenerationRequest(
                system_prompt="You write LinkedIn posts.",
                prompt="Announce our spring sale",
                user_id="user-42",
            ))

            sentiment = await orchestrator.with_batching_and_retry(
                "sentiment_analysis", {"text": "Love this!"}
            )
    """

    def __init__(
        self,
        inference: ModelInvoker | None = None,
        registry: ResilienceRegistry | None = None,
        cache: ContentCache | None = None,
        retry_options: RetryOptions | None = None,
        settings: Settings | None = None,
        sleep: SleepFunc = asyncio.sleep,
        debug: bool = False,
    ):
        self._settings = settings or global_settings
        self._owns_inference = inference is None
        self._inference: ModelInvoker = inference or InferenceClient(
            settings=self._settings
        )

        self.registry = registry or ResilienceRegistry.from_settings(self._settings)
        self.cache = cache or ContentCache(
            default_max_age_hours=self._settings.cache_max_age_hours, debug=debug
        )
        self._retry = RetryExecutor(
            retry_options
            or RetryOptions(
                max_attempts=self._settings.retry_max_attempts,
                base_delay=self._settings.retry_base_delay,
                max_delay=self._settings.retry_max_delay,
                backoff_multiplier=self._settings.retry_backoff_multiplier,
                jitter=self._settings.retry_jitter,
            ),
            sleep=sleep,
        )
        self._tasks = BackgroundTaskQueue(debug=debug)

        batcher = self.registry.batcher
        batcher.set_dispatcher(self._dispatch_batch_group)
        for handler in default_handlers(self._inference):
            if batcher.get_handler(handler.kind) is None:
                batcher.register_handler(handler)

    @property
    def inference_service_id(self) -> str:
        return self._settings.inference_service_id

    # Facade entry points

    async def with_resilience(
        self,
        service_id: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """
        Run operation behind the service's circuit breaker.

        Raises:
            ServiceUnavailable: If the circuit is open and no fallback is given
        """
        return await self.registry.breaker(service_id).execute(operation, fallback)

    async def with_batching_and_retry(
        self,
        kind: str,
        payload: BaseModel | dict[str, Any],
        model_config: ModelConfig | None = None,
        user_id: str | None = None,
        priority: Priority = Priority.NORMAL,
        real_time: bool = False,
    ) -> Any:
        """
        Submit a mergeable request; it is batched when eligible, run inline otherwise.

        Raises:
            RateLimitExceeded: If user_id is over quota for this request kind
            BatchGroupFailure: If the batch this request joined failed
        """
        if isinstance(payload, dict):
            payload = parse_payload({**payload, "kind": kind})
        elif getattr(payload, "kind", None) != kind:
            raise ValueError(
                f"Payload kind '{getattr(payload, 'kind', None)}' does not match '{kind}'"
            )

        batcher = self.registry.batcher
        handler = batcher.get_handler(kind)
        if handler is None:
            raise KeyError(f"No batch handler registered for '{kind}'")

        if user_id is not None:
            self._enforce_rate_limit(kind, user_id)
            self.registry.rate_limiter.record_rate_limit_request(kind, user_id)

        config = model_config or ModelConfig()
        tier = select_model(
            handler.system_prompt,
            handler.describe(payload),
            task_type=config.task_type or kind,
            return_type=getattr(handler, "response_type", None),
            force_model=config.force_model,
        )
        model = resolve_model_name(tier, self._settings)

        return await batcher.submit(
            payload,
            model=model,
            user_id=user_id,
            priority=priority,
            real_time=real_time,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Rate-limit, serve from cache, or route, call and cache one generation.

        Raises:
            RateLimitExceeded: Before any upstream attempt when the user is over quota
            ServiceUnavailable: If the circuit is open and the request has no fallback
            TransportError: When retries are exhausted or the error is not retryable
        """
        service_id = request.service_id or self.inference_service_id
        self._enforce_rate_limit(service_id, request.user_id)

        cache_key = None
        if request.use_cache:
            cache_key = self.cache.generate_key(
                f"{request.system_prompt}\n{request.prompt}",
                context={
                    "context": request.context,
                    "return_type": request.return_type.__name__,
                    "history": [m.model_dump(mode="json") for m in request.history],
                },
            )
            cached = await self.cache.get(cache_key, request.max_age_hours)
            if cached is not None:
                logger.debug(f"Serving generation for '{request.user_id}' from cache")
                return GenerationResult(
                    data=request.return_type.model_validate(cached),
                    from_cache=True,
                    cache_key=cache_key,
                )

        self.registry.rate_limiter.record_rate_limit_request(service_id, request.user_id)

        config = request.model_config
        tier = select_model(
            request.system_prompt,
            request.prompt,
            task_type=config.task_type,
            return_type=request.return_type,
            force_model=config.force_model,
        )
        model = resolve_model_name(tier, self._settings)
        messages = [*request.history, ChatMessage(content=request.prompt)]
        logger.info(
            f"Generating for '{request.user_id}' on '{service_id}' "
            f"with {tier.value} model {model}"
        )

        used_fallback = False

        async def tracked_fallback() -> Any:
            nonlocal used_fallback
            used_fallback = True
            return await request.fallback()  # type: ignore[misc]

        data = await self._guarded(
            service_id,
            lambda: self._inference.invoke_model(
                system=request.system_prompt,
                messages=messages,
                return_type=request.return_type,
                model=model,
                temperature=config.temperature,
                on_progress=request.on_progress,
            ),
            tracked_fallback if request.fallback is not None else None,
        )

        if used_fallback:
            logger.warning(f"Served fallback content for '{request.user_id}'")
        elif cache_key and isinstance(data, BaseModel):
            try:
                await self.cache.set(
                    cache_key, data.model_dump(mode="json"), owner_id=request.user_id
                )
            except Exception as e:
                logger.warning(f"Failed to cache generation {cache_key[:12]}...: {e}")

        return GenerationResult(
            data=data,
            model=None if used_fallback else model,
            tier=None if used_fallback else tier,
            from_cache=False,
            cache_key=cache_key,
        )

    def generate_in_background(self, request: GenerationRequest) -> TaskHandle:
        """Run generate(request) as a background task."""
        return self._tasks.enqueue(lambda: self.generate(request))

    def get_task_status(self, task_id: str) -> TaskStatus:
        return self._tasks.status(task_id)

    def get_task_result(self, task_id: str) -> Any:
        return self._tasks.result(task_id)

    async def wait_for_task(self, task_id: str) -> Any:
        return await self._tasks.wait(task_id)

    def check_rate_limit(self, service_id: str, user_id: str) -> RateLimitResult:
        return self.registry.rate_limiter.check_rate_limit(service_id, user_id)

    # Internals

    def _enforce_rate_limit(self, service_id: str, user_id: str) -> None:
        result = self.registry.rate_limiter.check_rate_limit(service_id, user_id)
        if not result.allowed:
            raise RateLimitExceeded(
                service_id, user_id, result.reset_time, result.limit_type
            )

    async def _guarded(
        self,
        service_id: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """
        Retry around the circuit breaker, so every attempt counts toward it.

        The fallback runs at most once, after retries are exhausted or the
        circuit rejected the call. If it fails, the original error is raised.
        """
        breaker = self.registry.breaker(service_id)
        try:
            return await self._retry.execute(lambda: breaker.execute(operation))
        except Exception as exc:
            if fallback is None or not (
                isinstance(exc, ServiceUnavailable) or is_service_failure(exc)
            ):
                raise
            logger.warning(
                f"Service '{service_id}' unavailable ({type(exc).__name__}: {exc}), "
                f"using fallback"
            )
            try:
                return await fallback()
            except Exception as fallback_exc:
                logger.error(f"Fallback for '{service_id}' failed: {fallback_exc}")
                raise exc from fallback_exc

    async def _dispatch_batch_group(
        self, kind: str, operation: Callable[[], Awaitable[GroupResult]]
    ) -> GroupResult:
        return await self._guarded(self.inference_service_id, operation)

    # Lifecycle

    async def close(self) -> None:
        """Flush pending batches, cancel background work and close the client."""
        await self.registry.close()
        await self._tasks.cancel_all()
        if self._owns_inference and isinstance(self._inference, InferenceClient):
            await self._inference.close()
        logger.debug("Orchestrator closed")

    async def __aenter__(self) -> "Orchestrator":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of all resilience components."""
        return {
            **self.registry.get_status(),
            "cache": self.cache.get_stats().to_dict(),
            "retry": self._retry.get_stats().to_dict(),
            "background_tasks": self._tasks.get_stats().to_dict(),
        }

    def get_rate_limit_usage(self, service_id: str, user_id: str) -> dict[str, Any]:
        return self.registry.rate_limiter.get_usage(service_id, user_id)

    def reset_circuit(self, service_id: str) -> bool:
        """Reset circuit breaker for a service."""
        return self.registry.breakers.reset(service_id)


# Global orchestrator instance
_global_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    """Get the global orchestrator instance."""
    global _global_orchestrator
    if _global_orchestrator is None:
        _global_orchestrator = Orchestrator()
    return _global_orchestrator


async def close_orchestrator() -> None:
    """Close the global orchestrator."""
    global _global_orchestrator
    if _global_orchestrator:
        await _global_orchestrator.close()
        _global_orchestrator = None
