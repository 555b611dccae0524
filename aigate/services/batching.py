"""
BatchCollector - Debounced batching of same-kind requests into one upstream call.

Callers submit typed payloads and await their own result. Pending requests
are flushed when the batch reaches max_batch_size or when no new request has
arrived for max_wait_time. Each flushed batch is grouped by (kind, model);
every group makes exactly one upstream call and its structured result is
fanned back to the individual callers. A failed group rejects all of its
members.

The pending list is captured and cleared without yielding to the event loop,
so requests arriving while a batch is in flight start a fresh batch.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from aigate.ai.schema import Priority
from aigate.services.errors import BatchGroupFailure

GroupResult = dict[str, Any]
Dispatcher = Callable[[str, Callable[[], Awaitable[GroupResult]]], Awaitable[GroupResult]]


@dataclass
class BatchConfig:
    """Batching configuration."""

    max_batch_size: int = 5
    max_wait_time: float = 2.0  # seconds of quiet before a partial batch flushes
    max_payload_chars: int = 4000  # larger payloads run inline


@dataclass
class BatchRequest:
    """One caller's request, owned by the collector until its future settles."""

    payload: BaseModel
    model: str
    future: asyncio.Future[Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=datetime.now)
    priority: Priority = Priority.NORMAL
    user_id: str | None = None
    real_time: bool = False

    @property
    def kind(self) -> str:
        return self.payload.kind  # type: ignore[attr-defined]

    def resolve(self, result: Any) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


class BatchHandler(ABC):
    """Turns a group of same-kind requests into one upstream call."""

    kind: str
    system_prompt: str = ""

    @abstractmethod
    async def process(self, requests: list[BatchRequest], model: str) -> GroupResult:
        """Return a mapping of request id to that request's result."""
        ...

    def describe(self, payload: BaseModel) -> str:
        """Text used to size the payload for model selection."""
        return payload.model_dump_json()


async def _direct_dispatch(
    kind: str, operation: Callable[[], Awaitable[GroupResult]]
) -> GroupResult:
    return await operation()


class BatchCollector:
    """
    Accumulates requests and dispatches them in groups.

    Usage:
        collector = BatchCollector(BatchConfig(max_batch_size=5))
        collector.register_handler(SentimentBatchHandler(client))

        result = await collector.submit(SentimentPayload(text="..."), model="gpt-4o-mini")
    """

    def __init__(
        self,
        config: BatchConfig | None = None,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._config = config or BatchConfig()
        self._clock = clock
        self._dispatcher = dispatcher or _direct_dispatch
        self._handlers: dict[str, BatchHandler] = {}
        self._pending: list[BatchRequest] = []
        self._timer: asyncio.TimerHandle | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stats = BatchStats()

    @property
    def config(self) -> BatchConfig:
        return self._config

    def set_dispatcher(self, dispatcher: Dispatcher) -> None:
        """Wrap every upstream group call, e.g. with retry and a circuit breaker."""
        self._dispatcher = dispatcher

    def register_handler(self, handler: BatchHandler) -> None:
        self._handlers[handler.kind] = handler
        logger.debug(f"Registered batch handler: {handler.kind}")

    def get_handler(self, kind: str) -> BatchHandler | None:
        return self._handlers.get(kind)

    def should_batch_request(
        self,
        payload: BaseModel,
        priority: Priority = Priority.NORMAL,
        real_time: bool = False,
    ) -> bool:
        """Only registered, normal-priority, non-real-time, small payloads are batched."""
        if getattr(payload, "kind", None) not in self._handlers:
            return False
        if priority == Priority.HIGH or real_time:
            return False
        return len(payload.model_dump_json()) <= self._config.max_payload_chars

    async def submit(
        self,
        payload: BaseModel,
        model: str,
        user_id: str | None = None,
        priority: Priority = Priority.NORMAL,
        real_time: bool = False,
    ) -> Any:
        """
        Submit a request and wait for its own result.

        Only kinds with a registered handler are accepted. Among those,
        requests that are not batchable run inline immediately.

        Raises:
            KeyError: If no handler is registered for the payload kind
            BatchGroupFailure: If the batched group this request joined failed
        """
        kind = getattr(payload, "kind", None)
        if kind not in self._handlers:
            raise KeyError(f"No batch handler registered for '{kind}'")

        loop = asyncio.get_running_loop()
        request = BatchRequest(
            payload=payload,
            model=model,
            future=loop.create_future(),
            timestamp=self._clock(),
            priority=priority,
            user_id=user_id,
            real_time=real_time,
        )
        self._stats.submitted += 1

        if not self.should_batch_request(payload, priority, real_time):
            self._stats.inline += 1
            logger.debug(f"Running '{kind}' request {request.id[:8]} inline")
            return await self._run_inline(request)

        self._enqueue(request)
        return await request.future

    async def process_batch(self, batch: list[BatchRequest] | None = None) -> None:
        """Dispatch the given batch, or the next pending batch if none is given."""
        if batch is None:
            batch = self._take_batch()
        if not batch:
            return

        groups: dict[tuple[str, str], list[BatchRequest]] = {}
        for request in batch:
            groups.setdefault((request.kind, request.model), []).append(request)

        self._stats.batches += 1
        logger.debug(
            f"Processing batch of {len(batch)} request(s) in {len(groups)} group(s)"
        )
        await asyncio.gather(
            *(
                self._dispatch_group(kind, model, requests)
                for (kind, model), requests in groups.items()
            )
        )

    async def flush(self) -> None:
        """Dispatch everything pending and wait for all in-flight batches."""
        while self._pending:
            self._spawn(self._take_batch())
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        self._cancel_timer()

    def pending_count(self) -> int:
        return len(self._pending)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> "BatchStats":
        self._stats.pending = len(self._pending)
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    # Collection

    def _enqueue(self, request: BatchRequest) -> None:
        self._pending.append(request)
        if len(self._pending) >= self._config.max_batch_size:
            self._spawn(self._take_batch())
        else:
            self._arm_timer()

    def _take_batch(self) -> list[BatchRequest]:
        """Capture and clear up to max_batch_size pending requests. Never yields."""
        self._cancel_timer()
        size = self._config.max_batch_size
        batch = self._pending[:size]
        del self._pending[:size]
        if self._pending:
            self._arm_timer()
        return batch

    def _spawn(self, batch: list[BatchRequest]) -> None:
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self.process_batch(batch))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._config.max_wait_time, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._spawn(self._take_batch())

    # Dispatch

    async def _dispatch_group(
        self, kind: str, model: str, requests: list[BatchRequest]
    ) -> None:
        handler = self._handlers[kind]
        started = time.monotonic()

        try:
            results = await self._dispatcher(
                kind, lambda: handler.process(requests, model)
            )
            missing = [r.id for r in requests if r.id not in results]
            if missing:
                raise KeyError(
                    f"Upstream result is missing {len(missing)} of {len(requests)} request ids"
                )
        except Exception as exc:
            self._stats.failed_groups += 1
            logger.error(
                f"Batch group '{kind}' ({len(requests)} requests, model={model}) failed: "
                f"{type(exc).__name__}: {exc}"
            )
            failure = BatchGroupFailure(kind, exc, size=len(requests))
            failure.__cause__ = exc
            for request in requests:
                request.reject(failure)
            return

        self._stats.upstream_calls += 1
        logger.debug(
            f"Batch group '{kind}' resolved {len(requests)} request(s) "
            f"in {time.monotonic() - started:.2f}s"
        )
        for request in requests:
            request.resolve(results[request.id])

    async def _run_inline(self, request: BatchRequest) -> Any:
        handler = self._handlers[request.kind]
        results = await self._dispatcher(
            request.kind, lambda: handler.process([request], request.model)
        )
        self._stats.upstream_calls += 1
        if request.id not in results:
            raise KeyError(f"Upstream result is missing request id {request.id}")
        return results[request.id]


class BatchStats:
    """Statistics for request batching."""

    def __init__(self):
        self.submitted: int = 0
        self.inline: int = 0  # Requests that bypassed batching
        self.batches: int = 0
        self.upstream_calls: int = 0
        self.failed_groups: int = 0
        self.pending: int = 0
        self.in_flight: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "submitted": self.submitted,
            "inline": self.inline,
            "batches": self.batches,
            "upstream_calls": self.upstream_calls,
            "failed_groups": self.failed_groups,
            "pending": self.pending,
            "in_flight": self.in_flight,
        }
