"""Pytest configuration and fixtures."""

import json
from datetime import datetime, timedelta
from typing import Any, Callable

import pytest
from pydantic import BaseModel

from aigate.ai.schema import (
    ChatMessage,
    CommentReplyBatchResponse,
    SentimentBatchResponse,
    TextResponse,
    ViralScoreBatchResponse,
)


class FakeClock:
    """Controllable replacement for datetime.now."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeInvoker:
    """In-memory stand-in for InferenceClient.invoke_model."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.errors: list[BaseException] = []  # raised (in order) before answering
        self.text = "generated text"

    async def invoke_model(
        self,
        system: str,
        messages: list[ChatMessage],
        return_type: type[BaseModel],
        model: str,
        temperature: float | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> BaseModel:
        self.calls.append(
            {
                "system": system,
                "messages": messages,
                "return_type": return_type,
                "model": model,
                "temperature": temperature,
            }
        )
        if self.errors:
            raise self.errors.pop(0)

        if return_type is TextResponse:
            return TextResponse(text=self.text)

        items = json.loads(messages[-1].content)["items"]
        if return_type is SentimentBatchResponse:
            results = [
                {"id": i["id"], "sentiment": "positive", "score": 0.9} for i in items
            ]
        elif return_type is CommentReplyBatchResponse:
            results = [
                {"id": i["id"], "reply": f"Thanks for: {i['comment']}", "tone": "warm"}
                for i in items
            ]
        elif return_type is ViralScoreBatchResponse:
            results = [
                {"id": i["id"], "score": 42.0, "reasons": ["hook"]} for i in items
            ]
        else:
            raise AssertionError(f"Unexpected return type {return_type}")
        return return_type.model_validate({"results": results})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def recording_sleep(sleeps: list[float]):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep
