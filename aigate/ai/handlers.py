"""
Batch handlers - one upstream inference call per group of same-kind requests.

Each handler packs its group into a single JSON message with one item per
request id, asks the model for a keyed list of results and splits that list
back into per-request results.
"""

import json
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel

from aigate.ai.schema import (
    ChatMessage,
    CommentReply,
    CommentReplyBatchResponse,
    SentimentBatchResponse,
    SentimentResult,
    ViralScore,
    ViralScoreBatchResponse,
)
from aigate.services.batching import BatchHandler, BatchRequest, GroupResult

T = TypeVar("T", bound=BaseModel)


class ModelInvoker(Protocol):
    async def invoke_model(
        self,
        system: str,
        messages: list[ChatMessage],
        return_type: type[T],
        model: str,
        temperature: float | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> T: ...


class InferenceBatchHandler(BatchHandler):
    """Shared pack/call/split logic for handlers backed by invoke_model."""

    response_type: type[BaseModel]
    result_type: type[BaseModel]
    temperature: float | None = None

    def __init__(self, invoker: ModelInvoker):
        self._invoker = invoker

    def build_item(self, request: BatchRequest) -> dict[str, Any]:
        return request.payload.model_dump(exclude={"kind"})

    async def process(self, requests: list[BatchRequest], model: str) -> GroupResult:
        items = [{"id": r.id, **self.build_item(r)} for r in requests]
        message = ChatMessage(
            content=json.dumps({"items": items}, ensure_ascii=False),
        )

        response = await self._invoker.invoke_model(
            system=self.system_prompt,
            messages=[message],
            return_type=self.response_type,
            model=model,
            temperature=self.temperature,
        )

        return {
            item.id: self.result_type.model_validate(item.model_dump(exclude={"id"}))
            for item in response.results  # type: ignore[attr-defined]
        }


class SentimentBatchHandler(InferenceBatchHandler):
    kind = "sentiment_analysis"
    response_type = SentimentBatchResponse
    result_type = SentimentResult
    temperature = 0.0
    system_prompt = (
        "You classify the sentiment of social media comments. "
        "For every item return its id, a sentiment of positive, neutral or "
        "negative, and a score between -1 and 1."
    )


class CommentReplyBatchHandler(InferenceBatchHandler):
    kind = "comment_response"
    response_type = CommentReplyBatchResponse
    result_type = CommentReply
    system_prompt = (
        "You write short replies to comments on a brand's social media posts. "
        "Match each item's brand_voice, stay on topic with its post_context and "
        "never invent facts. For every item return its id, the reply text and "
        "the tone you used."
    )


class ViralScoreBatchHandler(InferenceBatchHandler):
    kind = "viral_scoring"
    response_type = ViralScoreBatchResponse
    result_type = ViralScore
    temperature = 0.2
    system_prompt = (
        "You estimate how likely a social media post is to go viral on its "
        "platform. For every item return its id, a score from 0 to 100 and up "
        "to three short reasons."
    )


def default_handlers(invoker: ModelInvoker) -> list[BatchHandler]:
    return [
        SentimentBatchHandler(invoker),
        CommentReplyBatchHandler(invoker),
        ViralScoreBatchHandler(invoker),
    ]
