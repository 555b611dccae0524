"""
Typed payloads, upstream response shapes and request/result containers.

Batchable request kinds form a discriminated union on ``kind``; each kind has
a matching per-item result model and a batch response model the inference
service must return.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ModelTier(str, Enum):
    """Inference tiers, cheapest first."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: Role = Role.USER
    content: str


# Batchable payloads


class SentimentPayload(BaseModel):
    kind: Literal["sentiment_analysis"] = "sentiment_analysis"
    text: str


class CommentReplyPayload(BaseModel):
    kind: Literal["comment_response"] = "comment_response"
    comment: str
    author: str | None = None
    post_context: str = ""
    brand_voice: str = "friendly and professional"


class ViralScorePayload(BaseModel):
    kind: Literal["viral_scoring"] = "viral_scoring"
    content: str
    platform: str = "facebook"


BatchPayload = Annotated[
    Union[SentimentPayload, CommentReplyPayload, ViralScorePayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(BatchPayload)


def parse_payload(data: dict[str, Any]) -> BaseModel:
    """Build the payload variant selected by data['kind']."""
    return _payload_adapter.validate_python(data)


# Per-item results


class SentimentResult(BaseModel):
    sentiment: Literal["positive", "neutral", "negative"]
    score: float = Field(ge=-1.0, le=1.0)


class CommentReply(BaseModel):
    reply: str
    tone: str | None = None


class ViralScore(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    reasons: list[str] = Field(default_factory=list)


# Batch responses (one upstream call covering many requests)


class SentimentBatchItem(SentimentResult):
    id: str


class SentimentBatchResponse(BaseModel):
    results: list[SentimentBatchItem]


class CommentReplyBatchItem(CommentReply):
    id: str


class CommentReplyBatchResponse(BaseModel):
    results: list[CommentReplyBatchItem]


class ViralScoreBatchItem(ViralScore):
    id: str


class ViralScoreBatchResponse(BaseModel):
    results: list[ViralScoreBatchItem]


class TextResponse(BaseModel):
    """Default return type for free-form generations."""

    text: str


# Orchestrator containers


@dataclass
class ModelConfig:
    """Caller preferences for model routing."""

    force_model: ModelTier | None = None  # always wins over scoring
    task_type: str | None = None
    temperature: float | None = None


@dataclass
class GenerationRequest:
    """One end-to-end inference request."""

    system_prompt: str
    prompt: str
    user_id: str
    return_type: type[BaseModel] = TextResponse
    context: dict[str, Any] | None = None
    model_config: ModelConfig = field(default_factory=ModelConfig)
    history: list[ChatMessage] = field(default_factory=list)
    service_id: str | None = None
    use_cache: bool = True
    max_age_hours: float | None = None
    fallback: Callable[[], Awaitable[Any]] | None = None
    on_progress: Callable[[str], None] | None = None


@dataclass
class GenerationResult:
    """Result of Orchestrator.generate."""

    data: Any
    model: str | None = None
    tier: ModelTier | None = None
    from_cache: bool = False
    cache_key: str | None = None
