"""
ModelSelector - Pure heuristic that routes a request to the cheapest capable tier.

The score is additive:
- combined prompt + content length: >5000 chars +3, >2000 +2, >500 +1
- complexity keywords in the system prompt: +2 each, capped at 5
- structured-output nesting (object/array nodes in the return schema):
  >10 +3, >5 +2, >2 +1
- task-type base score from TASK_TYPE_SCORES
- multi-step reasoning phrases in the system prompt: +1 each, uncapped

Score >= 10 selects LARGE, >= 5 MEDIUM, anything else SMALL. A forced tier
always wins.
"""

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from aigate.ai.schema import ModelTier
from aigate.settings import Settings, global_settings

LARGE_THRESHOLD = 10
MEDIUM_THRESHOLD = 5

LENGTH_BUCKETS = ((5000, 3), (2000, 2), (500, 1))
STRUCTURE_BUCKETS = ((10, 3), (5, 2), (2, 1))

KEYWORD_WEIGHT = 2
KEYWORD_CAP = 5

COMPLEXITY_KEYWORDS = (
    "analyze",
    "analyse",
    "analysis",
    "comprehensive",
    "detailed",
    "strategy",
    "strategic",
    "evaluate",
    "compare",
    "synthesize",
    "insights",
    "trends",
    "forecast",
    "predict",
    "in-depth",
    "nuanced",
    "competitive",
    "reasoning",
)

TASK_TYPE_SCORES: dict[str, int] = {
    "trend_analysis": 2,
    "brand_analysis": 2,
    "competitor_analysis": 2,
    "content_strategy": 2,
    "content_generation": 1,
    "comment_response": 1,
    "viral_scoring": 1,
    "sentiment_analysis": 0,
    "classification": 0,
}

MULTI_STEP_PATTERNS = (
    re.compile(r"\bstep\s*\d+", re.IGNORECASE),
    re.compile(r"\bstep[- ]by[- ]step\b", re.IGNORECASE),
    re.compile(r"\bfirst\b[^.]*\bthen\b", re.IGNORECASE),
    re.compile(r"\bfor each\b", re.IGNORECASE),
    re.compile(r"\bfinally\b", re.IGNORECASE),
    re.compile(r"\bbreak (?:it |this )?down\b", re.IGNORECASE),
)

_KEYWORD_RE = re.compile(
    r"(?<![\w-])(?:"
    + "|".join(re.escape(k) for k in COMPLEXITY_KEYWORDS)
    + r")(?![\w-])",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ComplexityScore:
    """Breakdown of the additive complexity score."""

    length: int = 0
    keywords: int = 0
    structure: int = 0
    task_type: int = 0
    multi_step: int = 0

    @property
    def total(self) -> int:
        return self.length + self.keywords + self.structure + self.task_type + self.multi_step


def _bucket(value: int, buckets: tuple[tuple[int, int], ...]) -> int:
    for threshold, points in buckets:
        if value > threshold:
            return points
    return 0


def count_structure_markers(return_type: type[BaseModel] | None) -> int:
    """Count object and array nodes in the return type's JSON schema."""
    if return_type is None:
        return 0

    def walk(node: Any) -> int:
        if isinstance(node, dict):
            own = 1 if node.get("type") in ("object", "array") else 0
            return own + sum(walk(v) for v in node.values())
        if isinstance(node, list):
            return sum(walk(v) for v in node)
        return 0

    return walk(return_type.model_json_schema())


def calculate_complexity_score(
    system_prompt: str,
    content: str = "",
    task_type: str | None = None,
    return_type: type[BaseModel] | None = None,
) -> ComplexityScore:
    """Score how demanding a request is. Pure function."""
    keyword_hits = len(_KEYWORD_RE.findall(system_prompt))
    multi_step_hits = sum(len(p.findall(system_prompt)) for p in MULTI_STEP_PATTERNS)

    return ComplexityScore(
        length=_bucket(len(system_prompt) + len(content), LENGTH_BUCKETS),
        keywords=min(keyword_hits * KEYWORD_WEIGHT, KEYWORD_CAP),
        structure=_bucket(count_structure_markers(return_type), STRUCTURE_BUCKETS),
        task_type=TASK_TYPE_SCORES.get(task_type or "", 0),
        multi_step=multi_step_hits,
    )


def tier_for_score(score: int) -> ModelTier:
    if score >= LARGE_THRESHOLD:
        return ModelTier.LARGE
    if score >= MEDIUM_THRESHOLD:
        return ModelTier.MEDIUM
    return ModelTier.SMALL


def select_model(
    system_prompt: str,
    content: str = "",
    task_type: str | None = None,
    return_type: type[BaseModel] | None = None,
    force_model: ModelTier | str | None = None,
) -> ModelTier:
    """Choose the inference tier for a request."""
    if force_model is not None:
        return ModelTier(force_model)
    score = calculate_complexity_score(system_prompt, content, task_type, return_type)
    return tier_for_score(score.total)


def resolve_model_name(tier: ModelTier, settings: Settings | None = None) -> str:
    """Map a tier onto the configured model id."""
    settings = settings or global_settings
    return {
        ModelTier.SMALL: settings.small_model,
        ModelTier.MEDIUM: settings.medium_model,
        ModelTier.LARGE: settings.large_model,
    }[tier]
