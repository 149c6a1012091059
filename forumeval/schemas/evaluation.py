"""Structured evaluation schemas.

``EvaluationResult`` is both the response schema sent to the model and the
validated, normalized form of one response item. ``EvaluationRecord`` is the
row written to storage.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from forumeval.schemas.content import ContentItem, ContentKind

SCORE_MIN = 0.0
SCORE_MAX = 10.0

SCORE_FIELDS = (
    "overall_quality",
    "logical_reasoning",
    "persuasiveness",
    "clarity",
    "constructiveness",
    "engagement_potential",
    "hostility",
)


class EvaluationResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    overall_quality: float = Field(..., description="General quality, 0-10")
    logical_reasoning: float = Field(..., description="Coherence of arguments, 0-10")
    persuasiveness: float = Field(..., description="Effectiveness at convincing, 0-10")
    clarity: float = Field(..., description="Readability and conciseness, 0-10")
    constructiveness: float = Field(..., description="Positive contribution, 0-10")
    engagement_potential: float = Field(..., description="Likelihood of discussion, 0-10")
    hostility: float = Field(..., description="Aggressive or inflammatory tone, 0-10 (lower is better)")
    dominant_topic: str = ""
    tags: list[str] = Field(..., description="Relevant tags")
    key_points: list[str] = Field(..., description="Main arguments, in order")
    summary: str = Field(..., description="One-paragraph summary")
    suggested_improvements: str = ""

    @field_validator("tags", "key_points", mode="before")
    @classmethod
    def _coerce_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [v if isinstance(v, str) else str(v) for v in value if v is not None]
        if value == "":
            return []
        # A bare scalar keeps its information as a one-element list
        return [value if isinstance(value, str) else str(value)]

    @field_validator(*SCORE_FIELDS)
    @classmethod
    def _apply_score_policy(cls, value: float, info: ValidationInfo) -> float:
        if not math.isfinite(value):
            raise ValueError("score must be a finite number")
        policy = (info.context or {}).get("score_policy", "clamp")
        if not SCORE_MIN <= value <= SCORE_MAX:
            if policy == "reject":
                raise ValueError(
                    f"score {value} outside [{SCORE_MIN:g}, {SCORE_MAX:g}]"
                )
            if policy == "clamp":
                value = min(max(value, SCORE_MIN), SCORE_MAX)
        return round(value, 2)


class BatchEvaluation(BaseModel):
    """Response envelope requested from the model for one batch."""

    evaluations: list[EvaluationResult]


@dataclass
class EvaluationRecord:
    content_id: int
    forum_name: str
    kind: ContentKind
    llm_model: str
    scores: dict[str, float]
    tags: list[str] = field(default_factory=list)
    key_points: list[str] = field(default_factory=list)
    summary: str = ""
    suggested_improvements: str = ""
    dominant_topic: str = ""

    @classmethod
    def from_result(
        cls, item: ContentItem, result: EvaluationResult, llm_model: str
    ) -> EvaluationRecord:
        return cls(
            content_id=item.id,
            forum_name=item.forum_name,
            kind=item.kind,
            llm_model=llm_model,
            scores={name: getattr(result, name) for name in SCORE_FIELDS},
            tags=list(result.tags),
            key_points=list(result.key_points),
            summary=result.summary,
            suggested_improvements=result.suggested_improvements,
            dominant_topic=result.dominant_topic,
        )
