"""Schema Validator: turn raw model output into ``EvaluationResult`` objects.

The decision is made once, here, before any business logic reads the
payload. Scalar ``tags``/``key_points`` become one-element lists, scores are
rounded to two decimals, and out-of-range scores follow the score policy.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pydantic
import structlog

from forumeval.config import ScorePolicy
from forumeval.errors import ValidationError
from forumeval.schemas.evaluation import EvaluationResult

logger = structlog.get_logger(__name__)


def _describe(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def validate_item(
    raw: Any, score_policy: ScorePolicy = "clamp", index: int | None = None
) -> EvaluationResult:
    """Validate one response item or raise ``ValidationError``."""
    if not isinstance(raw, dict):
        raise ValidationError(
            f"item {index}: expected an object, got {type(raw).__name__}", index=index
        )
    try:
        return EvaluationResult.model_validate(
            raw, context={"score_policy": score_policy}
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(f"item {index}: {_describe(exc)}", index=index) from exc


def validate_batch(
    raw_items: Sequence[Any], score_policy: ScorePolicy = "clamp"
) -> list[EvaluationResult]:
    """Validate every item of a batch response, in order.

    One invalid item invalidates the whole batch.
    """
    results = [
        validate_item(raw, score_policy, index=i) for i, raw in enumerate(raw_items)
    ]
    logger.debug("batch_validated", count=len(results), score_policy=score_policy)
    return results
