"""Result Persister: write one evaluation record per batch item.

Each (item, result) pair is mapped to an ``ItemOutcome``; the outcomes are
then folded into a ``PersistSummary``. A failure on one item never stops its
siblings. A duplicate-key conflict means a concurrent run already evaluated
the item: it is skipped, not reported as an error.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from forumeval.errors import DuplicateEvaluationError, PersistenceError
from forumeval.persistence.storage import SQLiteStorage
from forumeval.schemas.content import ContentItem
from forumeval.schemas.evaluation import EvaluationRecord, EvaluationResult

logger = structlog.get_logger(__name__)


class OutcomeStatus(StrEnum):
    PERSISTED = "persisted"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemOutcome:
    content_id: int
    status: OutcomeStatus
    error: PersistenceError | None = None


@dataclass
class PersistSummary:
    persisted: int = 0
    duplicates: int = 0
    failures: list[PersistenceError] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.duplicates + len(self.failures)

    def add(self, outcome: ItemOutcome) -> PersistSummary:
        if outcome.status is OutcomeStatus.PERSISTED:
            self.persisted += 1
        elif outcome.status is OutcomeStatus.DUPLICATE:
            self.duplicates += 1
        elif outcome.error is not None:
            self.failures.append(outcome.error)
        return self


def persist_item(
    storage: SQLiteStorage,
    item: ContentItem,
    result: EvaluationResult,
    llm_model: str,
) -> ItemOutcome:
    record = EvaluationRecord.from_result(item, result, llm_model)
    try:
        storage.insert_evaluation(record)
    except DuplicateEvaluationError as exc:
        logger.info(
            "evaluation_already_exists", kind=str(item.kind), content_id=item.id
        )
        return ItemOutcome(item.id, OutcomeStatus.DUPLICATE, exc)
    except PersistenceError as exc:
        logger.error(
            "evaluation_insert_failed",
            kind=str(item.kind),
            content_id=item.id,
            error=str(exc),
        )
        return ItemOutcome(item.id, OutcomeStatus.FAILED, exc)
    return ItemOutcome(item.id, OutcomeStatus.PERSISTED)


def persist_batch(
    storage: SQLiteStorage,
    items: Sequence[ContentItem],
    results: Sequence[EvaluationResult],
    llm_model: str,
) -> PersistSummary:
    """Persist a validated batch; ``items`` and ``results`` pair up by position."""
    if len(items) != len(results):
        raise ValueError(
            f"cannot pair {len(items)} items with {len(results)} results"
        )

    summary = PersistSummary()
    for item, result in zip(items, results):
        summary.add(persist_item(storage, item, result, llm_model))

    logger.info(
        "batch_persisted",
        persisted=summary.persisted,
        duplicates=summary.duplicates,
        failed=len(summary.failures),
    )
    return summary
