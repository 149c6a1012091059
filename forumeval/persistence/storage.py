"""Storage facade used by the pipeline.

Wraps one SQLite connection and the repository functions, converting rows to
``ContentItem`` and sqlite3 errors to pipeline persistence errors.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import structlog

from forumeval.errors import DuplicateEvaluationError, PersistenceError
from forumeval.persistence import repository
from forumeval.persistence.db import get_connection
from forumeval.schemas.content import ContentItem, ContentKind
from forumeval.schemas.evaluation import EvaluationRecord

logger = structlog.get_logger(__name__)

THREAD_POST_SEPARATOR = "\n\n"


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    errorname = getattr(exc, "sqlite_errorname", "")
    return errorname == "SQLITE_CONSTRAINT_UNIQUE" or "UNIQUE constraint failed" in str(exc)


class SQLiteStorage:
    """Storage collaborator backed by a single SQLite connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @classmethod
    def open(cls, db_path: str | Path | None = None) -> SQLiteStorage:
        return cls(get_connection(db_path))

    # -- selection ---------------------------------------------------------

    def select_unevaluated(
        self, forum_name: str, kind: ContentKind, llm_model: str
    ) -> list[ContentItem]:
        """Anti-join selection of content without an evaluation, newest first."""
        if kind == ContentKind.POST:
            rows = repository.select_unevaluated_posts(self.conn, forum_name, llm_model)
            return [self._to_item(row, kind, row["text"]) for row in rows]

        if kind == ContentKind.TOPIC:
            rows = repository.select_unevaluated_topics(self.conn, forum_name, llm_model)
            return [self._to_item(row, kind, row["text"].strip()) for row in rows]

        rows = repository.select_unevaluated_threads(self.conn, forum_name, llm_model)
        return [
            self._to_item(
                row,
                kind,
                THREAD_POST_SEPARATOR.join(
                    repository.get_thread_posts(self.conn, forum_name, row["id"])
                ),
            )
            for row in rows
        ]

    @staticmethod
    def _to_item(row: sqlite3.Row, kind: ContentKind, text: str) -> ContentItem:
        return ContentItem(
            id=row["id"],
            forum_name=row["forum_name"],
            kind=ContentKind(kind),
            text=text or "",
            created_at=row["created_at"],
        )

    # -- evaluations -------------------------------------------------------

    def insert_evaluation(self, record: EvaluationRecord) -> int:
        """Insert one evaluation record.

        Raises:
            DuplicateEvaluationError: the item already has an evaluation.
            PersistenceError: any other storage failure for this item.
        """
        try:
            return repository.save_evaluation(self.conn, record)
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateEvaluationError(
                    f"{record.kind} {record.content_id} already evaluated "
                    f"in {record.forum_name} by {record.llm_model}",
                    content_id=record.content_id,
                ) from exc
            raise PersistenceError(str(exc), content_id=record.content_id) from exc
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc), content_id=record.content_id) from exc

    def count_evaluations(self, forum_name: str, kind: ContentKind | None = None) -> int:
        return repository.count_evaluations(
            self.conn, forum_name, str(kind) if kind else None
        )

    # -- run history -------------------------------------------------------

    def create_run(
        self,
        run_id: str,
        forum_name: str,
        llm_model: str,
        batch_size: int,
        max_batches: int | None,
    ) -> str:
        return repository.create_run(
            self.conn, run_id, forum_name, llm_model, batch_size, max_batches
        )

    def finish_run(
        self,
        run_id: str,
        status: str,
        found: int,
        processed: int,
        error_count: int,
    ) -> None:
        repository.finish_run(
            self.conn,
            run_id,
            status=status,
            found=found,
            processed=processed,
            error_count=error_count,
        )

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        self.conn.close()
        logger.debug("db_connection_closed")
