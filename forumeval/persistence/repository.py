"""Repository functions for evaluation persistence.

Each function takes a sqlite3.Connection and performs a single operation.
Connections are opened/closed by callers (the storage facade or run.py).
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone

import structlog

from forumeval.schemas.evaluation import SCORE_FIELDS, EvaluationRecord

logger = structlog.get_logger(__name__)


def _now() -> str:
    """Return current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Anti-join selection
# ---------------------------------------------------------------------------


def select_unevaluated_posts(
    conn: sqlite3.Connection, forum_name: str, llm_model: str
) -> list[sqlite3.Row]:
    """Posts of a forum with no evaluation for ``llm_model``, newest first."""
    return conn.execute(
        """SELECT p.id, p.forum_name, p.plain_text AS text, p.created_at
           FROM posts p
           LEFT JOIN evaluations e
             ON e.content_kind = 'post'
            AND e.content_id = p.id
            AND e.forum_name = p.forum_name
            AND e.llm_model = ?
           WHERE p.forum_name = ? AND e.id IS NULL
           ORDER BY p.created_at DESC, p.id DESC""",
        (llm_model, forum_name),
    ).fetchall()


def select_unevaluated_topics(
    conn: sqlite3.Connection, forum_name: str, llm_model: str
) -> list[sqlite3.Row]:
    """Topics (title + opening text) with no topic evaluation, newest first."""
    return conn.execute(
        """SELECT t.id, t.forum_name,
                  t.title || char(10) || char(10) || COALESCE(t.plain_text, '') AS text,
                  t.created_at
           FROM topics t
           LEFT JOIN evaluations e
             ON e.content_kind = 'topic'
            AND e.content_id = t.id
            AND e.forum_name = t.forum_name
            AND e.llm_model = ?
           WHERE t.forum_name = ? AND e.id IS NULL
           ORDER BY t.created_at DESC, t.id DESC""",
        (llm_model, forum_name),
    ).fetchall()


def select_unevaluated_threads(
    conn: sqlite3.Connection, forum_name: str, llm_model: str
) -> list[sqlite3.Row]:
    """Topics that have posts but no thread evaluation, newest first."""
    return conn.execute(
        """SELECT t.id, t.forum_name, t.created_at
           FROM topics t
           LEFT JOIN evaluations e
             ON e.content_kind = 'thread'
            AND e.content_id = t.id
            AND e.forum_name = t.forum_name
            AND e.llm_model = ?
           WHERE t.forum_name = ? AND e.id IS NULL
             AND EXISTS (
                 SELECT 1 FROM posts p
                 WHERE p.topic_id = t.id AND p.forum_name = t.forum_name
             )
           ORDER BY t.created_at DESC, t.id DESC""",
        (llm_model, forum_name),
    ).fetchall()


def get_thread_posts(
    conn: sqlite3.Connection, forum_name: str, topic_id: int
) -> list[str]:
    """Plain text of every post in a topic, in chronological order."""
    rows = conn.execute(
        """SELECT plain_text FROM posts
           WHERE forum_name = ? AND topic_id = ?
           ORDER BY created_at, id""",
        (forum_name, topic_id),
    ).fetchall()
    return [row["plain_text"] for row in rows]


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


def save_evaluation(conn: sqlite3.Connection, record: EvaluationRecord) -> int:
    """Insert one evaluation with its tags in a single transaction.

    Returns the evaluation id. Any sqlite3 error rolls the item back and is
    re-raised; a UNIQUE violation means the item was already evaluated.
    """
    kind = str(record.kind)
    try:
        cursor = conn.execute(
            f"""INSERT INTO evaluations (content_kind, content_id, forum_name, llm_model,
                {", ".join(SCORE_FIELDS)},
                dominant_topic, tags, key_points, summary, suggested_improvements,
                created_at)
                VALUES (?, ?, ?, ?, {", ".join("?" for _ in SCORE_FIELDS)}, ?, ?, ?, ?, ?, ?)""",
            (
                kind,
                record.content_id,
                record.forum_name,
                record.llm_model,
                *(record.scores[name] for name in SCORE_FIELDS),
                record.dominant_topic,
                json.dumps(record.tags, ensure_ascii=False),
                json.dumps(record.key_points, ensure_ascii=False),
                record.summary,
                record.suggested_improvements,
                _now(),
            ),
        )
        evaluation_id = cursor.lastrowid
        _save_tags(conn, record)
        if kind == "post":
            conn.execute(
                "UPDATE posts SET last_analyzed = ? WHERE id = ? AND forum_name = ?",
                (_now(), record.content_id, record.forum_name),
            )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return evaluation_id  # type: ignore[return-value]


def _save_tags(conn: sqlite3.Connection, record: EvaluationRecord) -> None:
    """Upper-case, de-duplicate and link the record's tags."""
    names = sorted({tag.strip().upper() for tag in record.tags if tag.strip()})
    if not names:
        return
    conn.executemany(
        "INSERT OR IGNORE INTO tags (name) VALUES (?)", [(name,) for name in names]
    )
    placeholders = ", ".join("?" for _ in names)
    tag_rows = conn.execute(
        f"SELECT id FROM tags WHERE name IN ({placeholders})", names
    ).fetchall()
    conn.executemany(
        """INSERT OR IGNORE INTO content_tags (content_kind, content_id, forum_name, tag_id)
           VALUES (?, ?, ?, ?)""",
        [
            (str(record.kind), record.content_id, record.forum_name, row["id"])
            for row in tag_rows
        ],
    )


def count_evaluations(
    conn: sqlite3.Connection, forum_name: str, kind: str | None = None
) -> int:
    query = "SELECT COUNT(*) FROM evaluations WHERE forum_name = ?"
    params: list = [forum_name]
    if kind:
        query += " AND content_kind = ?"
        params.append(kind)
    return conn.execute(query, params).fetchone()[0]


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def create_run(
    conn: sqlite3.Connection,
    run_id: str,
    forum_name: str,
    llm_model: str,
    batch_size: int,
    max_batches: int | None,
) -> str:
    """Create a new evaluation run record. Returns run_id."""
    conn.execute(
        """INSERT INTO evaluation_runs (id, forum_name, llm_model, batch_size,
           max_batches, started_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (run_id, forum_name, llm_model, batch_size, max_batches, _now()),
    )
    conn.commit()
    logger.info("run_created", run_id=run_id, forum=forum_name, model=llm_model)
    return run_id


def finish_run(
    conn: sqlite3.Connection,
    run_id: str,
    status: str = "done",
    found: int = 0,
    processed: int = 0,
    error_count: int = 0,
) -> None:
    """Mark a run as finished."""
    conn.execute(
        """UPDATE evaluation_runs
           SET status = ?, found = ?, processed = ?, error_count = ?, finished_at = ?
           WHERE id = ?""",
        (status, found, processed, error_count, _now(), run_id),
    )
    conn.commit()
    logger.info(
        "run_finished",
        run_id=run_id,
        status=status,
        processed=processed,
        errors=error_count,
    )
