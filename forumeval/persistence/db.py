"""SQLite connection factory and schema.

Content tables (``topics``, ``posts``) are filled by the upstream crawlers;
this package only reads them. Evaluation tables are append-only, and the
UNIQUE constraint on ``evaluations`` is what keeps concurrent runs from
evaluating the same item twice.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

DB_PATH = Path("data/pipeline.db")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS topics (
    id              INTEGER NOT NULL,
    forum_name      TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    plain_text      TEXT,
    created_at      TEXT NOT NULL,
    PRIMARY KEY (id, forum_name)
);

CREATE TABLE IF NOT EXISTS posts (
    id              INTEGER NOT NULL,
    forum_name      TEXT NOT NULL,
    topic_id        INTEGER,
    plain_text      TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    last_analyzed   TEXT,
    PRIMARY KEY (id, forum_name)
);

CREATE INDEX IF NOT EXISTS idx_posts_topic ON posts (forum_name, topic_id, created_at);

CREATE TABLE IF NOT EXISTS evaluations (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    content_kind            TEXT NOT NULL,
    content_id              INTEGER NOT NULL,
    forum_name              TEXT NOT NULL,
    llm_model               TEXT NOT NULL,
    overall_quality         REAL NOT NULL,
    logical_reasoning       REAL NOT NULL,
    persuasiveness          REAL NOT NULL,
    clarity                 REAL NOT NULL,
    constructiveness        REAL NOT NULL,
    engagement_potential    REAL NOT NULL,
    hostility               REAL NOT NULL,
    dominant_topic          TEXT,
    tags                    TEXT NOT NULL,
    key_points              TEXT NOT NULL,
    summary                 TEXT,
    suggested_improvements  TEXT,
    created_at              TEXT NOT NULL,
    UNIQUE (content_kind, content_id, forum_name, llm_model)
);

CREATE TABLE IF NOT EXISTS tags (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS content_tags (
    content_kind    TEXT NOT NULL,
    content_id      INTEGER NOT NULL,
    forum_name      TEXT NOT NULL,
    tag_id          INTEGER NOT NULL REFERENCES tags(id),
    PRIMARY KEY (content_kind, content_id, forum_name, tag_id)
);

CREATE TABLE IF NOT EXISTS evaluation_runs (
    id              TEXT PRIMARY KEY,
    forum_name      TEXT NOT NULL,
    llm_model       TEXT NOT NULL,
    batch_size      INTEGER NOT NULL,
    max_batches     INTEGER,
    status          TEXT DEFAULT 'running',
    found           INTEGER DEFAULT 0,
    processed       INTEGER DEFAULT 0,
    error_count     INTEGER DEFAULT 0,
    started_at      TEXT NOT NULL,
    finished_at     TEXT
);
"""


# ---------------------------------------------------------------------------
# Connection factory
# ---------------------------------------------------------------------------


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a SQLite connection. Auto-creates tables on first use."""
    path = Path(db_path) if db_path else DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    _ensure_tables(conn)
    logger.debug("db_connection_opened", path=str(path))
    return conn


def _ensure_tables(conn: sqlite3.Connection) -> None:
    """Create tables if they don't exist."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
