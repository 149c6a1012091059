"""Shared test fixtures."""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

# Ensure tests don't accidentally call real APIs
os.environ.setdefault("OPENROUTER_API_KEY", "test-key")

from forumeval.persistence.storage import SQLiteStorage  # noqa: E402

MODEL = "test/model"


def evaluation_payload(**overrides: Any) -> dict[str, Any]:
    """A well-formed raw evaluation item as the model would return it."""
    payload: dict[str, Any] = {
        "overall_quality": 7,
        "logical_reasoning": 6.5,
        "persuasiveness": 6,
        "clarity": 8,
        "constructiveness": 7,
        "engagement_potential": 5,
        "hostility": 1,
        "dominant_topic": "Treasury management",
        "tags": ["treasury", "grants"],
        "key_points": ["Proposes a budget cap"],
        "summary": "Argues for a capped grants budget.",
        "suggested_improvements": "Cite prior spending.",
    }
    payload.update(overrides)
    return payload


class FakeEvaluator:
    """Stand-in for LangChainEvaluator.

    ``responses`` is consumed one entry per call: an exception is raised, a
    list is returned as-is, and ``None`` means one valid item per content.
    Once exhausted, every call answers with valid items.
    """

    def __init__(self, responses: Sequence[Any] = ()) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system_prompt, contents, schema=None, label="Post"):
        self.calls.append(
            {"system_prompt": system_prompt, "contents": list(contents), "label": label}
        )
        response = self.responses.pop(0) if self.responses else None
        if isinstance(response, BaseException):
            raise response
        if response is None:
            return [evaluation_payload() for _ in contents]
        return response


class Seeder:
    """Insert crawler-side content rows."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def topic(
        self,
        topic_id: int,
        forum: str = "ARBITRUM",
        title: str = "A topic",
        text: str | None = "Opening text",
        created_at: str = "2024-01-01T00:00:00",
    ) -> None:
        self.conn.execute(
            "INSERT INTO topics (id, forum_name, title, plain_text, created_at) VALUES (?, ?, ?, ?, ?)",
            (topic_id, forum, title, text, created_at),
        )
        self.conn.commit()

    def post(
        self,
        post_id: int,
        forum: str = "ARBITRUM",
        topic_id: int | None = None,
        text: str = "A post",
        created_at: str = "2024-01-01T00:00:00",
    ) -> None:
        self.conn.execute(
            "INSERT INTO posts (id, forum_name, topic_id, plain_text, created_at) VALUES (?, ?, ?, ?, ?)",
            (post_id, forum, topic_id, text, created_at),
        )
        self.conn.commit()

    def posts(self, count: int, forum: str = "ARBITRUM", start: int = 1) -> None:
        """``count`` posts; higher ids are newer."""
        for post_id in range(start, start + count):
            self.post(
                post_id,
                forum=forum,
                text=f"Post number {post_id}",
                created_at=f"2024-01-01T00:{post_id // 60:02d}:{post_id % 60:02d}",
            )


@pytest.fixture()
def storage(tmp_path: Path):
    s = SQLiteStorage.open(tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture()
def seed(storage: SQLiteStorage) -> Seeder:
    return Seeder(storage.conn)
