"""Content Selector: fetch content that has no evaluation yet.

Always queries storage fresh, so a re-run never re-evaluates what a previous
(or concurrent) run already persisted. Storage errors propagate unchanged.
"""

from __future__ import annotations

import structlog

from forumeval.persistence.storage import SQLiteStorage
from forumeval.schemas.content import ContentItem, ContentKind

logger = structlog.get_logger(__name__)


def select_unevaluated(
    storage: SQLiteStorage,
    forum_name: str,
    kind: ContentKind,
    llm_model: str,
) -> list[ContentItem]:
    """Return un-evaluated items of ``kind`` in ``forum_name``, newest first."""
    items = storage.select_unevaluated(forum_name, ContentKind(kind), llm_model)
    logger.info(
        "unevaluated_content_selected",
        kind=str(kind),
        count=len(items),
        newest=items[0].created_at if items else None,
        oldest=items[-1].created_at if items else None,
    )
    return items
