"""Content items read from storage and the batches built from them."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ContentKind(StrEnum):
    """Granularity of evaluated content."""

    POST = "post"
    TOPIC = "topic"
    THREAD = "thread"


@dataclass(frozen=True)
class ContentItem:
    id: int
    forum_name: str
    kind: ContentKind
    text: str
    created_at: str


Batch = tuple[ContentItem, ...]
