"""Batch Composer: split selected content into bounded, ordered batches."""

from __future__ import annotations

import math
from collections.abc import Sequence

from forumeval.schemas.content import Batch, ContentItem


def batch_count(total: int, batch_size: int, max_batches: int | None = None) -> int:
    """Number of batches a run will process: min(ceil(total / size), max_batches)."""
    count = math.ceil(total / batch_size)
    if max_batches is not None:
        count = min(count, max_batches)
    return count


def chunk(
    items: Sequence[ContentItem],
    batch_size: int,
    max_batches: int | None = None,
) -> list[Batch]:
    """Partition ``items`` into batches of at most ``batch_size``, in order.

    Items past ``max_batches`` batches are left out; they stay selectable
    for the next run.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if max_batches is not None and max_batches < 1:
        raise ValueError(f"max_batches must be >= 1, got {max_batches}")

    count = batch_count(len(items), batch_size, max_batches)
    return [
        tuple(items[i * batch_size : (i + 1) * batch_size]) for i in range(count)
    ]
