"""Per-forum run statistics reported at the end of a run."""

from __future__ import annotations

from dataclasses import dataclass, field

from forumeval.schemas.content import ContentKind
from forumeval.schemas.phases import RunPhase


@dataclass
class KindStats:
    found: int = 0
    processed: int = 0
    skipped: int = 0  # duplicates and failed writes
    newest: str | None = None
    oldest: str | None = None


@dataclass(frozen=True)
class ErrorEntry:
    type: str
    message: str


@dataclass
class RunStats:
    forum: str
    phase: RunPhase = RunPhase.IDLE
    kinds: dict[ContentKind, KindStats] = field(default_factory=dict)
    errors: list[ErrorEntry] = field(default_factory=list)
    cancelled: bool = False

    def for_kind(self, kind: ContentKind) -> KindStats:
        return self.kinds.setdefault(kind, KindStats())

    def record_error(self, error_type: str, message: str) -> None:
        self.errors.append(ErrorEntry(type=error_type, message=message))

    @property
    def found(self) -> int:
        return sum(k.found for k in self.kinds.values())

    @property
    def processed(self) -> int:
        return sum(k.processed for k in self.kinds.values())

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class ForumReport:
    """Outcome of one forum run; ``fatal`` is set when the run aborted."""

    forum: str
    stats: RunStats
    fatal: Exception | None = None

    @property
    def failed(self) -> bool:
        return self.fatal is not None
