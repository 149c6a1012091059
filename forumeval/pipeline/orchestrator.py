"""Batch Orchestrator: the per-forum, per-content-kind run loop.

Phases of one forum run::

    IDLE -> SELECTING -> BATCHING -> (EVALUATING -> VALIDATING -> PERSISTING)* -> DONE
                                                                              \\-> FAILED

SELECTING and BATCHING repeat for each configured content kind. Batches run
strictly one after another with a pacing delay in between. Any error inside a
batch is recorded in ``RunStats`` and the loop moves on; an error outside
that boundary (e.g. storage unreachable during selection) fails the forum
run with ``FatalError``.

Cancellation is checked before each batch, never mid-batch, so a batch that
started evaluating is always persisted before the loop exits.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from forumeval.config import PipelineSettings, ScorePolicy
from forumeval.errors import FatalError, PipelineError
from forumeval.persistence.storage import SQLiteStorage
from forumeval.pipeline.client import EvaluationClient
from forumeval.pipeline.composer import chunk
from forumeval.pipeline.persister import persist_batch
from forumeval.pipeline.retry import RetryController
from forumeval.pipeline.selector import select_unevaluated
from forumeval.pipeline.validator import validate_batch
from forumeval.prompts.templates import ITEM_LABELS, SYSTEM_PROMPTS
from forumeval.schemas.content import Batch, ContentKind
from forumeval.schemas.evaluation import BatchEvaluation
from forumeval.schemas.phases import RunPhase
from forumeval.schemas.stats import ForumReport, RunStats
from forumeval.utils.sanitizer import sanitize

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class PipelineOptions:
    """Resolved run parameters (pipeline.toml merged with CLI overrides)."""

    llm_model: str
    batch_size: int = 100
    max_batches: int | None = None
    inter_batch_delay_ms: int = 1000
    token_budget: int = 3500
    kinds: tuple[ContentKind, ...] = field(
        default_factory=lambda: (ContentKind.TOPIC, ContentKind.POST, ContentKind.THREAD)
    )
    score_policy: ScorePolicy = "clamp"
    max_concurrent_forums: int = 1

    @classmethod
    def from_settings(cls, settings: PipelineSettings, **overrides) -> PipelineOptions:
        pipeline = settings.pipeline
        values = dict(
            llm_model=settings.defaults.model,
            batch_size=pipeline.batch_size,
            max_batches=pipeline.max_batches,
            inter_batch_delay_ms=pipeline.inter_batch_delay_ms,
            token_budget=pipeline.token_budget,
            kinds=tuple(ContentKind(k) for k in pipeline.kinds),
            score_policy=pipeline.score_policy,
            max_concurrent_forums=pipeline.max_concurrent_forums,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class BatchOrchestrator:
    def __init__(
        self,
        storage: SQLiteStorage,
        client: EvaluationClient,
        retry: RetryController,
        options: PipelineOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.storage = storage
        self.client = client
        self.retry = retry
        self.options = options
        self.cancel_event = cancel_event

    # -- public ------------------------------------------------------------

    async def run(self, forums: Sequence[str]) -> list[ForumReport]:
        """Run every forum; at most ``max_concurrent_forums`` at a time.

        A forum that fails fatally is reported, not raised, so the other
        forums still run.
        """
        semaphore = asyncio.Semaphore(self.options.max_concurrent_forums)

        async def _guarded(forum: str) -> ForumReport:
            async with semaphore:
                stats = RunStats(forum=forum)
                try:
                    await self.run_forum(forum, stats)
                except FatalError as exc:
                    return ForumReport(forum=forum, stats=stats, fatal=exc)
                return ForumReport(forum=forum, stats=stats)

        return list(await asyncio.gather(*(_guarded(f) for f in forums)))

    async def run_forum(self, forum: str, stats: RunStats | None = None) -> RunStats:
        """Evaluate all configured content kinds of one forum.

        Raises:
            FatalError: an error outside the per-batch boundary aborted the run.
        """
        stats = stats if stats is not None else RunStats(forum=forum)
        run_id = str(uuid.uuid4())

        with structlog.contextvars.bound_contextvars(forum=forum, run_id=run_id):
            logger.info(
                "forum_run_started",
                model=self.options.llm_model,
                batch_size=self.options.batch_size,
                max_batches=self.options.max_batches,
            )
            try:
                self.storage.create_run(
                    run_id,
                    forum,
                    self.options.llm_model,
                    self.options.batch_size,
                    self.options.max_batches,
                )
                for kind in self.options.kinds:
                    if self._check_cancelled(stats):
                        break
                    await self._run_kind(forum, kind, stats)
            except Exception as exc:
                self._enter(stats, RunPhase.FAILED)
                stats.record_error(FatalError.code, f"{type(exc).__name__}: {exc}")
                logger.error("forum_run_failed", error=str(exc), exc_info=True)
                self._finish_run(run_id, stats, "failed")
                raise FatalError(str(exc), forum=forum) from exc

            self._enter(stats, RunPhase.DONE)
            self._finish_run(run_id, stats, "cancelled" if stats.cancelled else "done")
            logger.info(
                "forum_run_finished",
                found=stats.found,
                processed=stats.processed,
                errors=len(stats.errors),
                cancelled=stats.cancelled,
            )
        return stats

    # -- per kind ----------------------------------------------------------

    async def _run_kind(self, forum: str, kind: ContentKind, stats: RunStats) -> None:
        kind_stats = stats.for_kind(kind)

        self._enter(stats, RunPhase.SELECTING)
        items = select_unevaluated(self.storage, forum, kind, self.options.llm_model)
        kind_stats.found = len(items)
        if not items:
            return
        kind_stats.newest = items[0].created_at
        kind_stats.oldest = items[-1].created_at

        self._enter(stats, RunPhase.BATCHING)
        batches = chunk(items, self.options.batch_size, self.options.max_batches)
        logger.info(
            "batches_composed",
            kind=str(kind),
            batches=len(batches),
            deferred=len(items) - sum(len(b) for b in batches),
        )

        for number, batch in enumerate(batches, 1):
            if self._check_cancelled(stats):
                return
            await self._process_batch(kind, batch, number, len(batches), stats)
            if number < len(batches):
                await self._pace()

    async def _process_batch(
        self,
        kind: ContentKind,
        batch: Batch,
        number: int,
        total: int,
        stats: RunStats,
    ) -> None:
        kind_stats = stats.for_kind(kind)
        where = f"{kind} batch {number}/{total}"
        log = logger.bind(kind=str(kind), batch=number, total=total, size=len(batch))

        texts = [sanitize(item.text, self.options.token_budget) for item in batch]
        try:
            self._enter(stats, RunPhase.EVALUATING)
            raw_items = await self.retry.call(
                self.client.invoke,
                SYSTEM_PROMPTS[kind],
                texts,
                BatchEvaluation,
                ITEM_LABELS[kind],
            )

            self._enter(stats, RunPhase.VALIDATING)
            results = validate_batch(raw_items, self.options.score_policy)

            self._enter(stats, RunPhase.PERSISTING)
            summary = persist_batch(self.storage, batch, results, self.options.llm_model)
        except PipelineError as exc:
            stats.record_error(exc.code, f"{where}: {exc}")
            log.error("batch_failed", error=exc.code, detail=str(exc))
            return
        except Exception as exc:
            stats.record_error(INTERNAL_ERROR, f"{where}: {type(exc).__name__}: {exc}")
            log.error("batch_failed_unexpectedly", error=str(exc), exc_info=True)
            return

        kind_stats.processed += summary.persisted
        kind_stats.skipped += summary.skipped
        for failure in summary.failures:
            stats.record_error(
                failure.code, f"{where}: {kind} {failure.content_id}: {failure}"
            )
        log.info(
            "batch_completed",
            persisted=summary.persisted,
            skipped=summary.skipped,
            processed_total=kind_stats.processed,
            found=kind_stats.found,
        )

    # -- helpers -----------------------------------------------------------

    async def _pace(self) -> None:
        """Inter-batch delay; returns early if the run is cancelled."""
        delay = self.options.inter_batch_delay_ms / 1000
        if delay <= 0:
            return
        if self.cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _check_cancelled(self, stats: RunStats) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            if not stats.cancelled:
                logger.warning("run_cancelled", phase=str(stats.phase))
            stats.cancelled = True
            return True
        return False

    @staticmethod
    def _enter(stats: RunStats, phase: RunPhase) -> None:
        stats.phase = phase
        logger.debug("phase_transition", phase=str(phase))

    def _finish_run(self, run_id: str, stats: RunStats, status: str) -> None:
        try:
            self.storage.finish_run(
                run_id,
                status=status,
                found=stats.found,
                processed=stats.processed,
                error_count=len(stats.errors),
            )
        except Exception:
            # Run history is informational; the summary still reports the outcome
            logger.warning("run_history_update_failed", run_id=run_id, exc_info=True)
