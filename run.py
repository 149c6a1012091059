"""CLI entry point for the forum content evaluation pipeline.

Usage:
    python run.py                                  # All configured forums
    python run.py --forum ARBITRUM                 # One forum
    python run.py --forum SAFE --forum UNISWAP     # Several forums
    python run.py --batch-size 50 --max-batches 2  # Bound the run
    python run.py --kind post --kind thread        # Only some content kinds
    python run.py --concurrency 3                  # Up to 3 forums at once

Exit status: 0 clean run, 1 when any batch or item error was recorded,
2 when a forum run failed fatally.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from collections.abc import Sequence

import structlog

from forumeval.config import PipelineSettings, get_pipeline_settings, get_settings
from forumeval.logging_config import setup_logging
from forumeval.models import create_llm
from forumeval.persistence.storage import SQLiteStorage
from forumeval.pipeline.client import EvaluationClient, LangChainEvaluator
from forumeval.pipeline.orchestrator import BatchOrchestrator, PipelineOptions
from forumeval.pipeline.retry import RetryController
from forumeval.schemas.content import ContentKind
from forumeval.utils.console import (
    EXIT_FATAL,
    console,
    exit_code_for,
    print_header,
    print_info,
    print_run_summary,
)

logger = structlog.get_logger(__name__)


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return value


def _non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return value


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Evaluate unevaluated forum posts, topics and threads with an LLM.",
    )
    parser.add_argument(
        "--forum",
        action="append",
        default=None,
        metavar="NAME",
        help="Forum to process (repeatable). Default: every forum in pipeline.toml.",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=None,
        help="Items per model call (default: pipeline.toml, 100).",
    )
    parser.add_argument(
        "--max-batches",
        type=_positive_int,
        default=None,
        help="Maximum batches per forum and content kind (default: unlimited).",
    )
    parser.add_argument(
        "--kind",
        action="append",
        choices=[k.value for k in ContentKind],
        default=None,
        help="Content kind to evaluate (repeatable). Default: topic, post, thread.",
    )
    parser.add_argument(
        "--delay-ms",
        type=_non_negative_int,
        default=None,
        help="Pause between consecutive batches in milliseconds.",
    )
    parser.add_argument(
        "--concurrency",
        type=_positive_int,
        default=None,
        help="Maximum forums processed at once (default: 1).",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: DATABASE_PATH or data/pipeline.db).",
    )
    return parser.parse_args(argv)


def build_options(args: argparse.Namespace, pipeline_settings: PipelineSettings) -> PipelineOptions:
    """Merge CLI overrides over pipeline.toml values."""
    kinds = None
    if args.kind:
        kinds = tuple(dict.fromkeys(ContentKind(k) for k in args.kind))
    return PipelineOptions.from_settings(
        pipeline_settings,
        batch_size=args.batch_size,
        max_batches=args.max_batches,
        inter_batch_delay_ms=args.delay_ms,
        kinds=kinds,
        max_concurrent_forums=args.concurrency,
    )


def resolve_forums(requested: Sequence[str] | None, pipeline_settings: PipelineSettings) -> list[str]:
    """Upper-case and validate requested forum names.

    Raises:
        ValueError: a requested forum is not configured.
    """
    if not requested:
        return list(pipeline_settings.forums.names)
    forums = list(dict.fromkeys(name.upper() for name in requested))
    unknown = [f for f in forums if not pipeline_settings.has_forum(f)]
    if unknown:
        raise ValueError(
            f"Unknown forum(s): {', '.join(unknown)}. "
            f"Configured: {', '.join(pipeline_settings.forums.names)}"
        )
    return forums


def _install_signal_handlers(cancel_event: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform's event loop
            continue
        installed.append(sig)
    return installed


async def run(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    pipeline_settings = get_pipeline_settings()

    try:
        forums = resolve_forums(args.forum, pipeline_settings)
    except ValueError as e:
        console.print(f"[bold red]{e}[/bold red]")
        return EXIT_FATAL

    options = build_options(args, pipeline_settings)
    print_header(forums, options, pipeline_settings.retry.max_attempts)

    llm = create_llm(settings, pipeline_settings)
    client = EvaluationClient(
        LangChainEvaluator(llm),
        llm_model=options.llm_model,
        timeout=pipeline_settings.defaults.timeout,
    )
    retry = RetryController.from_config(pipeline_settings.retry)

    cancel_event = asyncio.Event()
    installed = _install_signal_handlers(cancel_event)

    storage = SQLiteStorage.open(args.db or settings.database_path)
    try:
        orchestrator = BatchOrchestrator(storage, client, retry, options, cancel_event)
        print_info("Starting evaluation...")
        reports = await orchestrator.run(forums)
    finally:
        storage.close()
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    if cancel_event.is_set():
        print_info("Run cancelled; in-flight batches were completed.")
    print_run_summary(reports)
    code = exit_code_for(reports)
    logger.info("run_finished", exit_code=code, forums=len(reports))
    return code


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
