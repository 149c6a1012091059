"""Rich console output for run start and end-of-run summaries."""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from forumeval.pipeline.orchestrator import PipelineOptions
from forumeval.schemas.stats import ForumReport

console = Console()

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_FATAL = 2


def exit_code_for(reports: Sequence[ForumReport]) -> int:
    """2 if any forum run failed fatally, 1 if any error was recorded, else 0."""
    if any(r.failed for r in reports):
        return EXIT_FATAL
    if any(r.stats.has_errors for r in reports):
        return EXIT_ERRORS
    return EXIT_OK


def print_header(forums: Sequence[str], options: PipelineOptions, max_attempts: int) -> None:
    """Print the startup banner."""
    batches = options.max_batches if options.max_batches is not None else "unlimited"
    console.print()
    console.print(
        Panel(
            f"[bold]Forum Content Evaluation[/bold]\n\n"
            f"  Forums: [cyan]{', '.join(forums)}[/cyan]\n"
            f"  Kinds: [cyan]{', '.join(str(k) for k in options.kinds)}[/cyan]\n"
            f"  Model: [cyan]{options.llm_model}[/cyan]\n"
            f"  Batch size: [cyan]{options.batch_size}[/cyan] (max batches: {batches})\n"
            f"  Delay: [cyan]{options.inter_batch_delay_ms} ms[/cyan]\n"
            f"  Retry: [cyan]{max_attempts} attempts[/cyan]",
            border_style="bright_blue",
            padding=(1, 2),
        )
    )
    console.print()


def _status(report: ForumReport) -> str:
    if report.failed:
        return "[bold red]FAILED[/bold red]"
    if report.stats.cancelled:
        return "[yellow]cancelled[/yellow]"
    if report.stats.has_errors:
        return "[yellow]errors[/yellow]"
    return "[green]ok[/green]"


def print_run_summary(reports: Sequence[ForumReport]) -> None:
    """Print one row per (forum, kind) followed by any recorded errors."""
    table = Table(title="Evaluation Summary", header_style="bold")
    table.add_column("Forum")
    table.add_column("Kind")
    table.add_column("Found", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Newest")
    table.add_column("Oldest")
    table.add_column("Status")

    for report in reports:
        kinds = report.stats.kinds
        if not kinds:
            table.add_row(report.forum, "-", "0", "0", "0", "-", "-", _status(report))
            continue
        for i, (kind, ks) in enumerate(kinds.items()):
            table.add_row(
                report.forum if i == 0 else "",
                str(kind),
                str(ks.found),
                str(ks.processed),
                str(ks.skipped),
                ks.newest or "-",
                ks.oldest or "-",
                _status(report) if i == 0 else "",
            )

    console.print()
    console.print(table)

    for report in reports:
        if not report.stats.errors:
            continue
        console.print(f"\n[bold red]{report.forum}: {len(report.stats.errors)} error(s)[/bold red]")
        for entry in report.stats.errors:
            console.print(f"  [red]{entry.type}[/red] {entry.message}")
    console.print()


def print_info(message: str) -> None:
    """Print an informational message."""
    console.print(f"  [dim]{message}[/dim]")
