"""Rich tables for live progress and the final summary."""

from __future__ import annotations

from rich.table import Table

from escrowload.metrics.aggregator import AggregateReport


def _fmt_cost(value: float | int | None) -> str:
    if value is None:
        return "-"
    return f"{value:,.0f}"


def _fmt_ms(value: float | None) -> str:
    if value is None:
        return "-"
    return f"{value:,.1f}"


def generate_stats_table(
    report: AggregateReport,
    title: str,
    target_cycles: int | None = None,
) -> Table:
    """Per-step table with a totals row."""
    table = Table(title=title)
    table.add_column("Step", style="cyan")
    table.add_column("OK", style="green", justify="right")
    table.add_column("Failed", style="red", justify="right")
    table.add_column("Skipped", style="yellow", justify="right")
    table.add_column("Avg cost", justify="right")
    table.add_column("Min / Max cost", justify="right")
    table.add_column("Avg ms", justify="right")

    step_names = list(report.steps)
    for idx, name in enumerate(step_names):
        stats = report.steps[name]
        prefix = "└─ " if idx == len(step_names) - 1 else "├─ "
        failed = f"[red]{stats.failed:,}[/red]" if stats.failed else f"[dim]{stats.failed:,}[/dim]"
        table.add_row(
            f"[dim]{prefix}[/dim]{name}",
            f"{stats.succeeded:,}",
            failed,
            f"{stats.skipped:,}",
            _fmt_cost(stats.avg_cost if stats.attempted else None),
            f"{_fmt_cost(stats.min_cost)} / {_fmt_cost(stats.max_cost)}",
            _fmt_ms(stats.avg_duration_ms if stats.attempted else None),
        )

    table.add_section()
    progress = f"{report.total_cycles:,}"
    if target_cycles:
        progress = f"{progress}/{target_cycles:,}"
    rate = report.success_rate * 100
    rate_display = (
        f"[bold green]{rate:.1f}%[/bold green]"
        if rate >= 99.5
        else f"[bold red]{rate:.1f}%[/bold red]"
    )
    table.add_row(
        f"[bold]CYCLES {progress}[/bold]",
        f"[bold]{report.succeeded:,}[/bold]",
        f"[bold]{report.failed:,}[/bold]",
        f"[bold]{report.skipped_steps:,}[/bold]",
        _fmt_cost(report.avg_cost_per_cycle if report.succeeded else None),
        rate_display,
        f"{report.throughput:.2f}/s" if report.elapsed_seconds else "",
    )
    return table


def generate_failure_table(report: AggregateReport) -> Table | None:
    """Failure counts grouped by step and error class, or None if nothing failed."""
    if not report.failures:
        return None
    table = Table(title="Failures")
    table.add_column("Step", style="cyan")
    table.add_column("Error class", style="magenta")
    table.add_column("Count", style="red", justify="right")
    for step, classes in report.failures.items():
        for error_class, count in classes.items():
            table.add_row(step, error_class, f"{count:,}")
    return table
