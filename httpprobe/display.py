"""Rich terminal output for httpprobe."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from httpprobe.config import PHASE_LABELS
from httpprobe.export import format_datetime
from httpprobe.models import Metric, ProbeResult

console = Console()
err_console = Console(stderr=True)

# Phase-specific thresholds for color coding (milliseconds)
PHASE_THRESHOLDS = {
    "dnsLookup": {"fast": 5.0, "medium": 20.0},
    "tcpConnection": {"fast": 10.0, "medium": 30.0},
    "tlsHandshake": {"fast": 20.0, "medium": 50.0},
    "firstByte": {"fast": 30.0, "medium": 80.0},
    "contentTransfer": {"fast": 50.0, "medium": 150.0},
}


def _color_for_ms(value: float, phase: str) -> str:
    """Return a Rich color name based on latency value and phase thresholds."""
    thresholds = PHASE_THRESHOLDS.get(phase, PHASE_THRESHOLDS["contentTransfer"])
    if value <= thresholds["fast"]:
        return "green"
    elif value <= thresholds["medium"]:
        return "yellow"
    return "red"


def _fmt_value(metric: Metric) -> Text:
    value = metric.value
    if value is None:
        return Text("—", style="dim")
    if metric.name == "httpDuration":
        ms = float(value) * 1000.0
        return Text(f"{ms:.1f}ms", style=_color_for_ms(ms, metric.tags.get("phase", "")))
    if isinstance(value, bool):
        return Text("yes" if value else "no", style="green" if value else "yellow")
    if isinstance(value, datetime):
        return Text(format_datetime(value))
    return Text(str(value))


def _metric_label(metric: Metric) -> str:
    phase = metric.tags.get("phase")
    if phase:
        return f"{metric.name} [dim]({PHASE_LABELS.get(phase, phase)})[/dim]"
    return metric.name


def build_metrics_table(result: ProbeResult) -> Table:
    """Build the metrics table."""
    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        pad_edge=True,
        header_style="bold",
    )
    table.add_column("Metric", style="bold", min_width=16)
    table.add_column("Value", justify="right", min_width=8)
    table.add_column("Unit", style="dim")

    for metric in result.metrics:
        table.add_row(
            _metric_label(metric),
            _fmt_value(metric),
            metric.unit,
            end_section=metric.name == "httpContentLength",
        )

    return table


def build_failures_table(result: ProbeResult) -> Optional[Table]:
    """Build the failures table, or None if nothing failed."""
    if not result.failures:
        return None

    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
    )
    table.add_column("Cause", style="red")
    table.add_column("Description")
    table.add_column("Actual", justify="right")
    table.add_column("Expected", justify="right")

    for failure in result.failures:
        table.add_row(
            failure.cause,
            failure.description,
            Text("" if failure.actual is None else str(failure.actual), style="dim"),
            Text("" if failure.expected is None else str(failure.expected), style="dim"),
        )

    return table


def render_result(result: ProbeResult) -> None:
    """Render a complete probe result."""
    status = "[bold green]success[/bold green]" if result.success else "[bold red]failed[/bold red]"
    console.print(f"[bold]{result.target}[/bold] — {status}")

    console.print(build_metrics_table(result))

    status_code = result.get_metric("httpStatusCode")
    if status_code is not None and status_code.value is None:
        console.print("  [red]No response received[/red]")

    failures = build_failures_table(result)
    if failures is not None:
        console.print()
        console.print(failures)


def render_error(message: str) -> None:
    """Display an error message."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
