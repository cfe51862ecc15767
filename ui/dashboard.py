"""
Rich-based terminal dashboard for speed-check results.

All formatting helpers live in ``client.stats`` -- this module only does
presentation via the ``rich`` library.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from client.aggregate import AggregatedMetric, MetricKind, Provenance
from client.api import ClientInfo
from client.grading import grade_color, quality_color
from client.orchestrator import ProgressEvent, TestState
from client.result import SpeedTestResult
from client.samples import Sample, SampleKind, ok_values
from client.stats import LatencyStats, format_bytes, format_latency, format_speed

console = Console()

_STATE_LABELS: Dict[TestState, str] = {
    TestState.PINGING: "Ping",
    TestState.MEASURING_JITTER: "Jitter",
    TestState.DOWNLOADING: "Download",
    TestState.UPLOADING: "Upload",
    TestState.GRADING: "Grading",
    TestState.COMPLETE: "Done",
}

_PROVENANCE_MARKS = {
    Provenance.MEASURED: "",
    Provenance.ESTIMATED: " [yellow](estimated)[/yellow]",
    Provenance.UNAVAILABLE: " [red](unavailable)[/red]",
}


# ---------------------------------------------------------------------------
# Histogram helper
# ---------------------------------------------------------------------------

_BARS = "▁▂▃▄▅▆▇█"


def create_histogram(values: List[float]) -> str:
    """Return a single-line Unicode bar-chart."""
    if not values:
        return "No data"

    lo, hi = min(values), max(values)
    span = hi - lo if hi > lo else 1.0
    return "".join(_BARS[int((v - lo) / span * (len(_BARS) - 1))] for v in values)


def _sample_display(sample: Sample) -> str:
    if not sample.ok:
        return "-"
    if sample.kind in (SampleKind.DOWNLOAD, SampleKind.UPLOAD):
        return format_speed(sample.mbps)
    return format_latency(sample.value)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------

def print_header(server_url: str = "") -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]SpeedCheck[/bold cyan]\n"
            "[dim]Download, upload, ping and jitter with a connection grade[/dim]"
            + (f"\n[dim]Server: {server_url}[/dim]" if server_url else ""),
            border_style="cyan",
        )
    )
    console.print()


def print_client_info(info: ClientInfo) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="bold")
    table.add_row("IP Address:", info.ip)
    table.add_row("ISP:", info.isp)
    table.add_row("Location:", f"{info.city}, {info.country}")
    console.print(Panel(table, title="[bold]Client Info[/bold]", border_style="blue"))


def print_sample_table(metric: AggregatedMetric, title: str) -> None:
    """Per-attempt outcomes behind one aggregated metric."""
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("#", style="dim", width=4)
    table.add_column("Source")
    table.add_column("Value", justify="right")
    table.add_column("Outcome")

    for i, sample in enumerate(metric.samples):
        style = None if sample.ok else "red"
        table.add_row(
            str(i + 1),
            format_bytes(sample.byte_size) if sample.byte_size else sample.source[:40],
            _sample_display(sample),
            sample.outcome.value if sample.ok else f"{sample.outcome.value}: {sample.error or ''}",
            style=style,
        )
    console.print(table)

    values = ok_values(metric.samples)
    if len(values) > 1:
        console.print(f"  [cyan]{create_histogram(values)}[/cyan]")
    if values and metric.metric_kind in (MetricKind.PING, MetricKind.JITTER):
        stats = LatencyStats(samples=values)
        stats.calculate()
        console.print(
            f"  [dim]Min: {stats.min:.1f} ms  Median: {stats.median:.1f} ms  "
            f"IQM: {stats.iqm:.1f} ms  Max: {stats.max:.1f} ms[/dim]"
        )


def print_final_results(result: SpeedTestResult) -> None:
    def _mark(kind: MetricKind) -> str:
        return _PROVENANCE_MARKS[result.provenance(kind)]

    color = grade_color(result.grade)
    quality = result.quality

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Server:[/bold cyan] {result.server_label}\n\n"
            f"[bold white]   Ping:[/bold white]  [bold yellow]{format_latency(result.ping_ms)}[/bold yellow]"
            f"{_mark(MetricKind.PING)}  "
            f"[dim](jitter: {result.jitter_ms:.2f} ms)[/dim]{_mark(MetricKind.JITTER)}\n"
            f"[bold white]   Download:[/bold white]  [bold green]{format_speed(result.download_mbps)}[/bold green]"
            f"{_mark(MetricKind.DOWNLOAD)}\n"
            f"[bold white]   Upload:[/bold white]  [bold blue]{format_speed(result.upload_mbps)}[/bold blue]"
            f"{_mark(MetricKind.UPLOAD)}\n\n"
            f"[bold white]   Grade:[/bold white]  [bold {color}]{result.grade}[/bold {color}]",
            title="[bold]Results[/bold]",
            border_style="cyan",
        )
    )

    table = Table(title="Network Quality", box=box.SIMPLE)
    table.add_column("Score", style="bold")
    table.add_column("Value", justify="right")
    for name, score in quality.to_dict().items():
        c = quality_color(score)
        table.add_row(name.capitalize(), f"[{c}]{score:.0f}/100[/{c}]")
    c = quality_color(quality.overall)
    table.add_row("Overall", f"[bold {c}]{quality.overall:.0f}/100[/bold {c}]")
    console.print(table)
    console.print()


def print_capabilities(capabilities: dict) -> None:
    table = Table(title="Server Capabilities", box=box.ROUNDED, show_header=False)
    table.add_column(style="dim")
    table.add_column(style="bold")
    for key, value in capabilities.items():
        table.add_row(key, ", ".join(str(v) for v in value) if isinstance(value, list) else str(value))
    console.print(table)


# ---------------------------------------------------------------------------
# Progress display
# ---------------------------------------------------------------------------

class ProgressDisplay:
    """Drives a ``rich`` progress bar from orchestrator :class:`ProgressEvent` objects."""

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[bold cyan]{task.fields[reading]}[/bold cyan]"),
            TimeElapsedColumn(),
            console=console,
        )
        self._task_id = None

    def start(self, description: str = "Starting") -> None:
        self.progress.start()
        self._task_id = self.progress.add_task(description, total=100, reading="")

    def update(self, event: ProgressEvent) -> None:
        if self._task_id is None:
            return
        reading = _sample_display(event.sample) if event.sample is not None else "..."
        self.progress.update(
            self._task_id,
            completed=event.progress,
            description=_STATE_LABELS.get(event.state, event.state.value),
            reading=reading,
        )

    def stop(self) -> None:
        self.progress.stop()


def print_metric_details(metrics: Dict[MetricKind, AggregatedMetric], kinds: Optional[Sequence[MetricKind]] = None) -> None:
    titles = {
        MetricKind.PING: "Ping Samples",
        MetricKind.JITTER: "Jitter Samples",
        MetricKind.DOWNLOAD: "Download Transfers",
        MetricKind.UPLOAD: "Upload Transfers",
    }
    for kind in kinds or list(MetricKind):
        metric = metrics.get(kind)
        if metric is not None and metric.samples:
            print_sample_table(metric, titles[kind])
