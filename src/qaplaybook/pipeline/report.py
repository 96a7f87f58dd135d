"""Rendering and persistence of the execution report.

Two renderings come from the same ExecutionReport value: the structured JSON
document consumed by CI, and a human-readable summary table.
"""

from __future__ import annotations

import io
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from qaplaybook.models import ExecutionReport, MetricRecord, StageVerdict

if TYPE_CHECKING:
    from pathlib import Path

REPORT_FILENAME = "qa-report.json"
SUMMARY_FILENAME = "analysis-summary.txt"

SEVERITY_ICONS = {
    "pass": "[green]✓[/green]",
    "warn": "[yellow]⚠[/yellow]",
    "fail": "[red]✗[/red]",
}
NOT_RUN_ICON = "[dim]○[/dim]"

# (minimum score, label) in descending order
SCORE_BANDS = (
    (90.0, "EXCELLENT"),
    (80.0, "GOOD"),
    (70.0, "ACCEPTABLE"),
)


@dataclass(frozen=True)
class ReportPaths:
    """Locations of the persisted report files."""

    structured: Path
    summary: Path


def score_band(score: float) -> str:
    """Rating label for a percentage score."""
    for minimum, label in SCORE_BANDS:
        if score >= minimum:
            return label
    return "NEEDS IMPROVEMENT"


def format_value(record: MetricRecord) -> str:
    if record.not_run:
        return "-"
    if record.metric_kind == "ratio":
        passed = record.details.get("passed")
        total = record.details.get("total")
        if passed is not None and total is not None:
            return f"{passed:g}/{total:g} ({record.value:.0%})"
        return f"{record.value:.0%}"
    if record.metric_kind == "score":
        return f"{record.value:.2f}% {score_band(record.value)}"
    if record.metric_kind == "boolean-presence":
        return "present" if record.value else "absent"
    return f"{record.value:g}"


def _format_details(record: MetricRecord) -> str:
    if record.not_run:
        return record.reason or ""
    return ", ".join(f"{name} {value:g}" for name, value in record.details.items())


def _status_cell(record: MetricRecord, verdict: StageVerdict | None) -> str:
    if record.reason == "not_reached":
        return f"{NOT_RUN_ICON} not run"
    if verdict is None:
        return "-"
    return f"{SEVERITY_ICONS[verdict.severity]} {verdict.severity}"


def build_summary_table(report: ExecutionReport) -> Table:
    """Per-stage breakdown with severity icons."""
    table = Table(title=f"QA Execution Analysis ({report.mode.upper()} mode)")
    table.add_column("Stage", style="cyan", no_wrap=True)
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_column("Exit", justify="right", style="dim")
    table.add_column("Details", style="dim")
    table.add_column("Status", style="bold")

    for record in report.per_stage:
        exit_code = "-" if record.exit_code is None else str(record.exit_code)
        stage_label = record.stage_name if record.mandatory else f"{record.stage_name} (optional)"
        table.add_row(
            stage_label,
            record.metric_kind,
            format_value(record),
            exit_code,
            _format_details(record),
            _status_cell(record, report.verdict_for(record.stage_name)),
        )
    return table


def render_summary(report: ExecutionReport, console: Console) -> None:
    """Print the human-readable summary to a rich console."""
    console.print(build_summary_table(report))
    console.print()

    if report.services:
        services = ", ".join(f"{name}: {status}" for name, status in report.services.items())
        console.print(f"[bold]Services:[/bold] {services}")

    for issue in report.issues:
        console.print(f"  [red]✗[/red] {issue}", highlight=False)
    for warning in report.warnings:
        console.print(f"  [yellow]⚠[/yellow] {warning}", highlight=False)

    console.print()
    if report.overall_status == "done":
        console.print("[green]✓ No critical issues found[/green]")
    else:
        count = len(report.issues)
        console.print(f"[red]✗ Found {count} issue(s) needing attention[/red]")
    seed = "-" if report.seed is None else str(report.seed)
    console.print(
        f"[dim]Generated {report.timestamp.isoformat(timespec='seconds')}, seed {seed}, "
        f"exit code {report.exit_code}[/dim]"
    )


def render_text(report: ExecutionReport, width: int = 110) -> str:
    """Plain-text rendering of the summary, without color codes."""
    console = Console(
        record=True, file=io.StringIO(), width=width, color_system=None, force_terminal=False
    )
    render_summary(report, console)
    return console.export_text()


def write_reports(report: ExecutionReport, reports_dir: Path) -> ReportPaths:
    """Write the structured and human-readable reports, replacing previous ones."""
    reports_dir.mkdir(parents=True, exist_ok=True)
    paths = ReportPaths(
        structured=reports_dir / REPORT_FILENAME,
        summary=reports_dir / SUMMARY_FILENAME,
    )
    payload = report.model_dump(mode="json")
    paths.structured.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    paths.summary.write_text(render_text(report), encoding="utf-8")
    return paths


def load_report(path: Path) -> ExecutionReport:
    """Read a persisted structured report."""
    return ExecutionReport.model_validate_json(path.read_text(encoding="utf-8"))
