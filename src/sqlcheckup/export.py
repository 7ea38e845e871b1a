"""Report output: delimited file, JSON payload and console summary."""
from __future__ import annotations

import csv
import json
import os
import tempfile
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .assessment.models import AssessmentRun, InstanceReport, RuleDefinition, RuleStatus
from .assessment.utils import serialize_run

REPORT_PREFIX = "sqlcheckup"

DESCRIPTIVE_COLUMNS: tuple[str, ...] = (
    "Version",
    "Build",
    "Edition",
    "MemoryMB",
    "CPUs",
    "NUMANodes",
    "MaxDOP",
    "RecommendedMaxDOP",
)

_STATUS_STYLE = {
    RuleStatus.OK: "[green]OK[/green]",
    RuleStatus.REVIEW: "[yellow]REVIEW[/yellow]",
    RuleStatus.NOT_APPLICABLE: "[dim]N/A[/dim]",
}


class ExportError(RuntimeError):
    """Raised when the report file cannot be written."""


def report_columns(rules: Sequence[RuleDefinition]) -> list[str]:
    """Return the header row in export order."""
    columns = ["Server", "Instance"]
    columns.extend(rule.title for rule in rules)
    columns.extend(DESCRIPTIVE_COLUMNS)
    columns.extend(f"{rule.title}Detail" for rule in rules)
    columns.append("UnavailableCategories")
    return columns


def _cell(value: object) -> str:
    return "" if value is None else str(value)


def report_row(report: InstanceReport, rules: Sequence[RuleDefinition]) -> list[str]:
    """Return one data row for *report* matching :func:`report_columns`."""
    row = [report.identity.server_name, report.identity.instance_name]
    for rule in rules:
        status = report.status_of(rule.id)
        row.append(status.value if status is not None else "")
    row.extend(
        _cell(value)
        for value in (
            report.version_label,
            report.build_number,
            report.edition,
            report.physical_memory_mb,
            report.cpu_count,
            report.numa_node_count,
            report.max_dop,
            report.recommended_max_dop,
        )
    )
    for rule in rules:
        verdict = report.verdicts.get(rule.id)
        row.append(verdict.detail if verdict is not None else "")
    row.append(",".join(report.unavailable_categories))
    return row


def iter_rows(run: AssessmentRun, rules: Sequence[RuleDefinition]) -> Iterator[list[str]]:
    """Yield the header followed by one row per report."""
    yield report_columns(rules)
    for report in run.reports:
        yield report_row(report, rules)


def default_report_path(output_dir: Path, *, now: datetime | None = None) -> Path:
    """Return a timestamped report file path inside *output_dir*."""
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%dT%H%M%SZ")
    return Path(output_dir).expanduser() / f"{REPORT_PREFIX}-{stamp}.csv"


def write_report(
    run: AssessmentRun,
    rules: Sequence[RuleDefinition],
    path: Path,
    *,
    delimiter: str = ";",
) -> Path:
    """Atomically write the delimited report to *path*."""
    if len(delimiter) != 1:
        raise ExportError("Delimiter must be a single character.")
    target = Path(path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    except OSError as exc:
        raise ExportError(f"Cannot prepare report location {target.parent}: {exc}") from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle, delimiter=delimiter)
            writer.writerows(iter_rows(run, rules))
        os.replace(tmp_path, target)
    except OSError as exc:
        raise ExportError(f"Failed to write report {target}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return target


def render_json(run: AssessmentRun) -> str:
    """Return the JSON document for *run*."""
    return json.dumps(serialize_run(run), indent=2)


def render_summary(
    run: AssessmentRun,
    rules: Sequence[RuleDefinition],
    console: Console,
) -> None:
    """Print per-rule tallies and the failed targets."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Rule", style="bold")
    table.add_column("OK", justify="right")
    table.add_column("REVIEW", justify="right")
    table.add_column("N/A", justify="right")
    for rule in rules:
        tally = run.tallies.get(rule.id)
        if tally is None:
            table.add_row(rule.title, "0", "0", "0")
            continue
        table.add_row(
            rule.title,
            str(tally.ok),
            f"[yellow]{tally.review}[/yellow]" if tally.review else "0",
            str(tally.not_applicable),
        )
    console.print(table)
    console.print(
        f"Instances assessed: {len(run.reports)}; "
        f"review items: {run.review_count}; failed targets: {len(run.failures)}"
    )
    for failure in run.failures:
        target = escape(str(failure.target))
        console.print(f"[red]FAILED[/red] {target}: {escape(failure.reason)}")


def render_instance(
    report: InstanceReport,
    rules: Sequence[RuleDefinition],
    console: Console,
) -> None:
    """Print the verdicts for one instance."""
    identity = escape(str(report.identity))
    console.print(f"[bold]{identity}[/bold] ({escape(report.version_label)})")
    for rule in rules:
        verdict = report.verdicts.get(rule.id)
        if verdict is None:
            continue
        status = _STATUS_STYLE[verdict.status]
        console.print(f"  {status} {rule.title}: {escape(verdict.detail)}")


__all__ = [
    "DESCRIPTIVE_COLUMNS",
    "ExportError",
    "default_report_path",
    "iter_rows",
    "render_instance",
    "render_json",
    "render_summary",
    "report_columns",
    "report_row",
    "write_report",
]
