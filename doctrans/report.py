from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from . import storage
from .pipeline import BatchReport


PROBLEM_COLUMNS = ["document", "unit_id", "content_ref", "role", "status", "attempts", "register_score", "reason", "notes"]


def _cell(value: object) -> str:
    return str(value if value is not None else "").replace("|", "\\|").replace("\n", " ")


def render_markdown(report: BatchReport) -> str:
    """Human-readable batch summary for manual review."""
    lines: List[str] = ["# Translation quality report", ""]
    lines.append(f"- Started: {report.started_at}")
    lines.append(f"- Finished: {report.finished_at}")
    lines.append(f"- Documents: {len(report.documents)} ({len(report.failed)} not emitted)")
    if report.cancelled:
        lines.append("- Cancelled by the operator before every unit was attempted")
    if report.memory_stats:
        lines.append(f"- Translation memory entries: {report.memory_stats.get('entries', 0)}")
        lines.append(
            "- Memory lookups: {} exact, {} fuzzy, {} misses".format(
                report.memory_stats.get("hits", 0),
                report.memory_stats.get("fuzzy", 0),
                report.memory_stats.get("misses", 0),
            )
        )
    lines.append("")

    lines += ["## Units by status", "", "| Status | Units |", "|---|---|"]
    for status, count in report.status_totals().items():
        lines.append(f"| {status} | {count} |")
    lines.append("")

    lines += ["## Documents", "", "| Document | Target | State | Output | Calls | Memory hits |", "|---|---|---|---|---|---|"]
    for d in report.documents:
        calls = d.translation.calls if d.translation else 0
        hits = d.translation.memory_hits if d.translation else 0
        state = d.state if d.error is None else f"{d.state} ({d.error.code})"
        lines.append(f"| {_cell(d.name)} | {_cell(d.target_language)} | {_cell(state)} | {_cell(d.output)} | {calls} | {hits} |")
    lines.append("")

    rows = report.problem_rows()
    lines += ["## Units needing review", ""]
    if not rows:
        lines.append("None.")
    else:
        lines += ["| Document | Unit | Content | Status | Reason |", "|---|---|---|---|---|"]
        for r in rows:
            lines.append(
                f"| {_cell(r['document'])} | {_cell(r['unit_id'])} | {_cell(r['content_ref'])} | {_cell(r['status'])} | {_cell(r['reason'])} |"
            )
    lines.append("")

    conflicts = report.conflicts()
    if conflicts:
        lines += ["## Linkage conflicts", "", "| Document | Group | Language | Linked | Refused |", "|---|---|---|---|---|"]
        for c in conflicts:
            lines.append(
                f"| {_cell(c['document'])} | {_cell(c['group_id'])} | {_cell(c['language'])} | {_cell(c['existing'])} | {_cell(c['incoming'])} |"
            )
        lines.append("")

    failed = [d for d in report.failed if d.error is not None]
    if failed:
        lines += ["## Document errors", ""]
        for d in failed:
            lines.append(f"- `{d.source}`: {d.error}")
        lines.append("")
    return "\n".join(lines)


def write_quality_report(report: BatchReport, md_path: str | Path, csv_path: Optional[str | Path] = None) -> Path:
    md = Path(md_path)
    storage.write_text(md, render_markdown(report))
    if csv_path:
        storage.write_rows_csv(csv_path, report.problem_rows(), columns=PROBLEM_COLUMNS)
    return md
