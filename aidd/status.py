"""Markdown status and validation reports."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from tabulate import tabulate

from .config import STATUS_FILE
from .features import PRIORITY_NAMES, FeatureStore, ValidationReport
from .todos import COMPLETE, INCOMPLETE, find_todo_file, scan_todo_file

CLOSED_STATUSES = ("completed", "verified")
PRIORITY_ORDER = ("critical", "high", "medium", "low")


def _table(rows: list[list], headers: list[str]) -> str:
    return tabulate(rows, headers=headers, tablefmt="github")


def priority_name(value) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "medium"
    return PRIORITY_NAMES.get(int(value), "low" if value > 4 else "critical")


def _label(rec: dict) -> str:
    title = rec.get("title") or rec.get("description") or ""
    title = str(title).splitlines()[0] if title else ""
    return f"`{rec.get('id', '?')}` {title}".rstrip()


def _grouped(records: list[dict]) -> list[str]:
    lines: list[str] = []
    for prio in PRIORITY_ORDER:
        bucket = [r for r in records if priority_name(r.get("priority")) == prio]
        if not bucket:
            continue
        lines.append(f"**{prio.title()}** ({len(bucket)})")
        lines.append("")
        lines.extend(f"- {_label(r)}" for r in bucket)
        lines.append("")
    return lines or ["_None._", ""]


def render_status(project_dir: Path, metadata_dir: Path, now: Optional[datetime] = None) -> str:
    """Render the project status report as markdown."""
    now = now or datetime.now()
    coding_entries, audit_entries = FeatureStore(metadata_dir).split()
    coding = [e.data for e in coding_entries if e.data is not None]
    audit_open = [e.data for e in audit_entries if e.data.get("passes") is not True]

    passing = [r for r in coding if r.get("passes") is True]
    failing = [r for r in coding if r.get("passes") is not True]
    closed = [r for r in coding if r.get("status") in CLOSED_STATUSES]
    open_ = [r for r in coding if r.get("status") not in CLOSED_STATUSES]
    percent = (100.0 * len(passing) / len(coding)) if coding else 0.0

    out = [
        "# Project Status",
        "",
        f"_Generated {now.strftime('%Y-%m-%d %H:%M:%S')} for `{project_dir}`_",
        "",
        "## Summary",
        "",
        _table(
            [
                ["Total features", len(coding)],
                ["Passing", len(passing)],
                ["Failing", len(failing)],
                ["Open", len(open_)],
                ["Closed", len(closed)],
                ["Complete", f"{percent:.1f}%"],
                ["Unfixed audit findings", len(audit_open)],
            ],
            ["Metric", "Value"],
        ),
        "",
        "## Passing Features",
        "",
        *_grouped(passing),
        "## Open Features",
        "",
        *_grouped(open_),
    ]

    categories = sorted({str(r.get("category") or "(none)") for r in coding})
    if categories:
        rows = []
        for cat in categories:
            in_cat = [r for r in coding if str(r.get("category") or "(none)") == cat]
            counts = [sum(1 for r in in_cat if priority_name(r.get("priority")) == p) for p in PRIORITY_ORDER]
            rows.append([cat, *counts, len(in_cat)])
        out += ["## Categories", "", _table(rows, ["Category", *[p.title() for p in PRIORITY_ORDER], "Total"]), ""]

    out += ["## TODOs", ""]
    todo_path = find_todo_file(project_dir, metadata_dir)
    if todo_path is None:
        out += ["_No TODO file found._", ""]
    else:
        todos = scan_todo_file(todo_path)
        out += [
            f"Source: `{todo_path}`",
            "",
            _table(
                [[todos.incomplete, todos.complete, todos.deferred, todos.total]],
                ["Incomplete", "Completed", "Deferred", "Total"],
            ),
            "",
        ]
        if todos.incomplete:
            out += ["### Incomplete", "", *[f"- [ ] {t}" for t in todos.texts(INCOMPLETE)], ""]
        if todos.complete:
            out += ["### Completed", "", *[f"- [x] {t}" for t in todos.texts(COMPLETE)], ""]
    return "\n".join(out).rstrip() + "\n"


def write_status_file(project_dir: Path, metadata_dir: Path) -> Path:
    path = metadata_dir / STATUS_FILE
    path.write_text(render_status(project_dir, metadata_dir), encoding="utf-8")
    return path


def render_validation(report: ValidationReport) -> str:
    lines = [f"Feature validation for {report.project_dir}", ""]
    if not report.files:
        lines.append("No feature files found.")
        return "\n".join(lines) + "\n"

    rows = []
    for f in report.files:
        rows.append([f.feature_id, "ok" if f.valid else "INVALID", len(f.errors)])
    lines += [_table(rows, ["Feature", "Result", "Errors"]), ""]

    for f in report.invalid:
        lines.append(f"{f.path}:")
        lines.extend(f"  - {err}" for err in f.errors)
    if report.invalid:
        lines.append("")

    breakdown = report.status_breakdown()
    if breakdown:
        lines += [_table(list(breakdown.items()), ["Status", "Count"]), ""]
    lines.append(f"Total: {report.total}  Valid: {report.valid_count}  Invalid: {len(report.invalid)}")
    return "\n".join(lines) + "\n"
