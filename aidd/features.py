"""
Feature store reader and feature.json validation.

Each feature lives in ``<metadata>/features/<id>/feature.json``. The engine
only reads and validates these records; the agent owns every write.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from .config import FEATURE_FILE, FEATURES_DIR

FEATURE_ID_RE = re.compile(
    r"^((feature|audit-[a-z]+)-[0-9]+-[a-zA-Z0-9-]+|remediation(-[0-9]+)?-[a-zA-Z0-9-]+)$"
)

VALID_STATUSES = (
    "backlog",
    "pending",
    "running",
    "completed",
    "failed",
    "verified",
    "waiting_approval",
    "in_progress",
)
VALID_THINKING_LEVELS = ("none", "low", "medium", "high", "ultrathink")
VALID_REASONING_EFFORTS = ("none", "minimal", "low", "medium", "high", "xhigh")
VALID_PLANNING_MODES = ("skip", "lite", "spec", "full")
VALID_PLAN_SPEC_STATUSES = ("pending", "generating", "generated", "approved", "rejected")

_STRING_OR_NULL = (
    "title",
    "spec",
    "model",
    "error",
    "summary",
    "branchName",
    "startedAt",
    "createdAt",
    "updatedAt",
)
_BOOLEAN = ("titleGenerating", "passes", "skipTests", "requirePlanApproval")
_ARRAY_OR_NULL = ("dependencies", "imagePaths", "textFilePaths", "descriptionHistory")

PRIORITY_NAMES = {1: "critical", 2: "high", 3: "medium", 4: "low"}


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _check_enum(errors: list[str], label: str, value: Any, valid: Iterable[str]) -> None:
    if value is None or value == "":
        return
    valid = tuple(valid)
    if value not in valid:
        errors.append(f"Invalid '{label}' value: '{value}' (valid: {' '.join(valid)})")


def validate_record(data: Any, known_ids: Optional[set[str]] = None) -> list[str]:
    """Return a list of problems with one feature record (empty when valid)."""
    if not isinstance(data, dict):
        return [f"Feature record must be a JSON object (got: {_json_type(data)})"]

    errors: list[str] = []

    feature_id = data.get("id")
    if not feature_id:
        errors.append("Missing required field: id")
    elif not isinstance(feature_id, str) or not FEATURE_ID_RE.match(feature_id):
        errors.append(
            f"Invalid 'id' format: '{feature_id}' (expected: feature-{{timestamp}}-{{random}}, "
            "audit-{type}-{timestamp}-{description}, or remediation-({timestamp}-)?{slug})"
        )
    if not data.get("category"):
        errors.append("Missing required field: category")
    if not data.get("description"):
        errors.append("Missing required field: description")
    if "title" not in data:
        errors.append("Missing required field: title")

    for key in _STRING_OR_NULL:
        if key in data and _json_type(data[key]) not in ("string", "null"):
            errors.append(f"Field '{key}' must be a string (got: {_json_type(data[key])})")
    for key in _BOOLEAN:
        if key in data and not isinstance(data[key], bool):
            errors.append(f"Field '{key}' must be a boolean (got: {_json_type(data[key])})")
    if "priority" in data and _json_type(data["priority"]) != "number":
        errors.append(f"Field 'priority' must be a number (got: {_json_type(data['priority'])})")
    for key in _ARRAY_OR_NULL:
        if key in data and _json_type(data[key]) not in ("array", "null"):
            errors.append(f"Field '{key}' must be an array (got: {_json_type(data[key])})")

    deps = data.get("dependencies")
    if isinstance(deps, list):
        if any(not isinstance(dep, str) for dep in deps):
            errors.append("Field 'dependencies' must contain only strings")
        elif known_ids is not None:
            for dep in deps:
                if dep not in known_ids:
                    errors.append(f"Dependency '{dep}' does not exist in project")

    plan = data.get("planSpec")
    if "planSpec" in data and _json_type(plan) not in ("object", "null"):
        errors.append(f"Field 'planSpec' must be an object (got: {_json_type(plan)})")
    if isinstance(plan, dict):
        for key in ("version", "tasksCompleted", "tasksTotal"):
            if key in plan and _json_type(plan[key]) != "number":
                errors.append(f"Field 'planSpec.{key}' must be a number (got: {_json_type(plan[key])})")
        if "reviewedByUser" in plan and not isinstance(plan["reviewedByUser"], bool):
            errors.append(
                f"Field 'planSpec.reviewedByUser' must be a boolean (got: {_json_type(plan['reviewedByUser'])})"
            )
        _check_enum(errors, "planSpec.status", plan.get("status"), VALID_PLAN_SPEC_STATUSES)

    _check_enum(errors, "status", data.get("status"), VALID_STATUSES)
    _check_enum(errors, "thinkingLevel", data.get("thinkingLevel"), VALID_THINKING_LEVELS)
    _check_enum(errors, "reasoningEffort", data.get("reasoningEffort"), VALID_REASONING_EFFORTS)
    _check_enum(errors, "planningMode", data.get("planningMode"), VALID_PLANNING_MODES)
    return errors


def is_audit_record(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if data.get("auditSource"):
        return True
    feature_id = data.get("id")
    return isinstance(feature_id, str) and feature_id.startswith("audit-")


def is_failing(data: Any, valid: bool) -> bool:
    """Decide whether one record blocks project completion."""
    if isinstance(data, dict) and data.get("status") == "waiting_approval":
        return False
    if data is None or not valid:
        return True
    if data.get("passes") is not True:
        return True
    return data.get("status") == "backlog"


@dataclass
class FeatureEntry:
    path: Path
    data: Optional[dict]
    parse_error: Optional[str] = None

    @property
    def dir_name(self) -> str:
        return self.path.parent.name

    @property
    def feature_id(self) -> str:
        if self.data and isinstance(self.data.get("id"), str):
            return self.data["id"]
        return self.dir_name


def load_record(path: Path) -> tuple[Optional[dict], Optional[str]]:
    try:
        raw = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        return None, f"Unreadable file: {exc}"
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        return None, f"Invalid JSON syntax: {exc.msg} (line {exc.lineno})"
    if not isinstance(data, dict):
        return None, f"Feature record must be a JSON object (got: {_json_type(data)})"
    return data, None


class FeatureStore:
    """Read-only view of ``<metadata>/features``."""

    def __init__(self, metadata_dir: Path) -> None:
        self.metadata_dir = metadata_dir
        self.features_dir = metadata_dir / FEATURES_DIR

    def exists(self) -> bool:
        return self.features_dir.is_dir()

    def record_paths(self) -> list[Path]:
        if not self.features_dir.is_dir():
            return []
        return sorted(self.features_dir.glob(f"*/{FEATURE_FILE}"))

    def load_all(self) -> list[FeatureEntry]:
        entries: list[FeatureEntry] = []
        for path in self.record_paths():
            data, err = load_record(path)
            entries.append(FeatureEntry(path=path, data=data, parse_error=err))
        return entries

    def records(self) -> list[dict]:
        return [entry.data for entry in self.load_all() if entry.data is not None]

    def split(self) -> tuple[list[FeatureEntry], list[FeatureEntry]]:
        """Return (coding entries, audit entries)."""
        coding: list[FeatureEntry] = []
        audit: list[FeatureEntry] = []
        for entry in self.load_all():
            (audit if is_audit_record(entry.data) else coding).append(entry)
        return coding, audit

    def known_ids(self) -> set[str]:
        return {rec["id"] for rec in self.records() if isinstance(rec.get("id"), str) and rec["id"]}

    def filter(self, field_name: str, value: str) -> list[dict]:
        """Records whose ``field_name`` equals ``value`` (compared as text)."""
        matched = []
        for rec in self.records():
            if field_name not in rec:
                continue
            current = rec[field_name]
            if isinstance(current, bool):
                current = "true" if current else "false"
            if str(current) == value:
                matched.append(rec)
        return matched


@dataclass
class FileReport:
    path: Path
    feature_id: str
    errors: list[str] = field(default_factory=list)
    status: Optional[str] = None

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class ValidationReport:
    project_dir: Path
    files: list[FileReport] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.files)

    @property
    def invalid(self) -> list[FileReport]:
        return [f for f in self.files if not f.valid]

    @property
    def valid_count(self) -> int:
        return self.total - len(self.invalid)

    def status_breakdown(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for report in self.files:
            if not report.valid:
                continue
            key = report.status if report.status in VALID_STATUSES else "(no status)"
            counts[key] = counts.get(key, 0) + 1
        ordered = {s: counts[s] for s in VALID_STATUSES if s in counts}
        if "(no status)" in counts:
            ordered["(no status)"] = counts["(no status)"]
        return ordered


def check_features(metadata_dir: Path, project_dir: Optional[Path] = None) -> ValidationReport:
    """Validate every feature.json, including dependency references."""
    store = FeatureStore(metadata_dir)
    entries = store.load_all()
    known = {e.data["id"] for e in entries if e.data and isinstance(e.data.get("id"), str) and e.data["id"]}
    report = ValidationReport(project_dir=project_dir or metadata_dir.parent)
    for entry in entries:
        if entry.data is None:
            errors = [entry.parse_error or "Invalid JSON syntax"]
            status = None
        else:
            errors = validate_record(entry.data, known_ids=known)
            status = entry.data.get("status")
        report.files.append(
            FileReport(path=entry.path, feature_id=entry.dir_name, errors=errors, status=status)
        )
    return report
