"""
Two-phase project completion detection.

The first all-clear only creates the pending marker, which forces one more
(TODO review) iteration. Completion is confirmed when the next check still
finds no failing records and no blocking todos.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import log, vcs
from .config import FEATURES_DIR, TODO_FILE
from .features import FeatureStore, is_audit_record, is_failing, load_record, validate_record
from .markers import MarkerStore
from .todos import scan_todo_file


class CompletionState(enum.Enum):
    NOT_COMPLETE = "not_complete"
    PENDING = "pending"
    CONFIRMED = "confirmed"


@dataclass
class CompletionReport:
    state: CompletionState
    total: int = 0
    failing: list[str] = field(default_factory=list)
    unfixed_audit_findings: int = 0
    has_blocking_todos: bool = False
    revalidated: int = 0
    cached: int = 0

    @property
    def failing_count(self) -> int:
        return len(self.failing)


@dataclass
class _CacheEntry:
    failing: bool
    audit: bool
    feature_id: str


class CompletionDetector:
    """Decides NotComplete / Pending / Confirmed for one metadata directory.

    Under git, only records modified since HEAD (or touched by commits made
    since the previous check) are re-read; every other record reuses the
    verdict cached earlier in this process. The cache lives on the instance
    and is never written to disk.
    """

    def __init__(self, metadata_dir: Path, use_git: bool = True) -> None:
        self.metadata_dir = metadata_dir
        self.store = FeatureStore(metadata_dir)
        self.markers = MarkerStore(metadata_dir)
        self.use_git = use_git
        self._cache: dict[Path, _CacheEntry] = {}
        self._head: Optional[str] = None

    def _dirty_paths(self) -> Optional[set[Path]]:
        if not self.use_git:
            return None
        features_dir = self.metadata_dir / FEATURES_DIR
        if not features_dir.is_dir():
            return None
        if vcs.is_ignored(features_dir):
            return None
        modified = vcs.modified_paths(self.metadata_dir, features_dir)
        if modified is None:
            return None

        current_head = vcs.head(self.metadata_dir)
        if self._head is not None and current_head != self._head:
            committed = None
            if current_head is not None:
                committed = vcs.changed_between(self.metadata_dir, self._head, current_head, features_dir)
            if committed is None:
                # History rewritten or unreadable: trust nothing cached.
                self._cache.clear()
            else:
                modified |= committed
        self._head = current_head
        return modified

    def _evaluate(self, path: Path) -> _CacheEntry:
        data, err = load_record(path)
        if data is None:
            log.debug(f"Unparseable feature record {path}: {err}")
            return _CacheEntry(failing=True, audit=False, feature_id=path.parent.name)
        errors = validate_record(data)
        if errors and data.get("status") != "waiting_approval":
            log.debug(f"Invalid feature record {path}: {'; '.join(errors)}")
        feature_id = data["id"] if isinstance(data.get("id"), str) and data["id"] else path.parent.name
        return _CacheEntry(
            failing=is_failing(data, valid=not errors),
            audit=is_audit_record(data),
            feature_id=feature_id,
        )

    def evaluate(self) -> CompletionReport:
        """Scan records and todos without touching the pending marker."""
        paths = self.store.record_paths()
        dirty = self._dirty_paths()
        report = CompletionReport(state=CompletionState.NOT_COMPLETE)

        seen: set[Path] = set()
        coding_total = 0
        for path in paths:
            key = path.resolve()
            seen.add(key)
            entry = self._cache.get(key)
            if entry is None or dirty is None or key in dirty:
                entry = self._evaluate(path)
                report.revalidated += 1
                # A dirty verdict can go stale without a HEAD change (checkout, stash).
                if dirty is None or key in dirty:
                    self._cache.pop(key, None)
                else:
                    self._cache[key] = entry
            else:
                report.cached += 1

            if entry.audit:
                if entry.failing:
                    report.unfixed_audit_findings += 1
                continue
            coding_total += 1
            if entry.failing:
                report.failing.append(entry.feature_id)

        for stale in set(self._cache) - seen:
            del self._cache[stale]

        report.total = coding_total
        report.has_blocking_todos = scan_todo_file(self.metadata_dir / TODO_FILE).has_blocking
        return report

    def is_complete(self) -> CompletionReport:
        report = self.evaluate()
        log.debug(
            f"Completion check: total={report.total}, failing={report.failing_count}, "
            f"has_todos={report.has_blocking_todos}, audit_findings={report.unfixed_audit_findings}, "
            f"revalidated={report.revalidated}, cached={report.cached}"
        )

        all_clear = report.total > 0 and not report.failing and not report.has_blocking_todos
        if all_clear:
            if self.markers.completion_pending:
                log.info("Project completion CONFIRMED: all features pass after thorough TODO review")
                self.markers.clear_completion_pending()
                report.state = CompletionState.CONFIRMED
            else:
                log.info("Project completion PENDING: all features pass, running thorough TODO review...")
                self.markers.set_completion_pending()
                report.state = CompletionState.PENDING
            return report

        if self.markers.clear_completion_pending():
            log.info("Project completion pending state cleared (regression detected)")
        report.state = CompletionState.NOT_COMPLETE
        return report
