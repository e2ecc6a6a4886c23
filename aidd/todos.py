from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import log
from .config import TODO_FILE

TODO_ITEM_RE = re.compile(r"^\s*-\s\[(?P<mark>[ xX~!])\]\s?(?P<text>.*)$")

INCOMPLETE = "incomplete"
COMPLETE = "complete"
DEFERRED = "deferred"

_MARKS = {" ": INCOMPLETE, "x": COMPLETE, "X": COMPLETE, "~": DEFERRED, "!": DEFERRED}

# Checked in order when the metadata directory has no todo.md.
FALLBACK_TODO_NAMES = [
    "todo.md",
    "todos.md",
    "TODO.md",
    "TODOs.md",
    "TODO-list.md",
    "todo-list.md",
    "tasks.md",
    "TASKS.md",
]


@dataclass
class TodoItem:
    state: str
    text: str
    line_no: int


@dataclass
class TodoSummary:
    items: list[TodoItem] = field(default_factory=list)

    def _count(self, state: str) -> int:
        return sum(1 for item in self.items if item.state == state)

    @property
    def incomplete(self) -> int:
        return self._count(INCOMPLETE)

    @property
    def complete(self) -> int:
        return self._count(COMPLETE)

    @property
    def deferred(self) -> int:
        return self._count(DEFERRED)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def has_blocking(self) -> bool:
        return self.incomplete > 0

    def texts(self, state: str) -> list[str]:
        return [item.text for item in self.items if item.state == state]


def scan_todos(text: str) -> TodoSummary:
    summary = TodoSummary()
    for line_no, line in enumerate(text.splitlines(), start=1):
        match = TODO_ITEM_RE.match(line)
        if not match:
            continue
        summary.items.append(
            TodoItem(state=_MARKS[match.group("mark")], text=match.group("text").strip(), line_no=line_no)
        )
    return summary


def scan_todo_file(path: Path) -> TodoSummary:
    try:
        return scan_todos(path.read_text(encoding="utf-8", errors="replace"))
    except FileNotFoundError:
        return TodoSummary()
    except OSError as exc:
        log.warn(f"Cannot read TODO file {path}: {exc}")
        return TodoSummary()


def find_todo_file(project_dir: Path, metadata_dir: Path) -> Optional[Path]:
    primary = metadata_dir / TODO_FILE
    if primary.is_file():
        return primary
    for name in FALLBACK_TODO_NAMES:
        candidate = project_dir / name
        if candidate.is_file():
            return candidate
    return None
