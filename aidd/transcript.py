from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Optional, TextIO

_LOG_NAME_RE = re.compile(r"^(\d+)\.log$")


def next_log_index(iterations_dir: Path) -> int:
    """Return one past the highest numbered ``NNN.log`` in the directory."""
    highest = 0
    if iterations_dir.is_dir():
        for entry in iterations_dir.iterdir():
            match = _LOG_NAME_RE.match(entry.name)
            if match:
                highest = max(highest, int(match.group(1)))
    return highest + 1


def log_path(iterations_dir: Path, index: int) -> Path:
    return iterations_dir / f"{index:03d}.log"


class Transcript:
    """One iteration's log artifact; lines are echoed to stdout as they arrive."""

    def __init__(self, path: Path, echo: Optional[TextIO] = None) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(path, "w", encoding="utf-8")
        self._echo = echo if echo is not None else sys.stdout

    @property
    def handle(self) -> TextIO:
        return self._handle

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def write_line(self, line: str) -> None:
        text = line.rstrip("\n")
        if self._echo is not None:
            print(text, file=self._echo, flush=True)
        if not self._handle.closed:
            self._handle.write(text + "\n")
            self._handle.flush()

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()

    def discard(self) -> None:
        self.close()
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "Transcript":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()
