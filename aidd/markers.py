from __future__ import annotations

from datetime import datetime
from pathlib import Path

from .config import PENDING_MARKER, STOP_FILE


class MarkerStore:
    """Presence-only marker files under the metadata directory.

    The files are part of the on-disk contract with operators and other tools:
    ``.project_completion_pending`` and ``.stop``.
    """

    def __init__(self, metadata_dir: Path) -> None:
        self.metadata_dir = metadata_dir

    def path(self, name: str) -> Path:
        return self.metadata_dir / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def create(self, name: str) -> Path:
        target = self.path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(datetime.now().astimezone().isoformat(timespec="seconds") + "\n", encoding="utf-8")
        return target

    def clear(self, name: str) -> bool:
        try:
            self.path(name).unlink()
        except FileNotFoundError:
            return False
        return True

    @property
    def completion_pending(self) -> bool:
        return self.exists(PENDING_MARKER)

    def set_completion_pending(self) -> None:
        self.create(PENDING_MARKER)

    def clear_completion_pending(self) -> bool:
        return self.clear(PENDING_MARKER)

    @property
    def stop_requested(self) -> bool:
        return self.exists(STOP_FILE)

    def request_stop(self) -> Path:
        return self.create(STOP_FILE)

    def clear_stop(self) -> bool:
        return self.clear(STOP_FILE)
