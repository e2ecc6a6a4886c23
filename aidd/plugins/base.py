from __future__ import annotations

import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from ..config import Settings


def first_output_line(cmd: Sequence[str], timeout_s: float = 5.0) -> Optional[str]:
    """First non-empty line a short-lived command prints (stdout, else stderr)."""
    try:
        proc = subprocess.run(list(cmd), capture_output=True, text=True, check=False, timeout=timeout_s)
    except (OSError, subprocess.TimeoutExpired):
        return None
    for stream in (proc.stdout, proc.stderr):
        lines = [line.strip() for line in (stream or "").splitlines() if line.strip()]
        if lines:
            return lines[0]
    return None


def model_args(model: Optional[str]) -> list[str]:
    return ["--model", model] if model else []


class AgentPlugin(ABC):
    """A coding-agent CLI the loop can launch.

    Subclasses fill in the class attributes and ``build_command``. The prompt
    is always piped to the child's stdin, never passed on the command line.
    """

    name: str = ""
    display_name: str = ""
    executable_names: tuple[str, ...] = ()
    version_args: tuple[str, ...] = ("--version",)
    # Only CLIs that keep reading stdin after the prompt can receive nudges.
    keep_stdin_open: bool = False

    def __init__(self) -> None:
        self.executable: Optional[str] = None

    def detect_installation(self) -> tuple[bool, Optional[str]]:
        """(installed, resolved path) using the first executable found on PATH."""
        self.executable = next(filter(None, (shutil.which(exe) for exe in self.executable_names)), None)
        return self.executable is not None, self.executable

    def executable_path(self) -> str:
        """Path found by detect_installation, else the bare command name."""
        return self.executable or self.executable_names[0]

    def get_version(self) -> Optional[str]:
        installed, path = self.detect_installation()
        if not installed:
            return None
        return first_output_line([path, *self.version_args])

    def prepare(self, project_dir: Path) -> None:
        """Per-project setup before launch; most CLIs need none."""

    @abstractmethod
    def build_command(
        self,
        model: Optional[str],
        prompt_file: Path,
        cwd: Path,
        settings: Optional["Settings"] = None,
    ) -> list[str]:
        ...
