from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..config import DEFAULT_TIMEOUT
from .base import AgentPlugin, model_args


class KiloCodeCLI(AgentPlugin):
    name = "kilocode"
    display_name = "KiloCode"
    executable_names = ("kilocode",)

    mode = "code"

    def build_command(self, model: Optional[str], prompt_file: Path, cwd: Path, settings=None) -> list[str]:
        _ = prompt_file, cwd
        timeout = settings.timeout if settings is not None else DEFAULT_TIMEOUT
        return [
            self.executable_path(),
            "--mode",
            self.mode,
            "--auto",
            "--timeout",
            str(timeout),
            "--nosplash",
            *model_args(model),
        ]


PLUGIN = KiloCodeCLI()
