from __future__ import annotations

from pathlib import Path
from typing import Optional

from .base import AgentPlugin, model_args


class ClaudeCodeCLI(AgentPlugin):
    name = "claude-code"
    display_name = "Claude Code"
    executable_names = ("claude",)

    def build_command(self, model: Optional[str], prompt_file: Path, cwd: Path, settings=None) -> list[str]:
        _ = prompt_file, cwd, settings
        # Each iteration starts from a clean session.
        return [self.executable_path(), "--no-session-persistence", *model_args(model)]


PLUGIN = ClaudeCodeCLI()
