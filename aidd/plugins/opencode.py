from __future__ import annotations

import copy
import json
import re
from pathlib import Path
from typing import Any, Optional

from .. import log
from .base import AgentPlugin, model_args

OPENCODE_CONFIG_FILE = "opencode.json"

PERMISSIVE_CONFIG: dict[str, Any] = {
    "$schema": "https://opencode.ai/config.json",
    "permission": {"*": "allow"},
}


def _strip_jsonc(text: str) -> str:
    # Minimal JSON-with-comments stripping for common cases.
    text = re.sub(r"(?m)^\s*//.*$", "", text)
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)
    return text


def _is_permissive(config: dict[str, Any]) -> bool:
    permission = config.get("permission")
    if permission == "allow":
        return True
    return isinstance(permission, dict) and permission.get("*") == "allow"


class OpenCodeCLI(AgentPlugin):
    name = "opencode"
    display_name = "OpenCode"
    executable_names = ("opencode",)

    def prepare(self, project_dir: Path) -> None:
        ensure_opencode_config(project_dir)

    def build_command(self, model: Optional[str], prompt_file: Path, cwd: Path, settings=None) -> list[str]:
        _ = prompt_file, cwd, settings
        return [self.executable_path(), "run", *model_args(model)]


def ensure_opencode_config(project_dir: Path) -> Path:
    """Make sure opencode.json grants blanket permission so runs never block on a prompt."""
    config_path = project_dir / OPENCODE_CONFIG_FILE
    if not config_path.exists():
        log.info(f"Creating permissive OpenCode config: {config_path}")
        config_path.write_text(json.dumps(PERMISSIVE_CONFIG, indent=2) + "\n", encoding="utf-8")
        return config_path

    try:
        current = json.loads(_strip_jsonc(config_path.read_text(encoding="utf-8", errors="replace")))
    except (OSError, json.JSONDecodeError) as exc:
        log.warn(f"OpenCode config exists but cannot be parsed ({exc}): {config_path}")
        log.warn('Ensure \'permission: {"*": "allow"}\' is set to prevent blocking prompts')
        return config_path
    if not isinstance(current, dict):
        log.warn(f"OpenCode config is not a JSON object, leaving it untouched: {config_path}")
        return config_path

    if _is_permissive(current):
        log.debug(f"OpenCode config already permissive: {config_path}")
        return config_path

    log.info(f"Updating OpenCode config with permissive permissions: {config_path}")
    merged = copy.deepcopy(current)
    merged["permission"] = {"*": "allow"}
    config_path.write_text(json.dumps(merged, indent=2) + "\n", encoding="utf-8")
    return config_path


PLUGIN = OpenCodeCLI()
