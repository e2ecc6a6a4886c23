"""
AIDD configuration.

Settings resolve in layers: built-in defaults, then ``<metadata>/config.yaml``,
then ``AIDD_<KEY>`` environment variables, then command-line flags.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from . import log
from .errors import (  # noqa: F401  re-exported
    EXIT_ABORTED,
    EXIT_CLI_ERROR,
    EXIT_GENERAL_ERROR,
    EXIT_IDLE_TIMEOUT,
    EXIT_INVALID_ARGS,
    EXIT_NO_ASSISTANT,
    EXIT_NOT_FOUND,
    EXIT_PERMISSION_DENIED,
    EXIT_PROJECT_COMPLETE,
    EXIT_PROVIDER_ERROR,
    EXIT_RATE_LIMITED,
    EXIT_SIGNAL_TERMINATED,
    EXIT_SUCCESS,
    EXIT_VALIDATION_ERROR,
    ConfigError,
)

AIDD_VERSION = "0.9.0"

DEFAULT_CLI = "opencode"
DEFAULT_TIMEOUT = 3600
DEFAULT_IDLE_TIMEOUT = 900
DEFAULT_IDLE_NUDGE_TIMEOUT = 300
DEFAULT_QUIT_ON_ABORT = 0
DEFAULT_RATE_LIMIT_BUFFER = 60
DEFAULT_RATE_LIMIT_FALLBACK = 300

METADATA_DIR = ".automaker"
ITERATIONS_DIR = "iterations"
FEATURES_DIR = "features"
FEATURE_FILE = "feature.json"
SPEC_FILE = "app_spec.txt"
TODO_FILE = "todo.md"
CHANGELOG_FILE = "CHANGELOG.md"
STATUS_FILE = "status.md"
CONFIG_FILE = "config.yaml"
STOP_FILE = ".stop"
PENDING_MARKER = ".project_completion_pending"
DIRECTIVE_FILE = "directive.md"
AUDIT_PROMPT_FILE = "audit-prompt.md"

PATTERN_NO_ASSISTANT = "The model returned no assistant messages"
PATTERN_PROVIDER_ERROR = "Provider returned error"
PATTERN_RATE_LIMIT = "hit your limit"

PACKAGE_DIR = Path(__file__).resolve().parent
PROMPTS_DIR = PACKAGE_DIR / "prompts"
AUDITS_DIR = PACKAGE_DIR / "audits"

KNOWN_CLIS = ("opencode", "kilocode", "claude-code")

KNOWN_KEYS = [
    "cli",
    "model",
    "init_model",
    "code_model",
    "timeout",
    "idle_timeout",
    "idle_nudge_timeout",
    "quit_on_abort",
    "continue_on_timeout",
    "rate_limit_buffer",
    "rate_limit_fallback",
    "prompts_dir",
    "audits_dir",
]

_INT_KEYS = {
    "timeout",
    "idle_timeout",
    "idle_nudge_timeout",
    "quit_on_abort",
    "rate_limit_buffer",
    "rate_limit_fallback",
}
_BOOL_KEYS = {"continue_on_timeout"}


@dataclass
class Settings:
    cli: str = DEFAULT_CLI
    model: Optional[str] = None
    init_model: Optional[str] = None
    code_model: Optional[str] = None
    timeout: int = DEFAULT_TIMEOUT
    idle_timeout: int = DEFAULT_IDLE_TIMEOUT
    idle_nudge_timeout: int = DEFAULT_IDLE_NUDGE_TIMEOUT
    quit_on_abort: int = DEFAULT_QUIT_ON_ABORT
    continue_on_timeout: bool = False
    rate_limit_buffer: int = DEFAULT_RATE_LIMIT_BUFFER
    rate_limit_fallback: int = DEFAULT_RATE_LIMIT_FALLBACK
    prompts_dir: Path = PROMPTS_DIR
    audits_dir: Path = AUDITS_DIR
    sources: dict[str, str] = field(default_factory=dict)

    @property
    def effective_init_model(self) -> Optional[str]:
        return self.init_model or self.model

    @property
    def effective_code_model(self) -> Optional[str]:
        return self.code_model or self.model

    def apply(self, values: Mapping[str, Any], source: str) -> None:
        for key, raw in values.items():
            if raw is None:
                continue
            setattr(self, key, _coerce(key, raw, source))
            self.sources[key] = source

    def validate(self) -> None:
        if self.cli not in KNOWN_CLIS:
            raise ConfigError(f"Invalid CLI type: {self.cli} (valid: {', '.join(KNOWN_CLIS)})")
        for key in ("timeout", "idle_timeout", "idle_nudge_timeout"):
            if getattr(self, key) <= 0:
                raise ConfigError(f"{key} must be a positive number of seconds")
        if self.idle_nudge_timeout >= self.idle_timeout:
            raise ConfigError(
                f"idle_nudge_timeout ({self.idle_nudge_timeout}s) must be less than "
                f"idle_timeout ({self.idle_timeout}s)"
            )
        if self.quit_on_abort < 0:
            raise ConfigError("quit_on_abort must be >= 0")
        if self.rate_limit_buffer < 0 or self.rate_limit_fallback < 0:
            raise ConfigError("rate limit buffer/fallback must be >= 0")

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data.pop("sources", None)
        data["prompts_dir"] = str(self.prompts_dir)
        data["audits_dir"] = str(self.audits_dir)
        return data


def _coerce(key: str, raw: Any, source: str) -> Any:
    if key in _INT_KEYS:
        if isinstance(raw, bool):
            raise ConfigError(f"{source}: '{key}' must be an integer")
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{source}: '{key}' must be an integer (got: {raw!r})") from None
    if key in _BOOL_KEYS:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
        raise ConfigError(f"{source}: '{key}' must be a boolean (got: {raw!r})")
    if key in {"prompts_dir", "audits_dir"}:
        return Path(os.path.expandvars(os.path.expanduser(str(raw))))
    return str(raw).strip()


def load_config_file(path: Path) -> dict[str, Any]:
    """Read ``config.yaml``; unknown keys are reported and ignored."""
    if not path.exists():
        return {}
    import yaml

    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    data: dict[str, Any] = {}
    for key, value in loaded.items():
        norm = str(key).strip().replace("-", "_")
        if norm not in KNOWN_KEYS:
            log.warn(f"Ignoring unknown config key '{key}' in {path}")
            continue
        data[norm] = value
    return data


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    data: dict[str, str] = {}
    for key in KNOWN_KEYS:
        value = environ.get(f"AIDD_{key.upper()}")
        if value is not None and value != "":
            data[key] = value
    return data


def resolve_settings(
    metadata_dir: Optional[Path],
    cli_values: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    settings = Settings()
    if metadata_dir is not None:
        config_path = metadata_dir / CONFIG_FILE
        settings.apply(load_config_file(config_path), str(config_path))
    settings.apply(env_overrides(environ), "environment")
    if cli_values:
        settings.apply({k: v for k, v in cli_values.items() if k in KNOWN_KEYS}, "command line")
    settings.validate()
    return settings
