"""Agent adapters. Each module in this package exposes a ``PLUGIN`` instance."""

from __future__ import annotations

import importlib
import pkgutil
from typing import Optional

from .base import AgentPlugin

_REGISTRY: Optional[dict[str, AgentPlugin]] = None


def _load_registry() -> dict[str, AgentPlugin]:
    global _REGISTRY
    if _REGISTRY is None:
        found: dict[str, AgentPlugin] = {}
        for info in pkgutil.iter_modules(__path__):
            if info.name.startswith("_") or info.name == "base":
                continue
            plugin = getattr(importlib.import_module(f"{__name__}.{info.name}"), "PLUGIN", None)
            if isinstance(plugin, AgentPlugin):
                found[plugin.name] = plugin
        _REGISTRY = dict(sorted(found.items()))
    return _REGISTRY


def discover_plugins() -> list[AgentPlugin]:
    """All adapters, sorted by name."""
    return list(_load_registry().values())


def get_plugin(name: str) -> Optional[AgentPlugin]:
    """Look up an adapter; ``claude_code`` is accepted for ``claude-code``."""
    return _load_registry().get(name.strip().lower().replace("_", "-"))


__all__ = ["AgentPlugin", "discover_plugins", "get_plugin"]
