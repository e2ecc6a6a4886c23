"""Thin git helpers. Every function degrades to None/empty outside a repository."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _git(cwd: Path, *args: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", "-C", str(cwd), *args],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, OSError):
        return None
    return result.stdout


def repo_root(path: Path) -> Optional[Path]:
    out = _git(path, "rev-parse", "--show-toplevel")
    if not out or not out.strip():
        return None
    return Path(out.strip())


def head(path: Path) -> Optional[str]:
    out = _git(path, "rev-parse", "HEAD")
    return out.strip() if out else None


def porcelain(path: Path) -> str:
    return _git(path, "status", "--porcelain") or ""


def modified_paths(path: Path, pathspec: Path) -> Optional[set[Path]]:
    """Files under ``pathspec`` that differ from HEAD, untracked ones included.

    Returns None when ``path`` is not inside a git work tree.
    """
    root = repo_root(path)
    if root is None:
        return None
    out = _git(root, "status", "--porcelain", "-z", "--untracked-files=all", "--", str(pathspec))
    if out is None:
        return None
    changed: set[Path] = set()
    entries = out.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        status, rel = entry[:2], entry[3:]
        changed.add((root / rel).resolve())
        if "R" in status or "C" in status:
            # -z emits the original path of a rename/copy as the next entry.
            if i < len(entries) and entries[i]:
                changed.add((root / entries[i]).resolve())
            i += 1
    return changed


def changed_between(path: Path, old: str, new: str, pathspec: Path) -> Optional[set[Path]]:
    root = repo_root(path)
    if root is None:
        return None
    out = _git(root, "diff", "--name-only", "-z", old, new, "--", str(pathspec))
    if out is None:
        return None
    return {(root / rel).resolve() for rel in out.split("\0") if rel}


@dataclass(frozen=True)
class Snapshot:
    head: Optional[str]
    dirty: str


def snapshot(path: Path) -> Optional[Snapshot]:
    """HEAD plus porcelain status, or None outside a repository."""
    if repo_root(path) is None:
        return None
    return Snapshot(head=head(path), dirty=porcelain(path))


def is_ignored(path: Path) -> bool:
    """True when git ignores ``path`` (its changes never show in status)."""
    parent = path if path.is_dir() else path.parent
    return _git(parent, "check-ignore", "-q", str(path)) is not None
