"""Prefixed stderr logging, mirrored into the active iteration transcript."""

from __future__ import annotations

import contextlib
import os
import sys
import threading
from typing import Iterator, Optional, TextIO

LEVELS = {"debug": 0, "info": 1, "warn": 2, "error": 3}

_PREFIX = {0: "[DEBUG]", 1: "[INFO]", 2: "[WARN]", 3: "[ERROR]"}
_COLOR = {0: "\033[0;36m", 1: "\033[0;32m", 2: "\033[0;33m", 3: "\033[0;31m"}
_RESET = "\033[0m"

_lock = threading.RLock()
_tee: Optional[TextIO] = None


def _threshold() -> int:
    raw = os.environ.get("AIDD_LOG_LEVEL", "info").strip().lower()
    if raw.isdigit():
        return int(raw)
    return LEVELS.get(raw, 1)


def _supports_color(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _emit(level: int, message: str) -> None:
    if level < _threshold():
        return
    prefix = _PREFIX[level]
    with _lock:
        stream = sys.stderr
        if _supports_color(stream):
            print(f"{_COLOR[level]}{prefix}{_RESET} {message}", file=stream, flush=True)
        else:
            print(f"{prefix} {message}", file=stream, flush=True)
        if _tee is not None:
            _tee.write(f"{prefix} {message}\n")
            _tee.flush()


def debug(message: str) -> None:
    _emit(0, message)


def info(message: str) -> None:
    _emit(1, message)


def warn(message: str) -> None:
    _emit(2, message)


def error(message: str) -> None:
    _emit(3, message)


def header(title: str, width: int = 60) -> None:
    rule = "=" * width
    info("")
    info(rule)
    info(title.center(width).rstrip())
    info(rule)


@contextlib.contextmanager
def tee(handle: TextIO) -> Iterator[TextIO]:
    """Copy every log line into ``handle`` while the context is active."""
    global _tee
    with _lock:
        previous = _tee
        _tee = handle
    try:
        yield handle
    finally:
        with _lock:
            _tee = previous
