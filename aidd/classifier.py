"""Map one line of agent output to at most one outcome signal."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from .config import PATTERN_NO_ASSISTANT, PATTERN_PROVIDER_ERROR, PATTERN_RATE_LIMIT


class SignalKind(enum.Enum):
    NO_ASSISTANT = "no_assistant"
    PROVIDER_ERROR = "provider_error"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    message: str = ""


# Priority order matters: the first pattern found wins.
_RULES: tuple[tuple[str, SignalKind], ...] = (
    (PATTERN_NO_ASSISTANT, SignalKind.NO_ASSISTANT),
    (PATTERN_PROVIDER_ERROR, SignalKind.PROVIDER_ERROR),
    (PATTERN_RATE_LIMIT, SignalKind.RATE_LIMIT),
)


def classify(line: str) -> Optional[Signal]:
    for pattern, kind in _RULES:
        if pattern in line:
            message = line.strip() if kind is SignalKind.RATE_LIMIT else ""
            return Signal(kind=kind, message=message)
    return None
