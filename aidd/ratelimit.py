"""
Rate-limit scheduling.

Recognises reset hints such as::

    You've hit your limit · resets 2am (America/Chicago)
    You've hit your limit · resets 6:30pm

The hint is interpreted in the local clock. A time that is not after ``now``
refers to tomorrow.
"""

from __future__ import annotations

import re
import threading
from datetime import datetime, timedelta
from typing import Optional

from . import log
from .config import DEFAULT_RATE_LIMIT_BUFFER, DEFAULT_RATE_LIMIT_FALLBACK

RESET_TIME_RE = re.compile(
    r"resets?\s+(?:at\s+)?(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm)\b",
    re.IGNORECASE,
)


def parse_reset_time(message: str, now: Optional[datetime] = None) -> Optional[datetime]:
    match = RESET_TIME_RE.search(message or "")
    if not match:
        return None

    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    if not 1 <= hour <= 12 or minute > 59:
        return None
    is_pm = match.group("meridiem").lower() == "pm"
    if is_pm and hour != 12:
        hour += 12
    elif not is_pm and hour == 12:
        hour = 0

    now = now or datetime.now()
    reset = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if reset <= now:
        reset += timedelta(days=1)
    return reset


def schedule_retry(
    message: str,
    buffer: float = DEFAULT_RATE_LIMIT_BUFFER,
    fallback: float = DEFAULT_RATE_LIMIT_FALLBACK,
    now: Optional[datetime] = None,
) -> float:
    """Seconds to sleep before retrying after a rate-limit message."""
    now = now or datetime.now()
    reset = parse_reset_time(message, now)
    if reset is None:
        return float(fallback)
    return max(0.0, (reset - now).total_seconds() + buffer)


def wait_for_reset(
    message: str,
    buffer: float,
    fallback: float,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Block until the limit should have reset. Returns False if cancelled."""
    now = datetime.now()
    reset = parse_reset_time(message, now)
    seconds = schedule_retry(message, buffer, fallback, now=now)
    if reset is not None:
        log.warn(
            f"Rate limited. Limit resets at {reset.strftime('%Y-%m-%d %H:%M')}; "
            f"sleeping {seconds:.0f}s (includes {buffer:.0f}s buffer)"
        )
    else:
        log.warn(f"Rate limited. Could not parse reset time; sleeping {seconds:.0f}s")

    cancel = cancel or threading.Event()
    if cancel.wait(seconds):
        log.warn("Rate-limit wait interrupted")
        return False
    log.info("Rate-limit wait finished, retrying")
    return True
