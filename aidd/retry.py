from __future__ import annotations

import enum
from dataclasses import dataclass

from . import log
from .config import EXIT_SIGNAL_TERMINATED


class Decision(enum.Enum):
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass
class RetryPolicy:
    """Consecutive-failure counter with an optional abort threshold.

    ``quit_threshold`` of 0 never aborts. With ``continue_on_timeout`` a
    signal-terminated run (exit 124) is still counted, so repeated timeouts
    stay bounded by the threshold.
    """

    quit_threshold: int = 0
    continue_on_timeout: bool = False
    consecutive_failures: int = 0

    def record_success(self) -> None:
        if self.consecutive_failures:
            log.debug("Failure counter reset")
        self.consecutive_failures = 0

    def record_failure(self, exit_code: int, agent_name: str = "agent") -> Decision:
        self.consecutive_failures += 1
        timeout_exempt = exit_code == EXIT_SIGNAL_TERMINATED and self.continue_on_timeout
        if timeout_exempt:
            log.warn(f"Timeout detected (exit={exit_code}), continuing to next iteration...")
            log.error(f"Timeout #{self.consecutive_failures} (exit={exit_code})")
        else:
            log.warn(f"{agent_name} failed (exit={exit_code}); this is failure #{self.consecutive_failures}")

        if self.threshold_reached:
            reason = " due to repeated timeouts" if timeout_exempt else ""
            log.error(f"Reached failure threshold ({self.quit_threshold}){reason}; quitting.")
            return Decision.ABORT
        if not timeout_exempt:
            log.info(f"Continuing to next iteration (threshold: {self.quit_threshold})")
        return Decision.CONTINUE

    @property
    def threshold_reached(self) -> bool:
        return self.quit_threshold > 0 and self.consecutive_failures >= self.quit_threshold
