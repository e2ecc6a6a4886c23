"""
Process supervisor for one agent iteration.

The child's combined output is pumped by a reader thread into a queue; the
supervisor waits on that queue with a deadline that depends on its state:

    RUNNING  -- no output for idle_nudge_timeout          --> NUDGED (nudge written to stdin)
    NUDGED   -- no output for idle_timeout - nudge timeout --> DONE   (child terminated, IdleTimeout)
    any line of output                                     --> RUNNING

The overall wall-clock timeout is an extra deadline on top of both stages.
"""

from __future__ import annotations

import enum
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from . import log
from .classifier import SignalKind, classify
from .config import (
    EXIT_IDLE_TIMEOUT,
    EXIT_NO_ASSISTANT,
    EXIT_PROVIDER_ERROR,
    EXIT_RATE_LIMITED,
    EXIT_SIGNAL_TERMINATED,
    EXIT_SUCCESS,
)
from .errors import AdapterError
from .transcript import Transcript

NUDGE_MESSAGE = """
---

SYSTEM NUDGE: You haven't produced any output for several minutes. Are you stuck?

If you're encountering repeated errors that you can't resolve:
1. Describe what you've tried and what's blocking you
2. Consider following the three-strike rule from error-handling-patterns.md:
   - After 3 failed attempts, abort the current task
   - Document the issue in progress.md or todo.md
   - Move on to the next feature
3. Commit any working progress before moving on

Please respond with either:
- Your current status and what you're working on, OR
- A decision to abort and move to the next task

---

"""

KILL_GRACE_SECONDS = 5.0

_EOF = object()


class OutcomeStatus(enum.Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    IDLE_TIMEOUT = "idle_timeout"
    NO_ASSISTANT = "no_assistant"
    PROVIDER_ERROR = "provider_error"
    RATE_LIMITED = "rate_limited"
    GENERIC_FAILURE = "generic_failure"


class SupervisorState(enum.Enum):
    RUNNING = "running"
    NUDGED = "nudged"
    DONE = "done"


_SIGNAL_OUTCOMES = {
    SignalKind.NO_ASSISTANT: (OutcomeStatus.NO_ASSISTANT, EXIT_NO_ASSISTANT),
    SignalKind.PROVIDER_ERROR: (OutcomeStatus.PROVIDER_ERROR, EXIT_PROVIDER_ERROR),
    SignalKind.RATE_LIMIT: (OutcomeStatus.RATE_LIMITED, EXIT_RATE_LIMITED),
}


@dataclass
class IterationOutcome:
    status: OutcomeStatus
    exit_code: int
    message: str = ""
    consecutive_failures: int = 0
    nudges: int = 0
    interrupted: bool = False
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_SUCCESS

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "message": self.message,
            "consecutive_failures": self.consecutive_failures,
            "nudges": self.nudges,
            "interrupted": self.interrupted,
            "duration_s": round(self.duration_s, 3),
        }


def outcome_for_exit_code(code: int) -> tuple[OutcomeStatus, int]:
    if code == EXIT_SUCCESS:
        return OutcomeStatus.SUCCESS, code
    if code == EXIT_SIGNAL_TERMINATED:
        return OutcomeStatus.TIMEOUT, code
    if code < 0:
        # Killed by a signal we did not send.
        return OutcomeStatus.GENERIC_FAILURE, 128 - code
    return OutcomeStatus.GENERIC_FAILURE, code


def _pump(stream, sink: "queue.Queue[object]") -> None:
    try:
        for line in iter(stream.readline, ""):
            sink.put(line)
    except (OSError, ValueError):
        pass
    finally:
        sink.put(_EOF)


class ProcessSupervisor:
    """Runs exactly one agent process under the two-stage idle timeout."""

    def __init__(
        self,
        idle_timeout: float,
        idle_nudge_timeout: float,
        timeout: float,
        nudge_message: str = NUDGE_MESSAGE,
        kill_grace: float = KILL_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 0 < idle_nudge_timeout < idle_timeout:
            raise ValueError("idle_nudge_timeout must be positive and less than idle_timeout")
        self.idle_timeout = idle_timeout
        self.idle_nudge_timeout = idle_nudge_timeout
        self.timeout = timeout
        self.nudge_message = nudge_message
        self.kill_grace = kill_grace
        self.clock = clock
        self.state = SupervisorState.DONE
        self._proc: Optional[subprocess.Popen] = None
        self._proc_lock = threading.RLock()
        self._stdin_lock = threading.Lock()
        self._interrupted = threading.Event()

    @property
    def final_timeout(self) -> float:
        return self.idle_timeout - self.idle_nudge_timeout

    # -- process control -------------------------------------------------

    def _spawn(self, command: Sequence[str], cwd: Path, env: Optional[Mapping[str, str]]) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                list(command),
                cwd=str(cwd),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=dict(env) if env is not None else None,
                start_new_session=True,
            )
        except OSError as exc:
            raise AdapterError(f"Failed to launch {command[0]}: {exc}") from exc

    def _signal_group(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == getattr(signal, "SIGKILL", None):
                proc.kill()
            else:
                proc.terminate()
        except (ProcessLookupError, PermissionError, OSError):
            pass

    def _kill(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            log.warn(f"Agent process {proc.pid} ignored SIGTERM; sending SIGKILL")
            self._signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))

    def terminate(self) -> None:
        """Stop the running child. Safe to call from a signal handler."""
        self._interrupted.set()
        with self._proc_lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            self._signal_group(proc, signal.SIGTERM)

    # -- stdin -----------------------------------------------------------

    def _feed_prompt(self, proc: subprocess.Popen, prompt_text: str, keep_open: bool) -> None:
        with self._stdin_lock:
            try:
                proc.stdin.write(prompt_text)
                if not prompt_text.endswith("\n"):
                    proc.stdin.write("\n")
                proc.stdin.flush()
                if not keep_open:
                    proc.stdin.close()
            except (BrokenPipeError, OSError, ValueError):
                log.debug("Agent closed stdin before the whole prompt was written")

    def _send_nudge(self, proc: subprocess.Popen) -> bool:
        with self._stdin_lock:
            if proc.stdin is None or proc.stdin.closed:
                return False
            try:
                proc.stdin.write(self.nudge_message)
                proc.stdin.flush()
            except (BrokenPipeError, OSError, ValueError):
                return False
        return True

    # -- main loop -------------------------------------------------------

    def run(
        self,
        command: Sequence[str],
        cwd: Path,
        prompt_text: str,
        transcript: Transcript,
        keep_stdin_open: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> IterationOutcome:
        started = self.clock()
        if self._interrupted.is_set():
            log.warn("Stop requested before launch; agent not started")
            return IterationOutcome(OutcomeStatus.GENERIC_FAILURE, EXIT_SIGNAL_TERMINATED, interrupted=True)
        proc = self._spawn(command, cwd, env)
        with self._proc_lock:
            self._proc = proc
        # terminate() may have run between the check above and _proc being set.
        if self._interrupted.is_set():
            self._signal_group(proc, signal.SIGTERM)

        lines: "queue.Queue[object]" = queue.Queue()
        reader = threading.Thread(target=_pump, args=(proc.stdout, lines), daemon=True)
        reader.start()
        feeder = threading.Thread(
            target=self._feed_prompt, args=(proc, prompt_text, keep_stdin_open), daemon=True
        )
        feeder.start()

        wall_deadline = started + self.timeout
        stage_started = started
        self.state = SupervisorState.RUNNING
        outcome: Optional[IterationOutcome] = None
        nudges = 0

        try:
            while True:
                budget = self.idle_nudge_timeout if self.state is SupervisorState.RUNNING else self.final_timeout
                deadline = min(stage_started + budget, wall_deadline)
                try:
                    item = lines.get(timeout=max(0.0, deadline - self.clock()))
                except queue.Empty:
                    now = self.clock()
                    if now >= wall_deadline:
                        log.warn(f"Agent exceeded overall timeout ({self.timeout:g}s); terminating")
                        self._kill(proc)
                        outcome = IterationOutcome(OutcomeStatus.TIMEOUT, EXIT_SIGNAL_TERMINATED)
                        break
                    if self.state is SupervisorState.RUNNING:
                        self.state = SupervisorState.NUDGED
                        nudges += 1
                        log.warn(f"No output for {self.idle_nudge_timeout:g}s. Sending nudge to agent...")
                        if not self._send_nudge(proc):
                            log.warn("Nudge could not be delivered (agent stdin is closed)")
                        log.debug(f"Nudge sent. Waiting {self.final_timeout:g}s for response...")
                        stage_started = now
                        continue
                    log.warn(f"Idle timeout ({self.idle_timeout:g}s total) waiting for output; terminating")
                    self._kill(proc)
                    outcome = IterationOutcome(OutcomeStatus.IDLE_TIMEOUT, EXIT_IDLE_TIMEOUT)
                    break

                if item is _EOF:
                    break

                line = str(item)
                transcript.write_line(line)
                sig = classify(line)
                if sig is not None:
                    status, code = _SIGNAL_OUTCOMES[sig.kind]
                    log.warn(f"Detected '{status.value.replace('_', ' ')}' from agent; terminating")
                    self._kill(proc)
                    outcome = IterationOutcome(status, code, message=sig.message)
                    break

                # Any output clears a pending nudge.
                self.state = SupervisorState.RUNNING
                stage_started = self.clock()

            if outcome is None:
                remaining = max(0.0, wall_deadline - self.clock())
                try:
                    code = proc.wait(timeout=remaining)
                except subprocess.TimeoutExpired:
                    log.warn("Agent closed its output but did not exit before the overall timeout")
                    self._kill(proc)
                    outcome = IterationOutcome(OutcomeStatus.TIMEOUT, EXIT_SIGNAL_TERMINATED)
                else:
                    status, mapped = outcome_for_exit_code(code)
                    outcome = IterationOutcome(status, mapped)
        finally:
            self._kill(proc)
            try:
                proc.wait(timeout=self.kill_grace)
            except subprocess.TimeoutExpired:
                pass
            reader.join(timeout=1.0)
            self._drain(lines, transcript, outcome)
            with self._proc_lock:
                self._proc = None
            self.state = SupervisorState.DONE

        if self._interrupted.is_set():
            outcome.interrupted = True
            if outcome.status is OutcomeStatus.SUCCESS or outcome.status is OutcomeStatus.GENERIC_FAILURE:
                outcome.status, outcome.exit_code = OutcomeStatus.GENERIC_FAILURE, EXIT_SIGNAL_TERMINATED
        outcome.nudges = nudges
        outcome.duration_s = self.clock() - started
        log.debug(f"Agent finished: status={outcome.status.value} exit={outcome.exit_code}")
        return outcome

    @staticmethod
    def _drain(lines: "queue.Queue[object]", transcript: Transcript, outcome: Optional[IterationOutcome]) -> None:
        # Lines still queued after a forced stop are written too.
        if outcome is None:
            return
        while True:
            try:
                item = lines.get_nowait()
            except queue.Empty:
                return
            if item is not _EOF:
                transcript.write_line(str(item))
