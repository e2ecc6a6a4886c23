"""
The outer development loop.

One ``Driver`` runs iterations strictly one after another: check completion,
select a mode, launch the agent under the supervisor, then fold the outcome
into the retry policy, stop file and stuck detection.
"""

from __future__ import annotations

import shutil
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from . import log, vcs
from .completion import CompletionDetector, CompletionState
from .config import (
    EXIT_ABORTED,
    EXIT_PROJECT_COMPLETE,
    EXIT_SIGNAL_TERMINATED,
    EXIT_SUCCESS,
    ITERATIONS_DIR,
    METADATA_DIR,
    SPEC_FILE,
    STATUS_FILE,
    Settings,
)
from .errors import AiddError, ConfigError, NotFoundError, PermissionDeniedError
from .features import FeatureStore
from .markers import MarkerStore
from .modes import ModeFlags, ModeSelector, Phase, Selection, is_existing_codebase, is_onboarding_complete
from .plugins.base import AgentPlugin
from .ratelimit import wait_for_reset
from .retry import Decision, RetryPolicy
from .status import write_status_file
from .supervisor import IterationOutcome, OutcomeStatus, ProcessSupervisor
from .todos import find_todo_file, scan_todo_file
from .transcript import Transcript, log_path, next_log_index

STUCK_THRESHOLD = 3


@dataclass
class RunOptions:
    project_dir: Path
    spec_file: Optional[Path] = None
    max_iterations: Optional[int] = None
    flags: ModeFlags = field(default_factory=ModeFlags)
    audits: list[str] = field(default_factory=list)
    stop_when_done: bool = False

    @property
    def metadata_dir(self) -> Path:
        return self.project_dir / METADATA_DIR


class Driver:
    def __init__(
        self,
        settings: Settings,
        plugin: AgentPlugin,
        options: RunOptions,
        supervisor: Optional[ProcessSupervisor] = None,
        detector: Optional[CompletionDetector] = None,
        sleeper: Callable[..., bool] = wait_for_reset,
    ) -> None:
        self.settings = settings
        self.plugin = plugin
        self.options = options
        self.project_dir = options.project_dir
        self.metadata_dir = options.metadata_dir
        self.iterations_dir = self.metadata_dir / ITERATIONS_DIR
        self.supervisor = supervisor or ProcessSupervisor(
            idle_timeout=settings.idle_timeout,
            idle_nudge_timeout=settings.idle_nudge_timeout,
            timeout=settings.timeout,
        )
        self.detector = detector or CompletionDetector(self.metadata_dir)
        self.sleeper = sleeper
        self.markers = MarkerStore(self.metadata_dir)
        self.policy = RetryPolicy(
            quit_threshold=settings.quit_on_abort,
            continue_on_timeout=settings.continue_on_timeout,
        )
        self.log_index = 1
        self._cancel = threading.Event()
        self._received_signal: Optional[int] = None

    # -- startup ---------------------------------------------------------

    def prepare(self) -> None:
        """Validate inputs and create the metadata layout. Raises AiddError."""
        flags = self.options.flags
        spec = self.options.spec_file
        ad_hoc = bool(flags.directive or flags.audit_name or self.options.audits)

        if spec is not None and not spec.is_file():
            raise NotFoundError(f"Spec file '{spec}' does not exist")
        if spec is None and not ad_hoc:
            if not is_existing_codebase(self.project_dir) and not is_onboarding_complete(self.metadata_dir):
                raise ConfigError("Missing required argument --spec (required for new projects or when onboarding is incomplete)")

        try:
            self.project_dir.mkdir(parents=True, exist_ok=True)
            self.iterations_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise PermissionDeniedError(f"Cannot create metadata directory {self.metadata_dir}: {exc}") from exc
        except OSError as exc:
            raise AiddError(f"Cannot create metadata directory {self.metadata_dir}: {exc}") from exc

        if self.markers.clear_stop():
            log.info("Removed stale stop request from a previous run")
        self.log_index = next_log_index(self.iterations_dir)
        log.debug(f"Next transcript index: {self.log_index}")

    # -- signals ---------------------------------------------------------

    def _on_signal(self, signum, _frame) -> None:
        self._received_signal = signum
        self._cancel.set()
        self.supervisor.terminate()

    def _install_handlers(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, self._on_signal)
        return previous

    @staticmethod
    def _restore_handlers(previous: dict) -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    @property
    def interrupted(self) -> bool:
        return self._received_signal is not None

    # -- helpers ---------------------------------------------------------

    def _copy_spec(self) -> None:
        spec = self.options.spec_file
        if spec is None:
            return
        target = self.metadata_dir / SPEC_FILE
        if spec.resolve() == target.resolve():
            return
        shutil.copyfile(spec, target)
        log.info(f"Copied spec to {target}")

    def _mode_finished(self, phase: Phase) -> bool:
        flags = self.options.flags
        if phase is Phase.TODO and flags.todo:
            todo_path = find_todo_file(self.project_dir, self.metadata_dir)
            if todo_path is None or not scan_todo_file(todo_path).has_blocking:
                log.info("No incomplete TODO items remain; stopping (--stop-when-done)")
                return True
        if phase is Phase.IN_PROGRESS:
            if not any(rec.get("status") == "in_progress" for rec in FeatureStore(self.metadata_dir).records()):
                log.info("No in-progress features remain; stopping (--stop-when-done)")
                return True
        return False

    def _model_for(self, phase: Phase) -> Optional[str]:
        if phase.uses_code_model:
            return self.settings.effective_code_model
        return self.settings.effective_init_model

    def _progress_fingerprint(self) -> Optional[tuple]:
        snap = vcs.snapshot(self.project_dir)
        if snap is None:
            return None
        # Transcripts and status.md change every iteration and are not progress.
        noise = (f"{METADATA_DIR}/{ITERATIONS_DIR}/", f"{METADATA_DIR}/{STATUS_FILE}")
        lines = [line for line in snap.dirty.splitlines() if not any(n in line for n in noise)]
        return snap.head, tuple(lines)

    def _stuck_detection_enabled(self) -> bool:
        return self.options.max_iterations is None and vcs.repo_root(self.project_dir) is not None

    # -- one iteration ---------------------------------------------------

    def run_iteration(self, iteration: int, flags: ModeFlags) -> tuple[Optional[IterationOutcome], Optional[Selection]]:
        """Run one agent invocation. Returns (None, selection) when stop-when-done or a signal ends the run."""
        path = log_path(self.iterations_dir, self.log_index)
        transcript = Transcript(path)
        outcome: Optional[IterationOutcome] = None
        with transcript, log.tee(transcript.handle):
            log.header(f"Iteration {iteration}")
            log.info(f"Transcript: {path}")

            selector = ModeSelector(
                self.project_dir, self.metadata_dir, self.settings.prompts_dir, self.settings.audits_dir, flags
            )
            selection = selector.select()
            if selection.phase is Phase.INITIALIZER:
                self._copy_spec()
            try:
                write_status_file(self.project_dir, self.metadata_dir)
            except OSError as exc:
                log.warn(f"Could not write status file: {exc}")

            try:
                if self.options.stop_when_done and self._mode_finished(selection.phase):
                    return None, selection

                model = self._model_for(selection.phase)
                self.plugin.prepare(self.project_dir)
                command = self.plugin.build_command(model, selection.prompt_path, self.project_dir, self.settings)
                log.info(f"Running {self.plugin.display_name} ({selection.phase.value}, model: {model or 'default'})")
                log.debug(f"Command: {' '.join(command)}")

                if self.interrupted:
                    log.warn("Stop requested before launch; agent not started")
                    return None, selection
                outcome = self.supervisor.run(
                    command,
                    self.project_dir,
                    selection.prompt_text,
                    transcript,
                    keep_stdin_open=self.plugin.keep_stdin_open,
                )
                log.info(
                    f"Iteration {iteration} finished: {outcome.status.value} "
                    f"(exit={outcome.exit_code}, {outcome.duration_s:.0f}s, nudges={outcome.nudges})"
                )
            finally:
                if selection.temporary:
                    selection.prompt_path.unlink(missing_ok=True)

        if outcome is not None and outcome.status is OutcomeStatus.RATE_LIMITED:
            transcript.discard()
        return outcome, selection

    # -- loop ------------------------------------------------------------

    def _loop(self, flags: ModeFlags) -> int:
        max_iterations = self.options.max_iterations
        audit_mode = bool(flags.audit_name)
        stuck_check = self._stuck_detection_enabled()
        unchanged = 0
        iteration = 0

        while max_iterations is None or iteration < max_iterations:
            iteration += 1

            if not audit_mode:
                report = self.detector.is_complete()
                if report.state is CompletionState.CONFIRMED:
                    log.header("PROJECT COMPLETE")
                    log.info(f"All {report.total} features pass and no TODO items remain")
                    return EXIT_PROJECT_COMPLETE

            before = self._progress_fingerprint() if stuck_check else None

            while True:
                outcome, selection = self.run_iteration(iteration, flags)
                if outcome is None or outcome.status is not OutcomeStatus.RATE_LIMITED or self.interrupted:
                    break
                # Retry the same iteration with the same transcript index.
                if not self.sleeper(
                    outcome.message,
                    self.settings.rate_limit_buffer,
                    self.settings.rate_limit_fallback,
                    cancel=self._cancel,
                ):
                    break
            self.log_index += 1

            if self.interrupted:
                log.warn(f"Received signal {self._received_signal}; stopping")
                return EXIT_SIGNAL_TERMINATED
            if outcome is None:
                return EXIT_SUCCESS

            decision = Decision.CONTINUE
            if outcome.ok:
                self.policy.record_success()
            else:
                decision = self.policy.record_failure(outcome.exit_code, self.plugin.display_name)
            outcome.consecutive_failures = self.policy.consecutive_failures
            log.info(f"Iteration {iteration} result: {outcome.to_dict()}")
            if decision is Decision.ABORT:
                return outcome.exit_code

            if self.markers.stop_requested:
                self.markers.clear_stop()
                log.warn("Stop requested; exiting after this iteration")
                return EXIT_ABORTED

            if self.options.stop_when_done and selection is not None and self._mode_finished(selection.phase):
                return EXIT_SUCCESS

            if stuck_check:
                after = self._progress_fingerprint()
                if before is not None and after == before:
                    unchanged += 1
                    log.warn(f"No project changes detected ({unchanged}/{STUCK_THRESHOLD})")
                    if unchanged >= STUCK_THRESHOLD:
                        log.error(f"No progress in {STUCK_THRESHOLD} consecutive iterations; aborting")
                        return EXIT_ABORTED
                else:
                    unchanged = 0

        log.info(f"Reached max iterations ({max_iterations})")
        return EXIT_SUCCESS

    def run(self) -> int:
        previous = self._install_handlers()
        try:
            audits = self.options.audits
            if not audits:
                return self._loop(self.options.flags)

            code = EXIT_SUCCESS
            for index, name in enumerate(audits, start=1):
                log.header(f"AUDIT {index}/{len(audits)}: {name}")
                flags = ModeFlags(**{**vars(self.options.flags), "audit_name": name})
                code = self._loop(flags)
                if code != EXIT_SUCCESS:
                    log.error(f"Audit {name} ended with exit code {code}; skipping remaining audits")
                    return code
            log.info(f"Completed {len(audits)} audit(s)")
            return code
        finally:
            self._restore_handlers(previous)
