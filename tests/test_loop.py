import shutil
import signal
import subprocess
from pathlib import Path
from typing import Optional

import pytest

from aidd.completion import CompletionDetector
from aidd.config import Settings
from aidd.errors import ConfigError, NotFoundError
from aidd.loop import Driver, RunOptions
from aidd.modes import ModeFlags
from aidd.plugins.base import AgentPlugin
from aidd.supervisor import IterationOutcome, OutcomeStatus


class StubPlugin(AgentPlugin):
    name = "stub"
    display_name = "Stub"
    executable_names = ["stub"]

    def __init__(self):
        self.prepared = 0

    def detect_installation(self):
        return True, "/bin/stub"

    def get_version(self) -> Optional[str]:
        return "stub 1.0"

    def prepare(self, project_dir: Path) -> None:
        self.prepared += 1

    def build_command(self, model, prompt_file, cwd, settings=None):
        return ["stub", "--model", model or "default", str(prompt_file)]


class StubSupervisor:
    """Replays scripted outcomes; ``hooks`` run before each outcome is returned."""

    def __init__(self, outcomes, hooks=None):
        self.outcomes = list(outcomes)
        self.hooks = list(hooks or [])
        self.calls = []
        self.returned = []
        self.terminated = False

    def run(self, command, cwd, prompt_text, transcript, keep_stdin_open=False, env=None):
        self.calls.append({"command": command, "prompt": prompt_text, "transcript": transcript.path})
        transcript.write_line("agent output")
        if self.hooks:
            hook = self.hooks.pop(0)
            if hook:
                hook()
        status, code, *rest = self.outcomes.pop(0) if self.outcomes else (OutcomeStatus.SUCCESS, 0)
        outcome = IterationOutcome(status, code, message=rest[0] if rest else "")
        self.returned.append(outcome)
        return outcome

    def terminate(self):
        self.terminated = True


OK = (OutcomeStatus.SUCCESS, 0)


def _onboard(metadata_dir, write_feature, passes=False):
    (metadata_dir / "app_spec.txt").write_text("spec")
    (metadata_dir / "CHANGELOG.md").write_text("# Changelog\n")
    write_feature(1, passes=passes, status="completed" if passes else "backlog")


def _driver(tmp_path, supervisor, settings=None, sleeper=None, **options):
    opts = RunOptions(project_dir=tmp_path, **options)
    kwargs = {}
    if sleeper is not None:
        kwargs["sleeper"] = sleeper
    driver = Driver(
        settings or Settings(),
        StubPlugin(),
        opts,
        supervisor=supervisor,
        detector=CompletionDetector(opts.metadata_dir, use_git=False),
        **kwargs,
    )
    driver.prepare()
    return driver


def test_completion_confirmed_after_todo_review(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature, passes=True)
    sup = StubSupervisor([OK])
    code = _driver(tmp_path, sup, max_iterations=5).run()
    assert code == 73
    assert len(sup.calls) == 1
    assert "TODO AGENT" in sup.calls[0]["prompt"]
    assert not (metadata_dir / ".project_completion_pending").exists()


def test_max_iterations_and_transcripts(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([OK, OK, OK])
    assert _driver(tmp_path, sup, max_iterations=2).run() == 0
    assert len(sup.calls) == 2
    logs = sorted(p.name for p in (metadata_dir / "iterations").iterdir())
    assert logs == ["001.log", "002.log"]
    text = (metadata_dir / "iterations" / "001.log").read_text()
    assert "agent output" in text
    assert "[INFO] Selected coding prompt" in text
    assert (metadata_dir / "status.md").exists()


def test_transcript_index_continues(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    (metadata_dir / "iterations").mkdir()
    (metadata_dir / "iterations" / "007.log").write_text("old")
    sup = StubSupervisor([OK])
    _driver(tmp_path, sup, max_iterations=1).run()
    assert sup.calls[0]["transcript"].name == "008.log"


def test_failure_threshold_aborts(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([(OutcomeStatus.IDLE_TIMEOUT, 71), (OutcomeStatus.PROVIDER_ERROR, 72)])
    code = _driver(tmp_path, sup, settings=Settings(quit_on_abort=2), max_iterations=10).run()
    assert code == 72
    assert len(sup.calls) == 2


def test_outcome_carries_consecutive_failures(tmp_path, metadata_dir, write_feature, capsys):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([(OutcomeStatus.IDLE_TIMEOUT, 71), (OutcomeStatus.PROVIDER_ERROR, 72), OK])
    assert _driver(tmp_path, sup, max_iterations=3).run() == 0
    assert [o.consecutive_failures for o in sup.returned] == [1, 2, 0]
    err = capsys.readouterr().err
    assert "Iteration 2 result:" in err
    assert "'consecutive_failures': 2" in err


def test_rate_limit_sleeps_and_reuses_index(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([(OutcomeStatus.RATE_LIMITED, 74, "hit your limit · resets 2am"), OK])
    waits = []

    def sleeper(message, buffer, fallback, cancel=None):
        waits.append((message, buffer, fallback))
        return True

    code = _driver(tmp_path, sup, sleeper=sleeper, max_iterations=1).run()
    assert code == 0
    assert waits == [("hit your limit · resets 2am", 60, 300)]
    assert [c["transcript"].name for c in sup.calls] == ["001.log", "001.log"]
    assert sorted(p.name for p in (metadata_dir / "iterations").iterdir()) == ["001.log"]


def test_stop_file_aborts(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    stop = metadata_dir / ".stop"
    sup = StubSupervisor([OK, OK], hooks=[lambda: stop.write_text("now")])
    assert _driver(tmp_path, sup, max_iterations=5).run() == 6
    assert len(sup.calls) == 1
    assert not stop.exists()


def test_stale_stop_file_removed_at_startup(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    (metadata_dir / ".stop").write_text("old")
    sup = StubSupervisor([OK])
    assert _driver(tmp_path, sup, max_iterations=1).run() == 0


def test_stop_when_done_without_todos(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([])
    code = _driver(tmp_path, sup, flags=ModeFlags(todo=True), stop_when_done=True).run()
    assert code == 0
    assert sup.calls == []


def test_stop_when_done_after_last_in_progress(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    write_feature(2, status="in_progress", passes=False)
    sup = StubSupervisor([OK], hooks=[lambda: write_feature(2, status="completed", passes=True)])
    code = _driver(tmp_path, sup, flags=ModeFlags(in_progress=True), stop_when_done=True).run()
    assert code == 0
    assert len(sup.calls) == 1
    assert "IN-PROGRESS AGENT" in sup.calls[0]["prompt"]


def test_directive_file_removed(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([OK])
    _driver(tmp_path, sup, flags=ModeFlags(directive="Update the README"), max_iterations=1).run()
    assert "Update the README" in sup.calls[0]["prompt"]
    assert not (metadata_dir / "directive.md").exists()


def test_multiple_audits_run_in_order(tmp_path):
    (tmp_path / "app.py").write_text("x = 1\n")
    sup = StubSupervisor([OK, OK])
    code = _driver(tmp_path, sup, audits=["SECURITY", "DEAD_CODE"], max_iterations=1).run()
    assert code == 0
    assert "audit-security-<n>" in sup.calls[0]["prompt"]
    assert "audit-deadcode-<n>" in sup.calls[1]["prompt"]
    assert not (tmp_path / ".automaker" / "audit-prompt.md").exists()


def test_audit_failure_skips_remaining(tmp_path):
    (tmp_path / "app.py").write_text("x = 1\n")
    sup = StubSupervisor([(OutcomeStatus.GENERIC_FAILURE, 5)])
    settings = Settings(quit_on_abort=1)
    code = _driver(tmp_path, sup, settings=settings, audits=["SECURITY", "DEAD_CODE"], max_iterations=1).run()
    assert code == 5
    assert len(sup.calls) == 1


def test_initializer_copies_spec_and_uses_init_model(tmp_path):
    project = tmp_path / "new-app"
    spec = tmp_path / "spec.txt"
    spec.write_text("Build a todo app")
    sup = StubSupervisor([OK])
    settings = Settings(init_model="planner", code_model="coder")
    _driver(project, sup, settings=settings, spec_file=spec, max_iterations=1).run()
    assert (project / ".automaker" / "app_spec.txt").read_text() == "Build a todo app"
    assert sup.calls[0]["command"][:3] == ["stub", "--model", "planner"]
    assert "INITIALIZER AGENT" in sup.calls[0]["prompt"]


def test_new_project_requires_spec(tmp_path):
    with pytest.raises(ConfigError):
        _driver(tmp_path / "empty", StubSupervisor([]))


def test_missing_spec_file(tmp_path):
    with pytest.raises(NotFoundError):
        _driver(tmp_path, StubSupervisor([]), spec_file=tmp_path / "nope.txt")


def test_signal_stops_with_124(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    holder = {}
    sup = StubSupervisor([OK, OK], hooks=[lambda: holder["driver"]._on_signal(signal.SIGTERM, None)])
    driver = _driver(tmp_path, sup, max_iterations=5)
    holder["driver"] = driver
    assert driver.run() == 124
    assert sup.terminated is True
    assert len(sup.calls) == 1


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_stuck_detection_aborts_unlimited_run(tmp_path, metadata_dir, write_feature):
    subprocess.run(["git", "init", "-q", str(tmp_path)], check=True)
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([OK] * 5)
    assert _driver(tmp_path, sup).run() == 6
    assert len(sup.calls) == 3


def test_signal_before_launch_skips_agent(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sup = StubSupervisor([OK])
    driver = _driver(tmp_path, sup, max_iterations=5)

    class SignalledPlugin(StubPlugin):
        def prepare(self, project_dir):
            driver._on_signal(signal.SIGINT, None)

    driver.plugin = SignalledPlugin()
    assert driver.run() == 124
    assert sup.calls == []
    assert sup.terminated is True
