import pytest

from aidd import cli
from aidd.config import AIDD_VERSION


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--version"])
    assert exc.value.code == 0
    assert AIDD_VERSION in capsys.readouterr().out


def test_stop_writes_marker(tmp_path, capsys):
    assert cli.main(["--project-dir", str(tmp_path), "--stop"]) == 0
    assert (tmp_path / ".automaker" / ".stop").exists()
    assert "Stop requested" in capsys.readouterr().out


def test_status_without_features(tmp_path, capsys):
    assert cli.main(["--project-dir", str(tmp_path), "--status"]) == 3
    assert capsys.readouterr().err.startswith("ERROR: No features directory")


def test_status_prints_report(tmp_path, write_feature, capsys):
    write_feature(1)
    assert cli.main(["--project-dir", str(tmp_path), "--status"]) == 0
    assert "# Project Status" in capsys.readouterr().out


def test_check_features_exit_codes(tmp_path, write_feature, capsys):
    write_feature(1)
    assert cli.main(["--project-dir", str(tmp_path), "--check-features"]) == 0
    write_feature(2, category="")
    assert cli.main(["--project-dir", str(tmp_path), "--check-features"]) == 7
    captured = capsys.readouterr()
    assert "Missing required field: category" in captured.out
    assert "ERROR: 1 of 2 feature file(s) are invalid" in captured.err


def test_mode_flags_are_exclusive(tmp_path):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--project-dir", str(tmp_path), "--todo", "--validate"])
    assert exc.value.code == 2


def test_stop_when_done_needs_mode(tmp_path, capsys):
    assert cli.main(["--project-dir", str(tmp_path), "--stop-when-done"]) == 2
    assert "--stop-when-done requires" in capsys.readouterr().err


def test_bad_filter(tmp_path, capsys):
    assert cli.main(["--project-dir", str(tmp_path), "--todo", "--filter", "category"]) == 2
    assert "Invalid filter" in capsys.readouterr().err


def test_bad_timeouts(tmp_path, capsys):
    code = cli.main(["--project-dir", str(tmp_path), "--idle-timeout", "60", "--idle-nudge-timeout", "90"])
    assert code == 2
    assert "idle_nudge_timeout" in capsys.readouterr().err


def test_missing_adapter_is_exit_8(tmp_path, monkeypatch, capsys):
    import aidd.plugins.base as base_mod

    monkeypatch.setattr(base_mod.shutil, "which", lambda _name: None)
    assert cli.main(["--project-dir", str(tmp_path), "--cli", "kilocode", "--todo"]) == 8
    assert "KiloCode CLI not found" in capsys.readouterr().err


def test_run_builds_driver(tmp_path, monkeypatch):
    import aidd.plugins.base as base_mod

    monkeypatch.setattr(base_mod.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(base_mod, "first_output_line", lambda *_a, **_k: "claude 2.0")
    seen = {}

    class FakeDriver:
        def __init__(self, settings, plugin, options):
            seen.update(settings=settings, plugin=plugin, options=options)

        def prepare(self):
            seen["prepared"] = True

        def run(self):
            return 73

    monkeypatch.setattr(cli, "Driver", FakeDriver)
    code = cli.main(
        [
            "--project-dir", str(tmp_path),
            "--cli", "claude-code",
            "--code-model", "sonnet",
            "--max-iterations", "4",
            "--audit", "SECURITY, DEAD_CODE",
            "--filter", "status=backlog",
            "--quit-on-abort", "3",
        ]
    )
    assert code == 73
    assert seen["prepared"] is True
    assert seen["plugin"].name == "claude-code"
    assert seen["settings"].code_model == "sonnet"
    assert seen["settings"].quit_on_abort == 3
    opts = seen["options"]
    assert opts.max_iterations == 4
    assert opts.audits == ["SECURITY", "DEAD_CODE"]
    assert (opts.flags.filter_field, opts.flags.filter_value) == ("status", "backlog")
