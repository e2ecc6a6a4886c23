from datetime import datetime

from aidd.features import check_features
from aidd.status import render_status, render_validation, write_status_file


def _row(text, label):
    for line in text.splitlines():
        cells = [c.strip() for c in line.strip().strip("|").split("|")]
        if line.startswith("|") and cells[0] == label:
            return cells[1:]
    return None


def test_render_status_counts(tmp_path, metadata_dir, write_feature):
    write_feature(1, priority=1, category="auth")
    write_feature(2, passes=False, status="in_progress", priority=3, category="ui")
    write_feature(3, id="audit-security-1-xss", passes=False, status="backlog")
    (metadata_dir / "todo.md").write_text("- [ ] write docs\n- [x] set up CI\n- [~] manual QA\n")

    text = render_status(tmp_path, metadata_dir, now=datetime(2026, 1, 2, 3, 4, 5))
    assert "_Generated 2026-01-02 03:04:05" in text
    assert _row(text, "Total features") == ["2"]
    assert _row(text, "Passing") == ["1"]
    assert _row(text, "Unfixed audit findings") == ["1"]
    assert "50.0%" in text
    assert "**Critical** (1)" in text
    assert "`feature-2-item` Feature 2" in text
    assert _row(text, "auth") == ["1", "0", "0", "0", "1"]
    assert _row(text, "ui") == ["0", "0", "1", "0", "1"]
    assert "- [ ] write docs" in text
    assert "- [x] set up CI" in text


def test_status_without_todo_file(tmp_path, metadata_dir, write_feature):
    write_feature(1)
    assert "_No TODO file found._" in render_status(tmp_path, metadata_dir)


def test_write_status_file(tmp_path, metadata_dir, write_feature):
    write_feature(1)
    path = write_status_file(tmp_path, metadata_dir)
    assert path == metadata_dir / "status.md"
    assert path.read_text().startswith("# Project Status")


def test_render_validation(tmp_path, metadata_dir, write_feature):
    write_feature(1)
    write_feature(2, status="bogus")
    text = render_validation(check_features(metadata_dir, tmp_path))
    assert "INVALID" in text
    assert "Invalid 'status' value: 'bogus'" in text
    assert "Total: 2  Valid: 1  Invalid: 1" in text


def test_render_validation_empty(tmp_path, metadata_dir):
    assert "No feature files found." in render_validation(check_features(metadata_dir, tmp_path))
