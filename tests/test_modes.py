import pytest

from aidd.config import AUDITS_DIR, PROMPTS_DIR
from aidd.errors import ConfigError, NotFoundError
from aidd.modes import (
    ModeFlags,
    ModeSelector,
    Phase,
    audit_slug,
    build_audit_prompt,
    is_existing_codebase,
    parse_filter,
    split_frontmatter,
)


def _selector(project, flags=None, audits_dir=AUDITS_DIR):
    return ModeSelector(project, project / ".automaker", PROMPTS_DIR, audits_dir, flags)


def _onboard(metadata_dir, write_feature):
    (metadata_dir / "app_spec.txt").write_text("spec")
    (metadata_dir / "CHANGELOG.md").write_text("# Changelog\n")
    write_feature(1, passes=False, status="backlog")


def test_empty_project_selects_initializer(tmp_path):
    sel = _selector(tmp_path).select()
    assert sel.phase is Phase.INITIALIZER
    assert sel.prompt_path == PROMPTS_DIR / "initializer.md"
    assert not sel.phase.uses_code_model


def test_onboarded_project_selects_coding(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    sel = _selector(tmp_path).select()
    assert sel.phase is Phase.CODING
    assert sel.phase.uses_code_model


def test_existing_code_selects_onboarding(tmp_path):
    (tmp_path / "main.py").write_text("print('hi')\n")
    assert _selector(tmp_path).select().phase is Phase.ONBOARDING


def test_ignored_entries_do_not_count_as_code(tmp_path):
    (tmp_path / ".git").mkdir()
    (tmp_path / "node_modules").mkdir()
    (tmp_path / ".DS_Store").write_text("")
    assert is_existing_codebase(tmp_path) is False


def test_pending_marker_forces_todo(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    (metadata_dir / ".project_completion_pending").write_text("")
    sel = _selector(tmp_path, ModeFlags(validate=True)).select()
    assert sel.phase is Phase.TODO


@pytest.mark.parametrize(
    "flags,phase",
    [
        (ModeFlags(todo=True), Phase.TODO),
        (ModeFlags(validate=True), Phase.VALIDATE),
        (ModeFlags(in_progress=True), Phase.IN_PROGRESS),
    ],
)
def test_mode_flags(tmp_path, flags, phase):
    assert _selector(tmp_path, flags).select().phase is phase


def test_directive_wins_and_is_temporary(tmp_path, metadata_dir):
    sel = _selector(tmp_path, ModeFlags(directive="Fix the login bug", todo=True)).select()
    assert sel.phase is Phase.DIRECTIVE
    assert sel.temporary
    assert sel.prompt_path == metadata_dir / "directive.md"
    assert "Fix the login bug" in sel.prompt_text
    assert "CUSTOM DIRECTIVE MODE" in sel.prompt_text


def test_audit_prompt_bundles_references(tmp_path, metadata_dir):
    sel = _selector(tmp_path, ModeFlags(audit_name="SECURITY")).select()
    assert sel.phase is Phase.AUDIT
    text = sel.prompt_text
    assert "audit-security-<n>" in text
    assert '"priority": 1' in text
    assert "Referenced audit: CODE_QUALITY" in text
    assert "Referenced audit: DEAD_CODE" in text
    assert "{{" not in text
    assert (metadata_dir / "audit-prompt.md").exists()


def test_audit_frontmatter_substitution(tmp_path):
    audits = tmp_path / "audits"
    audits.mkdir()
    (audits / "API_DESIGN.md").write_text(
        "---\ncategory: api\npriority: high\n---\nCheck {{AUDIT_CATEGORY}} endpoints.\n"
    )
    out = build_audit_prompt("API_DESIGN.md", audits, PROMPTS_DIR, tmp_path / ".automaker")
    text = out.read_text()
    assert "Check api endpoints." in text
    assert "audit-apidesign-<n>" in text
    assert '"priority": 2' in text
    assert "_No referenced audits._" in text


def test_unknown_audit_lists_available(tmp_path):
    with pytest.raises(NotFoundError) as exc:
        _selector(tmp_path, ModeFlags(audit_name="NOPE")).select()
    assert "SECURITY" in str(exc.value)


def test_filter_prepends_matches(tmp_path, metadata_dir, write_feature):
    _onboard(metadata_dir, write_feature)
    write_feature(2, category="ui")
    sel = _selector(tmp_path, ModeFlags(filter_field="category", filter_value="ui")).select()
    assert sel.phase is Phase.CODING
    assert sel.prompt_text.startswith("## FEATURE FILTER")
    assert "`feature-2-item`" in sel.prompt_text
    assert "`feature-1-item`" not in sel.prompt_text


def test_parse_filter():
    assert parse_filter(" status = in_progress ") == ("status", "in_progress")
    with pytest.raises(ConfigError):
        parse_filter("status")
    with pytest.raises(ConfigError):
        parse_filter("=x")


def test_split_frontmatter_without_header():
    meta, body = split_frontmatter("# Title\nbody\n")
    assert meta == {}
    assert body.startswith("# Title")


def test_audit_slug():
    assert audit_slug("DEAD_CODE") == "deadcode"
    assert audit_slug("123") == "audit"
