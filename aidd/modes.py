"""
Mode selection: decide which instruction set the next iteration receives.

First match wins:
  1. ad-hoc directive (--prompt)
  2. audit (--audit NAME)
  3. completion pending marker -> TODO review
  4. --todo / --validate / --in-progress
  5. onboarding complete -> coding
  6. existing codebase -> onboarding, otherwise initializer
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Optional

from . import log
from .config import (
    AUDIT_PROMPT_FILE,
    CHANGELOG_FILE,
    DIRECTIVE_FILE,
    FEATURE_FILE,
    FEATURES_DIR,
    METADATA_DIR,
    SPEC_FILE,
)
from .errors import ConfigError, NotFoundError
from .features import FeatureStore
from .markers import MarkerStore


class Phase(enum.Enum):
    DIRECTIVE = "directive"
    AUDIT = "audit"
    TODO = "todo"
    VALIDATE = "validate"
    IN_PROGRESS = "in-progress"
    CODING = "coding"
    ONBOARDING = "onboarding"
    INITIALIZER = "initializer"

    @property
    def uses_code_model(self) -> bool:
        return self not in (Phase.ONBOARDING, Phase.INITIALIZER)


# Entries never counted when deciding whether a directory already holds code.
IGNORED_ENTRIES = {".git", METADATA_DIR, ".DS_Store", "node_modules", ".vscode", ".idea"}

FRONTMATTER_RE = re.compile(r"\A---\s*\n(?P<meta>.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
AUDIT_REFERENCE_RE = re.compile(r"audits/(?P<name>[A-Za-z0-9_-]+)\.md")
PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_]+)\s*\}\}")

DIRECTIVE_HEADER = """## YOUR ROLE - CUSTOM DIRECTIVE MODE

You are an AI development assistant executing a custom user directive.

### CRITICAL INSTRUCTIONS

1. **Read and understand the directive below**
2. **Execute ONLY what is requested in the directive**
3. **Do NOT modify features unless explicitly requested**
4. **Do NOT implement new features unless directive asks for it**
5. **Focus on completing the directive thoroughly and accurately**

### USER DIRECTIVE

"""

DIRECTIVE_FOOTER = """
### EXECUTION GUIDELINES

- If the directive requires code changes, make them carefully
- If the directive requires analysis, provide thorough analysis
- If the directive requires testing, run comprehensive tests
- If the directive requires fixes, fix all identified issues
- Document your work in .automaker/CHANGELOG.md
- Commit your changes with descriptive messages

### PROJECT CONTEXT

**Quick References:**

- **Spec (source of truth):** `/.automaker/app_spec.txt`
- **Feature records:** `/.automaker/features/*/feature.json`
- **Todo list:** `/.automaker/todo.md`
- **Changelog:** `/.automaker/CHANGELOG.md`

### ASSISTANT RULES

**STEP 0: Load project rules (if they exist):**

- Read `.windsurf/rules/`, `CLAUDE.md`, `AGENTS.md`
- Apply these rules throughout your work
- Assistant rules override generic instructions

### COMPLETION

When you've completed the directive:

1. Document what you did in .automaker/CHANGELOG.md
2. Commit all changes
3. Summarize your work
4. Exit cleanly

---

Begin by understanding the directive and executing it now.
"""

PRIORITY_LABELS = {1: "critical", 2: "high", 3: "medium", 4: "low"}


@dataclass
class ModeFlags:
    directive: Optional[str] = None
    audit_name: Optional[str] = None
    todo: bool = False
    validate: bool = False
    in_progress: bool = False
    filter_field: Optional[str] = None
    filter_value: Optional[str] = None


@dataclass
class Selection:
    phase: Phase
    prompt_path: Path
    prompt_text: str
    reason: str
    temporary: bool = False

    @property
    def name(self) -> str:
        return self.prompt_path.stem


def is_onboarding_complete(metadata_dir: Path) -> bool:
    """Spec file, at least one feature record and a changelog all exist."""
    features_dir = metadata_dir / FEATURES_DIR
    if not features_dir.is_dir():
        log.debug("Onboarding incomplete: features directory not found")
        return False
    if next(features_dir.glob(f"*/{FEATURE_FILE}"), None) is None:
        log.debug("Onboarding incomplete: no features found")
        return False
    if not (metadata_dir / SPEC_FILE).is_file():
        log.debug(f"Onboarding incomplete: spec file not found at {metadata_dir / SPEC_FILE}")
        return False
    if not (metadata_dir / CHANGELOG_FILE).is_file():
        log.debug(f"Onboarding incomplete: {CHANGELOG_FILE} not found")
        return False
    return True


def is_existing_codebase(project_dir: Path) -> bool:
    if not project_dir.is_dir():
        return False
    return any(entry.name not in IGNORED_ENTRIES for entry in project_dir.iterdir())


def parse_filter(text: str) -> tuple[str, str]:
    """Parse ``field=value``; whitespace around either side is ignored."""
    if "=" not in text:
        raise ConfigError(f"Invalid filter '{text}' (expected FIELD=VALUE)")
    field_name, value = (part.strip() for part in text.split("=", 1))
    if not field_name or not value:
        raise ConfigError(f"Invalid filter '{text}' (expected FIELD=VALUE)")
    return field_name, value


def filter_instructions(field_name: str, value: str, matches: list[dict]) -> str:
    lines = [
        "## FEATURE FILTER",
        "",
        f"Only work on features whose `{field_name}` is `{value}`.",
        "Ignore every other feature during this iteration, even if it is failing.",
        "",
    ]
    if matches:
        lines.append(f"Matching features ({len(matches)}):")
        lines.append("")
        for rec in matches:
            title = rec.get("title") or rec.get("description") or ""
            lines.append(f"- `{rec.get('id', '?')}`: {title}".rstrip())
    else:
        lines.append("No feature currently matches this filter.")
    lines.extend(["", "---", "", ""])
    return "\n".join(lines)


def write_directive_prompt(directive: str, metadata_dir: Path) -> Path:
    try:
        metadata_dir.mkdir(parents=True, exist_ok=True)
        path = metadata_dir / DIRECTIVE_FILE
        path.write_text(DIRECTIVE_HEADER + directive.rstrip("\n") + "\n" + DIRECTIVE_FOOTER, encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to create directive file in {metadata_dir}: {exc}") from exc
    return path


# ---------------------------------------------------------------------------
# Audit prompts
# ---------------------------------------------------------------------------


def available_audits(audits_dir: Path) -> list[str]:
    if not audits_dir.is_dir():
        return []
    return sorted(p.stem for p in audits_dir.glob("*.md"))


def resolve_audit(audit_name: str, audits_dir: Path) -> Path:
    base = audit_name[:-3] if audit_name.endswith(".md") else audit_name
    path = audits_dir / f"{base}.md"
    if not path.is_file():
        names = ", ".join(available_audits(audits_dir)) or "(none)"
        raise NotFoundError(f"Audit file not found: {path} (available audits: {names})")
    return path


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    match = FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    import yaml

    try:
        meta = yaml.safe_load(match.group("meta")) or {}
    except yaml.YAMLError as exc:
        log.warn(f"Ignoring malformed audit frontmatter: {exc}")
        meta = {}
    if not isinstance(meta, dict):
        meta = {}
    return meta, text[match.end():]


def audit_slug(audit_name: str) -> str:
    """Lowercase letters only, as required by ``audit-<type>-...`` feature ids."""
    slug = re.sub(r"[^a-z]", "", audit_name.lower())
    return slug or "audit"


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value)]


def _substitute(text: str, values: dict[str, str]) -> str:
    def repl(match: re.Match) -> str:
        key = match.group(1).upper()
        return values.get(key, match.group(0))

    return PLACEHOLDER_RE.sub(repl, text)


def _priority_value(raw: Any) -> int:
    if isinstance(raw, bool):
        return 2
    if isinstance(raw, (int, float)) and 1 <= int(raw) <= 4:
        return int(raw)
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text.isdigit() and 1 <= int(text) <= 4:
            return int(text)
        for num, label in PRIORITY_LABELS.items():
            if text == label:
                return num
    return 2


def build_audit_prompt(audit_name: str, audits_dir: Path, prompts_dir: Path, metadata_dir: Path) -> Path:
    """Write a self-contained ``audit-prompt.md`` for one audit template."""
    audit_path = resolve_audit(audit_name, audits_dir)
    name = audit_path.stem
    meta, body = split_frontmatter(audit_path.read_text(encoding="utf-8"))

    category = str(meta.get("category") or name.replace("_", " ").title())
    priority = _priority_value(meta.get("priority"))
    values = {
        "AUDIT_NAME": name,
        "AUDIT_SLUG": audit_slug(name),
        "AUDIT_CATEGORY": category,
        "AUDIT_PRIORITY": str(priority),
        "AUDIT_PRIORITY_LABEL": PRIORITY_LABELS[priority],
        "AUDIT_TITLE": str(meta.get("title") or name.replace("_", " ").title()),
        "DATE": date.today().isoformat(),
    }

    references = _as_list(meta.get("references"))
    references += [m.group("name") for m in AUDIT_REFERENCE_RE.finditer(body)]
    bundled: list[str] = []
    seen = {name}
    for ref in references:
        ref = ref[:-3] if ref.endswith(".md") else ref
        if ref in seen:
            continue
        seen.add(ref)
        ref_path = audits_dir / f"{ref}.md"
        if not ref_path.is_file():
            log.warn(f"Audit {name} references missing audit file: {ref_path.name}")
            continue
        _, ref_body = split_frontmatter(ref_path.read_text(encoding="utf-8"))
        bundled.append(f"### Referenced audit: {ref}\n\n{_substitute(ref_body.strip(), values)}\n")

    values["AUDIT_CONTENT"] = _substitute(body.strip(), values)
    values["REFERENCED_AUDITS"] = "\n".join(bundled) if bundled else "_No referenced audits._"

    template_path = prompts_dir / "audit.md"
    if not template_path.is_file():
        raise NotFoundError(f"Audit prompt template not found: {template_path}")
    prompt = _substitute(template_path.read_text(encoding="utf-8"), values)

    metadata_dir.mkdir(parents=True, exist_ok=True)
    out = metadata_dir / AUDIT_PROMPT_FILE
    out.write_text(prompt, encoding="utf-8")
    log.debug(f"Generated audit prompt for {name} ({len(bundled)} referenced audits bundled)")
    return out


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class ModeSelector:
    def __init__(
        self,
        project_dir: Path,
        metadata_dir: Path,
        prompts_dir: Path,
        audits_dir: Path,
        flags: Optional[ModeFlags] = None,
    ) -> None:
        self.project_dir = project_dir
        self.metadata_dir = metadata_dir
        self.prompts_dir = prompts_dir
        self.audits_dir = audits_dir
        self.flags = flags or ModeFlags()
        self.markers = MarkerStore(metadata_dir)

    def _prompt(self, name: str) -> Path:
        path = self.prompts_dir / f"{name}.md"
        if not path.is_file():
            raise NotFoundError(f"Prompt file does not exist: {path}")
        return path

    def _decide(self) -> tuple[Phase, Path, str, bool]:
        flags = self.flags
        if flags.directive:
            return Phase.DIRECTIVE, write_directive_prompt(flags.directive, self.metadata_dir), "custom directive", True
        if flags.audit_name:
            path = build_audit_prompt(flags.audit_name, self.audits_dir, self.prompts_dir, self.metadata_dir)
            return Phase.AUDIT, path, f"audit {flags.audit_name}", True
        if self.markers.completion_pending:
            return Phase.TODO, self._prompt("todo"), "project completion pending, thorough TODO review", False
        if flags.todo:
            return Phase.TODO, self._prompt("todo"), "TODO mode", False
        if flags.validate:
            return Phase.VALIDATE, self._prompt("validate"), "VALIDATE mode", False
        if flags.in_progress:
            return Phase.IN_PROGRESS, self._prompt("in-progress"), "in-progress mode", False
        if is_onboarding_complete(self.metadata_dir):
            return Phase.CODING, self._prompt("coding"), "onboarding complete", False
        if is_existing_codebase(self.project_dir):
            return Phase.ONBOARDING, self._prompt("onboarding"), "existing codebase", False
        return Phase.INITIALIZER, self._prompt("initializer"), "new project", False

    def select(self) -> Selection:
        phase, path, reason, temporary = self._decide()
        log.info(f"Selected {phase.value} prompt ({reason})")
        text = path.read_text(encoding="utf-8")
        if self.flags.filter_field and self.flags.filter_value is not None:
            matches = FeatureStore(self.metadata_dir).filter(self.flags.filter_field, self.flags.filter_value)
            if not matches:
                log.warn(f"No features match filter {self.flags.filter_field}={self.flags.filter_value}")
            text = filter_instructions(self.flags.filter_field, self.flags.filter_value, matches) + text
        return Selection(phase=phase, prompt_path=path, prompt_text=text, reason=reason, temporary=temporary)
