"""Command-line entry point: ``aidd`` / ``python -m aidd``."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import log
from .config import AIDD_VERSION, EXIT_SUCCESS, KNOWN_CLIS, METADATA_DIR, resolve_settings
from .errors import AdapterError, AiddError, ConfigError, NotFoundError, ValidationError
from .features import FeatureStore, check_features
from .loop import Driver, RunOptions
from .markers import MarkerStore
from .modes import ModeFlags, parse_filter
from .plugins import get_plugin
from .status import render_status, render_validation


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {text!r}")
    return value


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="aidd",
        description="Run a coding-agent CLI in a supervised loop until every feature passes",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {AIDD_VERSION}")
    p.add_argument("--cli", choices=KNOWN_CLIS, default=None, help="Agent CLI to drive (default: opencode)")
    p.add_argument("--project-dir", default=".", help="Project directory (default: current directory)")
    p.add_argument("--spec", default=None, help="Spec file; required for new projects")
    p.add_argument("--max-iterations", type=_positive_int, default=None, help="Stop after N iterations (default: unlimited)")

    g = p.add_argument_group("timeouts")
    g.add_argument("--timeout", type=_positive_int, default=None, help="Per-iteration wall-clock timeout in seconds (default: 3600)")
    g.add_argument("--idle-timeout", type=_positive_int, default=None, help="Kill the agent after this many silent seconds (default: 900)")
    g.add_argument("--idle-nudge-timeout", type=_positive_int, default=None, help="Nudge the agent after this many silent seconds (default: 300)")

    g = p.add_argument_group("models")
    g.add_argument("--model", default=None, help="Model for every phase")
    g.add_argument("--init-model", default=None, help="Model for onboarding and initializer phases")
    g.add_argument("--code-model", default=None, help="Model for coding, todo, validate and audit phases")

    g = p.add_argument_group("failure handling")
    g.add_argument("--quit-on-abort", type=_non_negative_int, default=None, help="Abort after N consecutive failures (0 = never)")
    g.add_argument("--continue-on-timeout", action="store_true", default=None, help="Keep going after a timed-out iteration")
    g.add_argument("--rate-limit-buffer", type=_non_negative_int, default=None, help="Seconds added after a rate-limit reset time (default: 60)")
    g.add_argument("--rate-limit-fallback", type=_non_negative_int, default=None, help="Seconds to wait when no reset time is given (default: 300)")

    g = p.add_argument_group("modes")
    modes = g.add_mutually_exclusive_group()
    modes.add_argument("--todo", action="store_true", help="Work through the TODO list")
    modes.add_argument("--validate", action="store_true", help="Re-verify features and todos")
    modes.add_argument("--in-progress", action="store_true", help="Finish features marked in_progress")
    modes.add_argument("--prompt", default=None, metavar="DIRECTIVE", help="Run a one-off directive")
    modes.add_argument("--audit", default=None, metavar="NAMES", help="Run audit(s), comma-separated (e.g. SECURITY,DEAD_CODE)")
    g.add_argument("--filter", default=None, metavar="FIELD=VALUE", help="Restrict the agent to matching features")
    g.add_argument("--stop-when-done", action="store_true", help="Exit once --todo or --in-progress has nothing left")

    g = p.add_argument_group("reports")
    g.add_argument("--status", action="store_true", help="Print the project status report and exit")
    g.add_argument("--check-features", action="store_true", help="Validate feature.json files and exit")
    g.add_argument("--stop", action="store_true", help="Ask a running loop to stop after its current iteration")
    return p


def _settings_values(args: argparse.Namespace) -> dict:
    return {
        "cli": args.cli,
        "model": args.model,
        "init_model": args.init_model,
        "code_model": args.code_model,
        "timeout": args.timeout,
        "idle_timeout": args.idle_timeout,
        "idle_nudge_timeout": args.idle_nudge_timeout,
        "quit_on_abort": args.quit_on_abort,
        "continue_on_timeout": args.continue_on_timeout,
        "rate_limit_buffer": args.rate_limit_buffer,
        "rate_limit_fallback": args.rate_limit_fallback,
    }


def _cmd_stop(metadata_dir: Path) -> int:
    path = MarkerStore(metadata_dir).request_stop()
    print(f"Stop requested: {path}")
    return EXIT_SUCCESS


def _cmd_status(project_dir: Path, metadata_dir: Path) -> int:
    if not FeatureStore(metadata_dir).exists():
        raise NotFoundError(f"No features directory in {metadata_dir}")
    print(render_status(project_dir, metadata_dir), end="")
    return EXIT_SUCCESS


def _cmd_check_features(project_dir: Path, metadata_dir: Path) -> int:
    if not FeatureStore(metadata_dir).exists():
        raise NotFoundError(f"No features directory in {metadata_dir}")
    report = check_features(metadata_dir, project_dir)
    print(render_validation(report), end="")
    if report.invalid:
        raise ValidationError(f"{len(report.invalid)} of {report.total} feature file(s) are invalid")
    return EXIT_SUCCESS


def _dispatch(args: argparse.Namespace) -> int:
    project_dir = Path(args.project_dir).expanduser().resolve()
    metadata_dir = project_dir / METADATA_DIR

    if args.stop:
        return _cmd_stop(metadata_dir)
    if args.status:
        return _cmd_status(project_dir, metadata_dir)
    if args.check_features:
        return _cmd_check_features(project_dir, metadata_dir)

    if args.stop_when_done and not (args.todo or args.in_progress):
        raise ConfigError("--stop-when-done requires --todo or --in-progress")

    flags = ModeFlags(
        directive=args.prompt,
        todo=args.todo,
        validate=args.validate,
        in_progress=args.in_progress,
    )
    if args.filter:
        flags.filter_field, flags.filter_value = parse_filter(args.filter)
    audits = [a.strip() for a in (args.audit or "").split(",") if a.strip()]
    if args.audit is not None and not audits:
        raise ConfigError("--audit requires at least one audit name")

    settings = resolve_settings(metadata_dir if metadata_dir.is_dir() else None, _settings_values(args))
    plugin = get_plugin(settings.cli)
    if plugin is None:
        raise ConfigError(f"No adapter for CLI '{settings.cli}'")
    installed, path = plugin.detect_installation()
    if not installed:
        raise AdapterError(f"{plugin.display_name} CLI not found (looked for: {', '.join(plugin.executable_names)})")
    log.info(f"Using {plugin.display_name} at {path} ({plugin.get_version() or 'unknown version'})")

    options = RunOptions(
        project_dir=project_dir,
        spec_file=Path(args.spec).expanduser().resolve() if args.spec else None,
        max_iterations=args.max_iterations,
        flags=flags,
        audits=audits,
        stop_when_done=args.stop_when_done,
    )
    driver = Driver(settings, plugin, options)
    driver.prepare()
    return driver.run()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return _dispatch(args)
    except AiddError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return exc.exit_code


if __name__ == "__main__":
    sys.exit(main())
