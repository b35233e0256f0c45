# Copyright 2025 Lars Marowsky-Brée <lars@marowsky-bree.eu>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Command-line interface for the expert router."""

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, NoReturn

from . import detector, gate
from .config import KINDS, Kind, RuleStore, validate_file
from .errors import RouterError
from .fallback import resolve_candidates
from .hooks import run_hook
from .models import EXPERT_IDS, MATCH_TYPES, OPERATION_CATEGORIES, KeywordRule, Operation

LOG_LEVEL_ENV = "LLM_ROUTER_LOG_LEVEL"
GLOBAL_SETTINGS_DIR = Path.home() / ".claude"
HOOK_COMMAND = "llm-router hook"

# Exit codes for `check`
EXIT_DENIED = 2
EXIT_NEEDS_CONFIRMATION = 3


def _configure_logging(verbose: bool) -> None:
    if verbose:
        level = logging.DEBUG
    else:
        name = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s"
    )


def cmd_hook(args: argparse.Namespace) -> int:
    """Run as Claude Code hook."""
    return run_hook()


def cmd_detect(args: argparse.Namespace) -> int:
    """Suggest an expert for a piece of text."""
    engine = detector.KeywordDetector(RuleStore().load_keywords())
    result = engine.detect(args.text)

    if args.json:
        payload = {
            "detected": result.detected,
            "suggested_expert": result.suggested_expert,
            "confidence": result.confidence,
            "matched_rules": [
                {
                    "rule_id": m.rule_id,
                    "rule_name": m.rule_name,
                    "matched_keywords": list(m.matched_keywords),
                    "target_expert": m.target_expert,
                    "priority": m.priority,
                }
                for m in result.matched_rules
            ],
            "candidates": resolve_candidates(result.suggested_expert),
        }
        json.dump(payload, sys.stdout, indent=2)
        print()
        return 0

    if not result.detected:
        print("No expert detected")
        return 0

    print(f"{result.suggested_expert} (confidence {result.confidence:.2f})")
    for m in result.matched_rules:
        print(f"  [{m.priority}] {m.rule_name} -> {m.target_expert}: {', '.join(m.matched_keywords)}")
    print(f"Candidates: {', '.join(resolve_candidates(result.suggested_expert))}")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Check whether an operation would be allowed."""
    engine = gate.PermissionGate(RuleStore().load_permissions())
    result = engine.check_permission(Operation(args.category, args.detail, args.tool))

    print(f"{result.status} ({result.risk_level})")
    for pattern in result.matched_patterns:
        print(f"  {pattern.id}: {pattern.name} [{pattern.risk_level}]")
    if result.reason:
        print(f"  {result.reason}")

    if result.status == "denied":
        return EXIT_DENIED
    if result.status == "pending":
        return EXIT_NEEDS_CONFIRMATION
    return 0


def _format_rule(rule: KeywordRule) -> str:
    state = "" if rule.enabled else " (disabled)"
    keywords = ", ".join(rule.keywords)
    return f"{rule.id} [{rule.priority}] {rule.name} -> {rule.target_expert}: {keywords}{state}"


def cmd_rules_list(args: argparse.Namespace) -> int:
    """List keyword rules."""
    user_rules, default_rules = detector.list_rules(
        RuleStore().load_keywords(), include_disabled=args.all
    )
    if user_rules:
        print("User rules:")
        for rule in user_rules:
            print(f"  {_format_rule(rule)}")
    print("Default rules:")
    for rule in default_rules:
        print(f"  {_format_rule(rule)}")
    return 0


def cmd_rules_add(args: argparse.Namespace) -> int:
    """Add a keyword rule."""
    store = RuleStore()
    config, rule = detector.create_rule(
        store.load_keywords(),
        name=args.name,
        keywords=args.keyword,
        target_expert=args.expert,
        match_type=args.match_type,
        case_sensitive=args.case_sensitive,
        priority=args.priority,
        description=args.description or "",
    )
    store.save("keyword", config)
    print(f"Added rule '{rule.id}' to {store.path('keyword')}", file=sys.stderr)
    return 0


def cmd_rules_remove(args: argparse.Namespace) -> int:
    """Remove a keyword rule; built-in rules are disabled."""
    store = RuleStore()
    store.save("keyword", detector.remove_rule(store.load_keywords(), args.id))
    print(f"Removed rule '{args.id}'", file=sys.stderr)
    return 0


def cmd_rules_toggle(args: argparse.Namespace) -> int:
    """Enable or disable a keyword rule."""
    store = RuleStore()
    store.save("keyword", detector.toggle_rule(store.load_keywords(), args.id, args.enabled))
    print(f"Rule '{args.id}' {'enabled' if args.enabled else 'disabled'}", file=sys.stderr)
    return 0


def cmd_patterns_list(args: argparse.Namespace) -> int:
    """List risk patterns."""
    config = RuleStore().load_permissions()
    for pattern in config.patterns:
        if not (args.all or pattern.enabled):
            continue
        state = "" if pattern.enabled else " (disabled)"
        origin = "default" if pattern.builtin else "user"
        print(
            f"{pattern.id} [{pattern.risk_level}] {pattern.name} "
            f"({pattern.category}, {origin}){state}"
        )
    return 0


def cmd_patterns_toggle(args: argparse.Namespace) -> int:
    """Enable or disable a risk pattern."""
    store = RuleStore()
    store.save("permission", gate.toggle_pattern(store.load_permissions(), args.id, args.enabled))
    print(f"Pattern '{args.id}' {'enabled' if args.enabled else 'disabled'}", file=sys.stderr)
    return 0


def _run_validation(path: Path, kind: Kind) -> int:
    """Run validation on a rule table file, print errors, return exit code."""
    errors = validate_file(path, kind)
    if errors:
        print(f"Validation errors in {path}:", file=sys.stderr)
        for err in errors:
            print(f"  {err}", file=sys.stderr)
        return 1
    print(f"{path}: OK")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate rule table files."""
    store = RuleStore()
    kinds = [args.kind] if args.kind else list(KINDS)
    status = 0
    for kind in kinds:
        status |= _run_validation(store.path(kind), kind)
    return status


def cmd_edit(args: argparse.Namespace) -> int:
    """Open a rule table file in editor."""
    store = RuleStore()
    path = store.path(args.kind)
    editor = os.environ.get("EDITOR", "vi")

    # Seed the file with the current (default) settings
    if not path.exists():
        store.save(args.kind, store.load(args.kind))

    result = subprocess.call([editor, str(path)])
    if result != 0:
        return result

    return _run_validation(path, args.kind)


def _is_router_entry(entry: Any) -> bool:
    hooks = entry.get("hooks") if isinstance(entry, dict) else None
    return isinstance(hooks, list) and any(
        isinstance(h, dict) and h.get("command") == HOOK_COMMAND for h in hooks
    )


def _merge_hook_entries(existing: Any, entries: list[dict[str, Any]]) -> list[Any]:
    """Replace earlier router entries for an event; keep everyone else's."""
    kept = [e for e in existing if not _is_router_entry(e)] if isinstance(existing, list) else []
    return [*kept, *entries]


def cmd_claude_setup(args: argparse.Namespace) -> int:
    """Register the router hooks in Claude Code settings.json."""
    if args.glob:
        settings_path = GLOBAL_SETTINGS_DIR / "settings.json"
    else:
        settings_path = Path.cwd() / ".claude" / "settings.json"

    settings: dict[str, Any] = {}
    if settings_path.exists():
        try:
            with settings_path.open() as f:
                settings = json.load(f)
        except json.JSONDecodeError as e:
            print(f"Error: {settings_path} is not valid JSON: {e}", file=sys.stderr)
            return 1
        if not isinstance(settings, dict):
            print(f"Error: {settings_path} must hold a JSON object", file=sys.stderr)
            return 1

    router_hooks = {
        "PreToolUse": [
            {
                "matcher": "Bash|Write|Edit|MultiEdit|NotebookEdit|Read|WebFetch|WebSearch",
                "hooks": [{"type": "command", "command": HOOK_COMMAND}],
            }
        ],
        "UserPromptSubmit": [{"hooks": [{"type": "command", "command": HOOK_COMMAND}]}],
    }

    hooks = settings.get("hooks")
    if not isinstance(hooks, dict):
        hooks = settings["hooks"] = {}
    for event, entries in router_hooks.items():
        hooks[event] = _merge_hook_entries(hooks.get(event), entries)

    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with settings_path.open("w") as f:
        json.dump(settings, f, indent=2)

    print(f"Updated {settings_path}", file=sys.stderr)
    return 0


def _add_toggle_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("id", help="Identifier")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--on", dest="enabled", action="store_true", help="Enable")
    group.add_argument("--off", dest="enabled", action="store_false", help="Disable")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm-router", description="Expert routing and permission gating"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # hook subcommand
    subparsers.add_parser("hook", help="Run as Claude Code hook (reads JSON from stdin)")

    # detect subcommand
    detect_parser = subparsers.add_parser("detect", help="Suggest an expert for text")
    detect_parser.add_argument("text", help="Text to route")
    detect_parser.add_argument("--json", action="store_true", help="Machine-readable output")

    # check subcommand
    check_parser = subparsers.add_parser("check", help="Check an operation against risk rules")
    check_parser.add_argument(
        "--category", required=True, choices=sorted(OPERATION_CATEGORIES), help="Operation category"
    )
    check_parser.add_argument("detail", help="Command, path or other operation detail")
    check_parser.add_argument("--tool", help="Tool name, for tool-pattern matching")

    # rules subcommand group
    rules_parser = subparsers.add_parser("rules", help="Manage keyword rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command", required=True)

    rules_list = rules_sub.add_parser("list", help="List keyword rules")
    rules_list.add_argument("--all", action="store_true", help="Include disabled rules")

    rules_add = rules_sub.add_parser("add", help="Add a keyword rule")
    rules_add.add_argument("--name", required=True, help="Rule name")
    rules_add.add_argument(
        "--keyword", required=True, action="append", help="Keyword (repeatable)"
    )
    rules_add.add_argument("--expert", required=True, choices=sorted(EXPERT_IDS), help="Target")
    rules_add.add_argument("--priority", type=int, default=50, help="Priority (default 50)")
    rules_add.add_argument(
        "--match-type", default="contains", choices=sorted(MATCH_TYPES), help="Match type"
    )
    rules_add.add_argument("--case-sensitive", action="store_true", help="Case-sensitive match")
    rules_add.add_argument("--description", help="Rule description")

    rules_remove = rules_sub.add_parser("remove", help="Remove a keyword rule")
    rules_remove.add_argument("id", help="Rule ID")

    _add_toggle_arguments(rules_sub.add_parser("toggle", help="Enable or disable a rule"))

    # patterns subcommand group
    patterns_parser = subparsers.add_parser("patterns", help="Manage risk patterns")
    patterns_sub = patterns_parser.add_subparsers(dest="patterns_command", required=True)

    patterns_list = patterns_sub.add_parser("list", help="List risk patterns")
    patterns_list.add_argument("--all", action="store_true", help="Include disabled patterns")

    _add_toggle_arguments(patterns_sub.add_parser("toggle", help="Enable or disable a pattern"))

    # validate subcommand
    validate_parser = subparsers.add_parser("validate", help="Validate rule table files")
    validate_parser.add_argument("--kind", choices=KINDS, help="Only validate one table")

    # edit subcommand
    edit_parser = subparsers.add_parser("edit", help="Open a rule table in $EDITOR")
    edit_parser.add_argument("--kind", choices=KINDS, default="keyword", help="Table to edit")

    # claude-setup subcommand
    setup_parser = subparsers.add_parser("claude-setup", help="Configure Claude Code hooks")
    setup_parser.add_argument(
        "--global", dest="glob", action="store_true", help="Configure global settings"
    )
    return parser


COMMANDS = {
    "hook": cmd_hook,
    "detect": cmd_detect,
    "check": cmd_check,
    "validate": cmd_validate,
    "edit": cmd_edit,
    "claude-setup": cmd_claude_setup,
    ("rules", "list"): cmd_rules_list,
    ("rules", "add"): cmd_rules_add,
    ("rules", "remove"): cmd_rules_remove,
    ("rules", "toggle"): cmd_rules_toggle,
    ("patterns", "list"): cmd_patterns_list,
    ("patterns", "toggle"): cmd_patterns_toggle,
}


def main() -> int | NoReturn:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()
    _configure_logging(args.verbose)

    key: str | tuple[str, str] = args.command
    if args.command == "rules":
        key = ("rules", args.rules_command)
    elif args.command == "patterns":
        key = ("patterns", args.patterns_command)

    handler = COMMANDS.get(key)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except RouterError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
