"""Command-line front end: ``specflow roadmap|backlog|status|reconcile|state``.

Exit codes: 0 success, 1 hard error, 2 differences found but nothing applied.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import PhaseStatus
from .reconcile import FIXABLE_KINDS, TRUST_FILES, TRUST_STATE
from .specflow_logging import setup_logging
from .workflow import RegistryWorkflow

Handler = Callable[[RegistryWorkflow, argparse.Namespace], Dict[str, Any]]


def _glyph(value: Optional[str]) -> str:
    try:
        return PhaseStatus(value).glyph
    except ValueError:
        return "?"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="specflow", description="Phase registry and reconciliation")
    parser.add_argument("--root", help="Project root (default: SPECFLOW_PROJECT_ROOT or upward search)")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--log-file", type=Path, help="Also write JSON logs to this file")
    commands = parser.add_subparsers(dest="command", required=True)

    roadmap = commands.add_parser("roadmap", help="Read and edit the phase table")
    roadmap_commands = roadmap.add_subparsers(dest="action", required=True)

    roadmap_commands.add_parser("status", help="Progress summary")
    roadmap_commands.add_parser("validate", help="Check the roadmap without changing it")
    roadmap_commands.add_parser("next", help="First phase not yet started")
    roadmap_commands.add_parser("current", help="Phase currently in progress")

    update = roadmap_commands.add_parser("update", help="Set a phase's status")
    update.add_argument("phase")
    update.add_argument("status", help="not_started, in_progress, awaiting_user, complete (or done, wip, ...)")

    insert = roadmap_commands.add_parser("insert", help="Insert a phase after another")
    insert.add_argument("--after", required=True)
    insert.add_argument("name")
    insert.add_argument("--gate", default="")
    insert.add_argument("--detail", choices=["auto", "inline", "file", "none"], default="auto")

    defer = roadmap_commands.add_parser("defer", help="Move a phase to the backlog")
    defer.add_argument("phase")
    defer.add_argument("--force", action="store_true", help="Defer even if the phase is in progress")
    defer.add_argument("--reason", default="")

    restore = roadmap_commands.add_parser("restore", help="Bring a deferred phase back")
    restore.add_argument("phase")
    placement = restore.add_mutually_exclusive_group()
    placement.add_argument("--after")
    placement.add_argument("--as", dest="as_number")

    renumber = roadmap_commands.add_parser("renumber", help="Reassign numbers in table order")
    renumber.add_argument("--start", type=int, default=10)
    renumber.add_argument("--step", type=int, default=10)
    renumber.add_argument("--dry-run", action="store_true")

    migrate = roadmap_commands.add_parser("migrate", help="Convert 3-digit numbers to 4 digits")
    migrate.add_argument("--dry-run", action="store_true")

    archive = roadmap_commands.add_parser("archive", help="Move a phase's detail to the history file")
    archive.add_argument("phase")

    show = roadmap_commands.add_parser("show", help="Print a phase's detail")
    show.add_argument("phase")

    backlog = commands.add_parser("backlog", help="Deferred phases and ideas")
    backlog_commands = backlog.add_subparsers(dest="action", required=True)
    add = backlog_commands.add_parser("add", help="Add an idea")
    add.add_argument("text")
    add.add_argument("--priority", choices=["P1", "P2", "P3"], default="P2")
    add.add_argument("--notes", default="")
    backlog_commands.add_parser("list", help="List deferred phases and ideas")
    clear = backlog_commands.add_parser("clear", help="Remove all ideas")
    clear.add_argument("--include-deferred", action="store_true", help="Also drop deferred phases")

    commands.add_parser("status", help="Health checks and the next action")

    reconcile = commands.add_parser("reconcile", help="Compare the cache with files and git")
    trust = reconcile.add_mutually_exclusive_group()
    trust.add_argument("--trust-files", dest="mode", action="store_const", const=TRUST_FILES)
    trust.add_argument("--trust-state", dest="mode", action="store_const", const=TRUST_STATE)
    reconcile.add_argument("--only", action="append", choices=list(FIXABLE_KINDS),
                           help="Restrict fixes to these kinds (repeatable)")
    reconcile.add_argument("--dry-run", action="store_true")

    state = commands.add_parser("state", help="Orchestration state file")
    state_commands = state.add_subparsers(dest="action", required=True)
    init = state_commands.add_parser("init", help="Create the state file")
    init.add_argument("--project-name")

    return parser


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------

HANDLERS: Dict[str, Handler] = {
    "roadmap status": lambda wf, a: wf.roadmap_status(),
    "roadmap validate": lambda wf, a: wf.validate_roadmap(),
    "roadmap next": lambda wf, a: wf.next_phase(),
    "roadmap current": lambda wf, a: wf.current_phase(),
    "roadmap update": lambda wf, a: wf.update_status(a.phase, a.status),
    "roadmap insert": lambda wf, a: wf.insert_phase(a.after, a.name, a.gate, a.detail),
    "roadmap defer": lambda wf, a: wf.defer_phase(a.phase, a.force, a.reason),
    "roadmap restore": lambda wf, a: wf.restore_phase(a.phase, a.after, a.as_number),
    "roadmap renumber": lambda wf, a: wf.renumber_phases(a.start, a.step, a.dry_run),
    "roadmap migrate": lambda wf, a: wf.migrate_roadmap(a.dry_run),
    "roadmap archive": lambda wf, a: wf.archive_phase(a.phase),
    "roadmap show": lambda wf, a: wf.show_phase(a.phase),
    "backlog add": lambda wf, a: wf.add_backlog_item(a.text, a.priority, a.notes),
    "backlog list": lambda wf, a: wf.list_backlog(),
    "backlog clear": lambda wf, a: wf.clear_backlog(a.include_deferred),
    "status": lambda wf, a: wf.project_status(),
    "reconcile": lambda wf, a: wf.reconcile(a.mode, a.only, a.dry_run),
    "state init": lambda wf, a: wf.init_state(a.project_name),
}


def _command_key(args: argparse.Namespace) -> str:
    action = getattr(args, "action", None)
    return f"{args.command} {action}" if action else args.command


# ----------------------------------------------------------------------
# Text output
# ----------------------------------------------------------------------

def _render_summary(result: Dict[str, Any]) -> List[str]:
    lines = [f"Roadmap: {result['total']} phases, {result['percentage']}% complete"]
    for phase in result["phases"]:
        lines.append(f"  {phase['number']}  {_glyph(phase['status'])}  {phase['name']}")
    backlog = result["backlog"]
    if backlog["deferred"] or backlog["notes"]:
        lines.append(f"Backlog: {backlog['deferred']} deferred, {backlog['notes']} ideas")
    lines.append(result["message"])
    return lines


def _render_validation(result: Dict[str, Any]) -> List[str]:
    lines = [result["message"]]
    lines.extend(f"  error: {error}" for error in result["errors"])
    lines.extend(f"  warning: {warning}" for warning in result["warnings"])
    return lines


def _render_backlog(result: Dict[str, Any]) -> List[str]:
    lines = [result["message"]]
    for entry in result["deferred"]:
        reason = f" - {entry['reason']}" if entry["reason"] else ""
        lines.append(f"  {entry['original_number']}  {entry['name']} (deferred {entry['deferred_date']}){reason}")
    for note in result["notes"]:
        lines.append(f"  [{note['priority']}] {note['text']}")
    return lines


def _render_status(result: Dict[str, Any]) -> List[str]:
    cache = result["cache"]
    derived = result["derived"]
    lines = []
    if cache["phase"]["number"]:
        lines.append(f"Phase: {cache['phase']['number']} {cache['phase']['name'] or ''}".rstrip())
        lines.append(f"Cached step: {cache['step']['current'] or 'none'} ({cache['step']['index']})")
    lines.append(f"Derived step: {derived['step'] or 'none'} ({derived['index']})")
    for issue in result["health"]["issues"]:
        lines.append(f"  health: {issue}")
    lines.append(f"Next action: {result['next_action']} (ready: {'yes' if result['ready'] else 'no'})")
    lines.append(result["decision"]["reason"])
    return lines


def _render_reconcile(result: Dict[str, Any]) -> List[str]:
    lines = []
    for difference in result["differences"]:
        lines.append(f"  {difference['kind']}: state={difference['state']} files={difference['files']}")
    lines.extend(f"  {line}" for line in result["applied"] + result["skipped"])
    lines.append(result["message"])
    return lines


RENDERERS: Dict[str, Callable[[Dict[str, Any]], List[str]]] = {
    "roadmap status": _render_summary,
    "roadmap validate": _render_validation,
    "roadmap show": lambda result: [result["content"].rstrip("\n")],
    "backlog list": _render_backlog,
    "status": _render_status,
    "reconcile": _render_reconcile,
}


def _render_default(result: Dict[str, Any]) -> List[str]:
    lines = [result.get("message", "")]
    lines.extend(f"Warning: {warning}" for warning in result.get("warnings", []))
    return lines


def _print_error(result: Dict[str, Any]) -> None:
    print(f"Error: {result['error']}", file=sys.stderr)
    if result.get("suggestion"):
        print(f"Suggestion: {result['suggestion']}", file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)

    try:
        workflow = RegistryWorkflow(args.root)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    key = _command_key(args)
    result = HANDLERS[key](workflow, args)

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    elif "error" in result:
        _print_error(result)
    else:
        for line in RENDERERS.get(key, _render_default)(result):
            print(line)
    return int(result.get("exit_code", 0))


if __name__ == "__main__":
    sys.exit(main())
