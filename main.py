"""MCP server exposing the SpecFlow phase registry and reconciliation tools."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.resources import TextResource

from specflow import PhaseStatus, RegistryWorkflow

mcp = FastMCP("specflow")


def _workflow(root: Optional[str]) -> RegistryWorkflow:
    """Resolve the project root (argument, SPECFLOW_PROJECT_ROOT, upward search)."""
    return RegistryWorkflow(root)


def _workflow_optional(root: Optional[str]) -> Optional[RegistryWorkflow]:
    try:
        return _workflow(root)
    except ValueError:
        return None


def _with_tip(result: Dict[str, Any], tip: str) -> Dict[str, Any]:
    if "error" not in result:
        result["workflow_tip"] = tip
    return result


def _text_resource(text: str) -> TextResource:
    return TextResource(uri="specflow://roadmap", name="roadmap", text=text, mime_type="text/plain")


# ----------------------------------------------------------------------
# Roadmap queries
# ----------------------------------------------------------------------

@mcp.tool()
def roadmap_status(root: Optional[str] = None) -> Dict[str, Any]:
    """Summarize ROADMAP.md: phase counts, percentage complete, current and next phase."""

    return _workflow(root).roadmap_status()


@mcp.tool()
def validate_roadmap(root: Optional[str] = None) -> Dict[str, Any]:
    """Check the phase table for ordering, duplicates and missing detail without changing it."""

    return _workflow(root).validate_roadmap()


@mcp.tool()
def show_phase(phase: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return a phase's detail text from its inline section, companion file or the history archive."""

    return _workflow(root).show_phase(phase)


@mcp.tool()
def next_phase(root: Optional[str] = None) -> Dict[str, Any]:
    """First phase in table order that has not started."""

    return _workflow(root).next_phase()


@mcp.tool()
def current_phase(root: Optional[str] = None) -> Dict[str, Any]:
    """Phase currently in progress or awaiting user verification."""

    return _workflow(root).current_phase()


# ----------------------------------------------------------------------
# Roadmap mutations
# ----------------------------------------------------------------------

@mcp.tool()
def insert_phase(
    after: str,
    name: str,
    gate: str = "",
    detail: str = "auto",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Insert a new phase in the first free number after `after` (same decade, else the next decade).
    `detail` is one of auto, inline, file, none; auto uses companion files when the project has any."""

    result = _workflow(root).insert_phase(after, name, gate=gate, detail=detail)
    return _with_tip(result, "Next: fill in the phase goal with show_phase, then start it with update_phase_status")


@mcp.tool()
def defer_phase(phase: str, force: bool = False, reason: str = "", root: Optional[str] = None) -> Dict[str, Any]:
    """Move a phase and its detail to the backlog. In-progress phases require force=True."""

    return _workflow(root).defer_phase(phase, force=force, reason=reason)


@mcp.tool()
def restore_phase(
    phase: str,
    after: Optional[str] = None,
    as_number: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Bring a deferred phase back as not started: at `as_number`, after `after`, or at its original number."""

    return _workflow(root).restore_phase(phase, after=after, as_number=as_number)


@mcp.tool()
def renumber_phases(start: int = 10, step: int = 10, dry_run: bool = True, root: Optional[str] = None) -> Dict[str, Any]:
    """Reassign phase numbers start, start+step, ... in table order. Defaults to a dry run;
    the real run renames companion files and spec directories and backs up ROADMAP.md."""

    result = _workflow(root).renumber_phases(start=start, step=step, dry_run=dry_run)
    if dry_run:
        return _with_tip(result, "Review the mapping, then call renumber_phases with dry_run=False")
    return result


@mcp.tool()
def update_phase_status(phase: str, status: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Set a phase's status: not_started, in_progress, awaiting_user or complete."""

    return _workflow(root).update_status(phase, status)


@mcp.tool()
def archive_phase(phase: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a completed phase's detail into the history file; the table row stays."""

    return _workflow(root).archive_phase(phase)


@mcp.tool()
def migrate_roadmap(dry_run: bool = True, root: Optional[str] = None) -> Dict[str, Any]:
    """Convert a 3-digit roadmap to 4-digit phase numbers (n -> n*10)."""

    return _workflow(root).migrate_roadmap(dry_run=dry_run)


# ----------------------------------------------------------------------
# Backlog
# ----------------------------------------------------------------------

@mcp.tool()
def add_backlog_item(text: str, priority: str = "P2", notes: str = "", root: Optional[str] = None) -> Dict[str, Any]:
    """Record an idea in the backlog with priority P1, P2 or P3."""

    return _workflow(root).add_backlog_item(text, priority=priority, notes=notes)


@mcp.tool()
def list_backlog(root: Optional[str] = None) -> Dict[str, Any]:
    """List deferred phases and backlog ideas."""

    return _workflow(root).list_backlog()


@mcp.tool()
def clear_backlog(include_deferred: bool = False, root: Optional[str] = None) -> Dict[str, Any]:
    """Remove every backlog idea; deferred phases and their detail only with include_deferred=True."""

    return _workflow(root).clear_backlog(include_deferred=include_deferred)


# ----------------------------------------------------------------------
# Status and reconciliation
# ----------------------------------------------------------------------

@mcp.tool()
def project_status(root: Optional[str] = None) -> Dict[str, Any]:
    """Run health checks, derive the workflow step from artifacts and git, and recommend the next action."""

    result = _workflow(root).project_status()
    if result.get("decision", {}).get("cache_stale"):
        return _with_tip(result, "The state file is behind the artifacts: call reconcile_state with mode='trust-files'")
    return result


@mcp.tool()
def reconcile_state(
    mode: Optional[str] = None,
    only: Optional[List[str]] = None,
    dry_run: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Compare the orchestration state with files and git. Without `mode` only reports differences;
    mode='trust-files' updates tasks, branch and step in the state file (`only` restricts the kinds)."""

    return _workflow(root).reconcile(mode=mode, only=only, dry_run=dry_run)


@mcp.tool()
def init_state(project_name: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Create .specify/orchestration-state.json if it does not exist."""

    return _workflow(root).init_state(project_name)


@mcp.resource("specflow://roadmap")
def resource_roadmap():
    """Resource view of the phase table for discovery."""

    workflow = _workflow_optional(None)
    if not workflow:
        return _text_resource(
            "No project root detected. Launch tools with a 'root' argument or set SPECFLOW_PROJECT_ROOT."
        )

    summary = workflow.roadmap_status()
    if "error" in summary:
        return _text_resource(summary["message"])

    lines = [f"SpecFlow Roadmap ({summary['percentage']}% complete)"]
    for phase in summary["phases"]:
        lines.append(f"- {phase['number']} {PhaseStatus(phase['status']).glyph} {phase['name']}")
        if phase["gate"]:
            lines.append(f"  Gate: {phase['gate']}")
    return _text_resource("\n".join(lines))


if __name__ == "__main__":
    mcp.run()
