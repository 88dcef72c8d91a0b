"""Workflow façade for the SpecFlow registry.

Both the MCP server and the command line call ``RegistryWorkflow``. Every
method returns a plain dictionary carrying a ``message`` and a
``next_suggested_step``; failures come back as dictionaries with ``error``,
``code``, ``suggestion`` and ``exit_code`` instead of raising.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

from .config import RegistryConfig
from .errors import RegistryError
from .models import PhaseStatus
from .reconcile import Reconciler
from .registry import PhaseRegistry
from .specflow_logging import log_error_with_context, log_performance, performance_monitor
from .status import GitProbe, StatusDeriver

logger = logging.getLogger("specflow.workflow")

PhaseArg = Union[str, int]


class RegistryWorkflow:
    """Entry points for every registry and reconciliation command."""

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        *,
        config: Optional[RegistryConfig] = None,
        clock: Callable[[], date] = date.today,
        probe: Optional[GitProbe] = None,
    ):
        self.config = config or RegistryConfig.from_env(str(root) if root else None)
        self.registry = PhaseRegistry(self.config, clock=clock)
        self.deriver = StatusDeriver(self.config, probe)
        self.reconciler = Reconciler(self.config, self.deriver, self.registry.state)

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------

    def _failure(self, operation: str, error: Exception, next_step: str, **context) -> Dict[str, Any]:
        log_error_with_context(error, {"operation": operation, **context})
        if isinstance(error, RegistryError):
            payload = error.to_dict()
            exit_code = error.exit_code
        else:
            payload = {"error": str(error), "code": "INVALID_ARGUMENT", "phase": None, "suggestion": None}
            exit_code = 1
        payload.update({
            "message": f"Error: {error}",
            "next_suggested_step": next_step,
            "exit_code": exit_code,
        })
        return payload

    def _guard(self, operation: str, next_step: str, action: Callable[[], Dict[str, Any]], **context) -> Dict[str, Any]:
        try:
            result = action()
        except (RegistryError, ValueError) as e:
            return self._failure(operation, e, next_step, **context)
        result.setdefault("exit_code", 0)
        return result

    # ------------------------------------------------------------------
    # Roadmap queries
    # ------------------------------------------------------------------

    @log_performance("roadmap_status")
    def roadmap_status(self) -> Dict[str, Any]:
        """Progress counts, current and next phase."""

        def action() -> Dict[str, Any]:
            summary = self.registry.summary()
            current = summary["current"]
            next_phase = summary["next"]
            if current:
                message = f"Phase {current['number']} ({current['name']}) is {current['status']}"
                next_step = "status"
            elif next_phase:
                message = f"Next phase: {next_phase['number']} ({next_phase['name']})"
                next_step = "update_status"
            else:
                message = "All phases complete"
                next_step = "archive_phase"
            summary.update({"message": message, "next_suggested_step": next_step})
            return summary

        return self._guard("roadmap_status", "validate_roadmap", action)

    def validate_roadmap(self) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.validate()
            if result["valid"]:
                message = f"Roadmap valid: {result['phase_count']} phases, {len(result['warnings'])} warnings"
            else:
                message = f"Roadmap invalid: {'; '.join(result['errors'])}"
            result.update({
                "message": message,
                "next_suggested_step": "roadmap_status" if result["valid"] else "validate_roadmap",
                "exit_code": 0 if result["valid"] else 1,
            })
            return result

        return self._guard("validate_roadmap", "validate_roadmap", action)

    def show_phase(self, phase: PhaseArg) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.show(phase)
            result.update({
                "message": f"Phase {result['phase']} detail from {result['location']['kind']}",
                "next_suggested_step": "roadmap_status",
            })
            return result

        return self._guard("show_phase", "roadmap_status", action, phase=str(phase))

    def next_phase(self) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            record = self.registry.next_phase()
            if record is None:
                return {"phase": None, "message": "No phase is waiting to start", "next_suggested_step": "roadmap_status"}
            return {
                "phase": record.to_dict(),
                "message": f"Next phase: {record.label} ({record.name})",
                "next_suggested_step": "update_status",
            }

        return self._guard("next_phase", "roadmap_status", action)

    def current_phase(self) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            record = self.registry.current_phase()
            if record is None:
                return {"phase": None, "message": "No phase in progress", "next_suggested_step": "next_phase"}
            return {
                "phase": record.to_dict(),
                "message": f"Current phase: {record.label} ({record.name}) - {record.status.label}",
                "next_suggested_step": "status",
            }

        return self._guard("current_phase", "roadmap_status", action)

    # ------------------------------------------------------------------
    # Roadmap mutations
    # ------------------------------------------------------------------

    @log_performance("workflow_insert_phase")
    def insert_phase(self, after: PhaseArg, name: str, gate: str = "", detail: str = "auto") -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.insert(after, name, gate, detail).to_dict()
            message = f"Inserted phase {result['phase']} ({name}) after {result['after']}"
            if result["rolled_over"]:
                message += f". Warning: {result['warnings'][0]}"
            result.update({"message": message, "next_suggested_step": "show_phase"})
            return result

        return self._guard("insert_phase", "roadmap_status", action, after=str(after), name=name)

    @log_performance("workflow_defer_phase")
    def defer_phase(self, phase: PhaseArg, force: bool = False, reason: str = "") -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.defer(phase, force=force, reason=reason).to_dict()
            result.update({
                "message": f"Phase {result['phase']} moved to the backlog",
                "next_suggested_step": "list_backlog",
            })
            return result

        return self._guard("defer_phase", "roadmap_status", action, phase=str(phase), force=force)

    @log_performance("workflow_restore_phase")
    def restore_phase(
        self, phase: PhaseArg, after: Optional[PhaseArg] = None, as_number: Optional[PhaseArg] = None
    ) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.restore(phase, after=after, as_number=as_number).to_dict()
            message = f"Restored phase {result['original_number']} as {result['phase']}"
            if result["rolled_over"]:
                message += f". Warning: {result['warnings'][0]}"
            result.update({"message": message, "next_suggested_step": "roadmap_status"})
            return result

        return self._guard("restore_phase", "list_backlog", action, phase=str(phase))

    @log_performance("workflow_renumber_phases")
    def renumber_phases(self, start: int = 10, step: int = 10, dry_run: bool = False) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.renumber(start=start, step=step, dry_run=dry_run).to_dict()
            count = len(result["mapping"])
            if dry_run:
                message = f"Dry run: {count} phases would be renumbered"
                next_step = "renumber_phases"
            elif count:
                message = f"Renumbered {count} phases"
                next_step = "validate_roadmap"
            else:
                message = "Phase numbers already match; nothing to renumber"
                next_step = "roadmap_status"
            result.update({"message": message, "next_suggested_step": next_step})
            return result

        return self._guard("renumber_phases", "validate_roadmap", action, start=start, step=step)

    @log_performance("workflow_update_status")
    def update_status(self, phase: PhaseArg, status: Union[str, PhaseStatus]) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.update_status(phase, status).to_dict()
            if result["changed"]:
                message = f"Phase {result['phase']}: {result['previous']} -> {result['status']}"
            else:
                message = f"Phase {result['phase']} already {result['status']}"
            result.update({"message": message, "next_suggested_step": "status"})
            return result

        return self._guard("update_status", "roadmap_status", action, phase=str(phase), status=str(status))

    def archive_phase(self, phase: PhaseArg) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.archive(phase).to_dict()
            result.update({
                "message": f"Archived phase {result['phase']} to {self.config.history_path}",
                "next_suggested_step": "next_phase",
            })
            return result

        return self._guard("archive_phase", "show_phase", action, phase=str(phase))

    def migrate_roadmap(self, dry_run: bool = False) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.migrate(dry_run=dry_run).to_dict()
            count = len(result["mapping"])
            if dry_run:
                message = f"Dry run: {count} phase numbers would be migrated"
            elif count:
                message = f"Migrated {count} phase numbers to 4 digits"
            else:
                message = result.get("message", "Nothing to migrate")
            result.update({"message": message, "next_suggested_step": "validate_roadmap"})
            return result

        return self._guard("migrate_roadmap", "validate_roadmap", action)

    # ------------------------------------------------------------------
    # Backlog
    # ------------------------------------------------------------------

    def add_backlog_item(self, text: str, priority: str = "P2", notes: str = "") -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.add_note(text, priority, notes).to_dict()
            result.update({"message": f"Added backlog item ({priority.upper()})", "next_suggested_step": "list_backlog"})
            return result

        return self._guard("add_backlog_item", "list_backlog", action, priority=priority)

    def list_backlog(self) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.list_backlog()
            result.update({
                "message": f"{len(result['deferred'])} deferred phases, {len(result['notes'])} items",
                "next_suggested_step": "restore_phase" if result["deferred"] else "roadmap_status",
            })
            return result

        return self._guard("list_backlog", "roadmap_status", action)

    def clear_backlog(self, include_deferred: bool = False) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            result = self.registry.clear_backlog(include_deferred).to_dict()
            result.update({
                "message": f"Cleared {result['cleared_notes']} items and {result['cleared_deferred']} deferred phases",
                "next_suggested_step": "roadmap_status",
            })
            return result

        return self._guard("clear_backlog", "list_backlog", action, include_deferred=include_deferred)

    # ------------------------------------------------------------------
    # Status and reconciliation
    # ------------------------------------------------------------------

    def _document_status(self, phase_number: Optional[str]) -> Optional[PhaseStatus]:
        if not phase_number or not self.config.roadmap_path.exists():
            return None
        try:
            return self.registry.document_status(phase_number)
        except (RegistryError, ValueError) as e:
            logger.warning(f"Could not read roadmap status for phase {phase_number}: {e}")
            return None

    @log_performance("project_status")
    def project_status(self) -> Dict[str, Any]:
        """Health checks, then the reconciled next action."""

        def action() -> Dict[str, Any]:
            health = self.reconciler.health()
            snapshot = self.registry.state.snapshot()
            facts = self.reconciler.gather(snapshot)
            document_status = self._document_status(snapshot.phase_number)
            decision = self.reconciler.decide(snapshot, facts["derived"], facts["git"], document_status)

            result: Dict[str, Any] = {
                "health": health,
                "cache": snapshot.to_dict(),
                "derived": facts["derived"].to_dict(),
                "git": facts["git"].to_dict(),
                "roadmap": {"phase_status": document_status.value if document_status else None},
                "decision": decision.to_dict(),
                "performance": performance_monitor.summary(),
            }
            if not health["ok"]:
                result.update({
                    "next_action": "fix_health",
                    "ready": False,
                    "message": "Health check failed: " + "; ".join(health["issues"]),
                    "next_suggested_step": "fix_health",
                    "exit_code": 1,
                })
                return result

            message = f"Next action: {decision.next_action} ({decision.reason})"
            if decision.cache_stale:
                message += "; cached step is behind the files"
            result.update({
                "next_action": decision.next_action,
                "ready": decision.ready,
                "message": message,
                "next_suggested_step": "reconcile" if decision.cache_stale else decision.next_action,
            })
            return result

        return self._guard("project_status", "status", action)

    @log_performance("reconcile")
    def reconcile(
        self, mode: Optional[str] = None, only: Optional[Iterable[str]] = None, dry_run: bool = False
    ) -> Dict[str, Any]:
        """Compare cache and ground truth; optionally apply trusted file values."""

        def action() -> Dict[str, Any]:
            self.registry.state.load()
            snapshot = self.registry.state.snapshot()
            facts = self.reconciler.gather(snapshot)
            document_status = self._document_status(snapshot.phase_number)
            differences = self.reconciler.compare(snapshot, facts["derived"], facts["git"], document_status)
            report = self.reconciler.apply(differences, mode=mode, only=only, dry_run=dry_run)

            result = report.to_dict()
            if not report.differences:
                message = "No differences found - state and files are in sync"
                next_step = "status"
            elif mode is None:
                message = f"{len(report.differences)} differences found; no action taken"
                next_step = "reconcile"
            else:
                message = f"{len(report.applied)} fixes {'previewed' if dry_run else 'applied'}, {len(report.skipped)} skipped"
                next_step = "status"
            result.update({"message": message, "next_suggested_step": next_step})
            return result

        return self._guard("reconcile", "status", action, mode=mode)

    def init_state(self, project_name: Optional[str] = None) -> Dict[str, Any]:
        def action() -> Dict[str, Any]:
            store = self.registry.state
            if store.exists():
                return {
                    "state_path": str(store.path),
                    "created": False,
                    "message": f"State file already exists: {store.path}",
                    "next_suggested_step": "status",
                }
            store.init(project_name)
            return {
                "state_path": str(store.path),
                "created": True,
                "message": f"Created {store.path}",
                "next_suggested_step": "status",
            }

        return self._guard("init_state", "status", action)

