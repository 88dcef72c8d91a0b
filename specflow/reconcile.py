"""Resolve cache, artifacts, git and the roadmap into one next action.

``Reconciler.decide`` is a pure function of four inputs: the cached snapshot,
the artifact-derived status, the git facts and the roadmap status. Rules are
evaluated in order and the first match wins; branch problems come before
status mismatches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .config import STATE_SCHEMA_VERSION, RegistryConfig
from .models import OrchestrationSnapshot, PhaseStatus, step_index
from .specflow_logging import log_operation, observability_hooks
from .state import StateStore, set_value
from .status import DerivedStatus, GitFacts, StatusDeriver

logger = logging.getLogger("specflow.reconcile")

TRUST_FILES = "trust-files"
TRUST_STATE = "trust-state"
TRUST_MODES = (TRUST_FILES, TRUST_STATE)
FIXABLE_KINDS = ("tasks", "branch", "step")

# Cached phase status -> comparable category
_CACHE_CATEGORY = {
    "in_progress": "in_progress",
    "awaiting_user": "awaiting_user",
    "awaiting_user_gate": "awaiting_user",
    "complete": "complete",
    "completed": "complete",
}


def _statuses_agree(cached: str, document: PhaseStatus) -> bool:
    """InProgress matches InProgress or AwaitingUser; Complete matches Complete."""
    category = _CACHE_CATEGORY.get(cached)
    if category is None:
        return True
    if category == "in_progress":
        return document in (PhaseStatus.IN_PROGRESS, PhaseStatus.AWAITING_USER)
    if category == "awaiting_user":
        return document == PhaseStatus.AWAITING_USER
    return document == PhaseStatus.COMPLETE


@dataclass(slots=True)
class Decision:
    next_action: str
    ready: bool
    reason: str
    step: Optional[str] = None
    step_index: int = -1
    tasks_completed: int = 0
    tasks_total: int = 0
    cache_stale: bool = False
    post_merge: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "next_action": self.next_action,
            "ready": self.ready,
            "reason": self.reason,
            "step": {"current": self.step, "index": self.step_index},
            "tasks": {"completed": self.tasks_completed, "total": self.tasks_total},
            "cache_stale": self.cache_stale,
            "post_merge": self.post_merge,
        }


@dataclass(slots=True)
class Difference:
    """One disagreement between the cache and ground truth."""

    kind: str
    state_value: str
    file_value: str
    description: str
    fixable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind,
            "state": self.state_value,
            "files": self.file_value,
            "description": self.description,
            "fixable": self.fixable,
        }


@dataclass(slots=True)
class ReconcileReport:
    differences: List[Difference] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    mode: Optional[str] = None
    dry_run: bool = False

    @property
    def exit_code(self) -> int:
        """2 when differences exist and no resolution mode was chosen."""
        return 2 if self.differences and self.mode is None else 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "in_sync": not self.differences,
            "differences": [difference.to_dict() for difference in self.differences],
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "mode": self.mode,
            "dry_run": self.dry_run,
            "exit_code": self.exit_code,
        }


class Reconciler:
    """Decision procedure plus the compare/apply pass."""

    def __init__(self, config: RegistryConfig, deriver: Optional[StatusDeriver] = None,
                 state: Optional[StateStore] = None):
        self.config = config
        self.deriver = deriver or StatusDeriver(config)
        self.state = state or StateStore(config)

    # ------------------------------------------------------------------
    # Decision procedure
    # ------------------------------------------------------------------

    @staticmethod
    def decide(
        snapshot: OrchestrationSnapshot,
        derived: DerivedStatus,
        git: GitFacts,
        document_status: Optional[PhaseStatus],
    ) -> Decision:
        step = snapshot.step_current
        index = snapshot.step_index if snapshot.has_step else -1
        completed, total = snapshot.tasks_completed, snapshot.tasks_total
        stale = False

        # Files ahead of the cache: the cache is stale, not wrong.
        if derived.index > index:
            step, index = derived.step, derived.index
            completed, total = derived.tasks.checked, derived.tasks.total
            stale = True

        def decision(action: str, ready: bool, reason: str, post_merge: bool = False) -> Decision:
            return Decision(action, ready, reason, step, index, completed, total, stale, post_merge)

        expected = snapshot.branch
        if git.is_repo and expected and git.branch != expected and git.branch_exists and not git.merged:
            return decision(
                "fix_branch", False,
                f"On branch '{git.branch}' but the phase branch '{expected}' still exists",
            )

        if git.is_repo and expected and not git.branch_exists and (
            git.merged or document_status == PhaseStatus.COMPLETE
        ):
            if document_status == PhaseStatus.AWAITING_USER:
                return decision("verify_user_gate", True, "Phase merged; user gate pending", True)
            if document_status == PhaseStatus.COMPLETE:
                return decision("start_next_phase", True, "Phase merged and marked complete", True)
            return decision("archive_phase", False, "Phase merged but the roadmap is not updated", True)

        if snapshot.has_phase and document_status is not None and not _statuses_agree(
            snapshot.phase_status, document_status
        ):
            reason = (
                f"Roadmap says {document_status.value}, cache says {snapshot.phase_status}"
            )
            if document_status == PhaseStatus.COMPLETE:
                return decision("archive_phase", False, reason)
            if document_status == PhaseStatus.AWAITING_USER:
                return decision("verify_user_gate", False, reason)
            return decision("sync_roadmap", False, reason)

        if not snapshot.has_phase:
            return decision("start_phase", True, "No phase is active")
        if not step:
            return decision("start_specify", True, "Phase has no workflow step yet")
        return decision(f"continue_{step}", True, f"Continue the {step} step")

    # ------------------------------------------------------------------
    # Gathering facts
    # ------------------------------------------------------------------

    def gather(self, snapshot: OrchestrationSnapshot) -> Dict[str, Any]:
        feature_dir = self.deriver.find_feature_dir(snapshot.phase_number, snapshot.branch)
        derived = self.deriver.derive(feature_dir)
        expected = self.deriver.expected_branch(snapshot.phase_number, snapshot.phase_name, snapshot.branch)
        git = self.deriver.git_facts(expected, snapshot.phase_number)
        return {"derived": derived, "git": git}

    def health(self) -> Dict[str, Any]:
        """State file present and parseable with the current schema; roadmap present."""
        issues: List[str] = []
        data = None
        if not self.state.exists():
            issues.append(f"State file missing: {self.config.state_path}")
        else:
            data = self.state.load_optional()
            if data is None:
                issues.append(f"State file is not valid JSON: {self.config.state_path}")
            elif str(data.get("schema_version")) != STATE_SCHEMA_VERSION:
                issues.append(
                    f"State schema version {data.get('schema_version')!r}, expected {STATE_SCHEMA_VERSION}"
                )
        if not self.config.roadmap_path.exists():
            issues.append(f"Roadmap missing: {self.config.roadmap_path}")
        return {"ok": not issues, "issues": issues}

    # ------------------------------------------------------------------
    # Compare / apply
    # ------------------------------------------------------------------

    def compare(
        self,
        snapshot: OrchestrationSnapshot,
        derived: DerivedStatus,
        git: GitFacts,
        document_status: Optional[PhaseStatus],
    ) -> List[Difference]:
        differences: List[Difference] = []
        if not snapshot.has_phase:
            return differences

        if derived.artifacts.tasks and (
            derived.tasks.checked != snapshot.tasks_completed or derived.tasks.total != snapshot.tasks_total
        ):
            differences.append(Difference(
                "tasks",
                f"{snapshot.tasks_completed}/{snapshot.tasks_total}",
                f"{derived.tasks.checked}/{derived.tasks.total}",
                "Task completion mismatch",
                fixable=True,
            ))

        if git.is_repo and snapshot.branch and git.branch and snapshot.branch != git.branch:
            differences.append(Difference(
                "branch", snapshot.branch, git.branch, "Git branch mismatch", fixable=True
            ))

        cached_index = snapshot.step_index if snapshot.has_step else -1
        if derived.index > cached_index:
            differences.append(Difference(
                "step",
                f"{snapshot.step_current or 'none'}:{cached_index}",
                f"{derived.step}:{derived.index}",
                "Artifacts are ahead of the cached step",
                fixable=True,
            ))

        if snapshot.has_step and snapshot.step_index > step_index("specify") and not derived.artifacts.spec:
            differences.append(Difference(
                "specify", "completed", "file missing", "Spec should exist but file missing"
            ))

        if document_status is not None and not _statuses_agree(snapshot.phase_status, document_status):
            differences.append(Difference(
                "roadmap", snapshot.phase_status, document_status.value, "Roadmap phase status mismatch"
            ))
        return differences

    def apply(
        self,
        differences: Iterable[Difference],
        mode: Optional[str] = None,
        only: Optional[Iterable[str]] = None,
        dry_run: bool = False,
    ) -> ReconcileReport:
        """Resolve differences. Only ``trust-files`` writes; unknown kinds are reported."""
        if mode is not None and mode not in TRUST_MODES:
            raise ValueError(f"mode must be one of {', '.join(TRUST_MODES)}")
        selected = set(only) if only else None
        if selected is not None:
            unknown = selected - set(FIXABLE_KINDS)
            if unknown:
                raise ValueError(f"Unknown difference kinds: {', '.join(sorted(unknown))}")

        report = ReconcileReport(list(differences), mode=mode, dry_run=dry_run)
        if mode != TRUST_FILES or not report.differences:
            return report

        data = self.state.load()
        for difference in report.differences:
            if not difference.fixable:
                report.skipped.append(f"Cannot auto-fix: {difference.description}")
                logger.warning(f"Cannot auto-fix: {difference.description}")
                continue
            if selected is not None and difference.kind not in selected:
                report.skipped.append(f"Skipped {difference.kind} (not selected)")
                continue
            verb = "Would update" if dry_run else "Updated"
            if difference.kind == "tasks":
                completed, total = (int(part) for part in difference.file_value.split("/"))
                set_value(data, "orchestration.progress.tasks_completed", completed)
                set_value(data, "orchestration.progress.tasks_total", total)
            elif difference.kind == "branch":
                set_value(data, "orchestration.phase.branch", difference.file_value)
            elif difference.kind == "step":
                name, index = difference.file_value.rsplit(":", 1)
                set_value(data, "orchestration.step.current", name)
                set_value(data, "orchestration.step.index", int(index))
            report.applied.append(
                f"{verb} {difference.kind}: {difference.state_value} -> {difference.file_value}"
            )

        if report.applied and not dry_run:
            with log_operation("reconcile_state", mode=mode, fixes=len(report.applied)):
                self.state.save(data)
            observability_hooks.log_registry_event("state_reconciled", fixes=report.applied)
        return report
