"""Ground-truth facts, computed without the orchestration cache.

Artifacts on disk decide the derived workflow step; git decides the branch
facts. Git is reached through ``GitProbe`` whose command runner can be
swapped out, so nothing here requires a repository.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import RegistryConfig
from .models import WORKFLOW_STEPS, format_phase, slugify
from .sections import lookup_candidates

logger = logging.getLogger("specflow.status")

_CHECKED = re.compile(r"^\s*[-*]\s+\[[xX]\]")
_UNCHECKED = re.compile(r"^\s*[-*]\s+\[ \]")
_SKIPPED = re.compile(r"^\s*[-*]\s+\[[~-]\]")

Runner = Callable[[Sequence[str]], Optional[str]]


@dataclass(slots=True)
class ChecklistCounts:
    checked: int = 0
    total: int = 0
    skipped: int = 0

    @property
    def all_checked(self) -> bool:
        return self.total > 0 and self.checked == self.total

    @property
    def percentage(self) -> int:
        return int(self.checked * 100 / self.total) if self.total else 0

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary representation."""
        return {
            "checked": self.checked,
            "total": self.total,
            "skipped": self.skipped,
            "percentage": self.percentage,
        }


def count_checkboxes(text: str) -> ChecklistCounts:
    """``- [x]`` counts as checked, ``- [ ]`` as open; ``[~]``/``[-]`` are skipped."""
    counts = ChecklistCounts()
    for line in text.splitlines():
        if _CHECKED.match(line):
            counts.checked += 1
            counts.total += 1
        elif _UNCHECKED.match(line):
            counts.total += 1
        elif _SKIPPED.match(line):
            counts.skipped += 1
    return counts


@dataclass(slots=True)
class ArtifactPresence:
    spec: bool = False
    plan: bool = False
    tasks: bool = False
    checklists: bool = False

    def to_dict(self) -> Dict[str, bool]:
        """Convert to dictionary representation."""
        return {"spec": self.spec, "plan": self.plan, "tasks": self.tasks, "checklists": self.checklists}


@dataclass(slots=True)
class DerivedStatus:
    """Highest workflow step provable from artifacts alone."""

    feature_dir: Optional[Path] = None
    artifacts: ArtifactPresence = field(default_factory=ArtifactPresence)
    tasks: ChecklistCounts = field(default_factory=ChecklistCounts)
    step: Optional[str] = None
    index: int = -1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "feature_dir": str(self.feature_dir) if self.feature_dir else None,
            "artifacts": self.artifacts.to_dict(),
            "tasks": self.tasks.to_dict(),
            "step": self.step,
            "index": self.index,
        }


@dataclass(slots=True)
class GitFacts:
    is_repo: bool = False
    branch: Optional[str] = None
    expected_branch: Optional[str] = None
    branch_exists: bool = False
    merged: bool = False
    uncommitted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "is_repo": self.is_repo,
            "branch": self.branch,
            "expected_branch": self.expected_branch,
            "branch_exists": self.branch_exists,
            "merged": self.merged,
            "uncommitted": self.uncommitted,
        }


def subprocess_runner(cwd: Path) -> Runner:
    """Run ``git <args>`` in ``cwd``; ``None`` on failure or when git is absent."""

    def run(args: Sequence[str]) -> Optional[str]:
        try:
            completed = subprocess.run(
                ["git", *args], cwd=cwd, capture_output=True, text=True, check=False, timeout=30
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug(f"git {' '.join(args)} failed: {exc}")
            return None
        if completed.returncode != 0:
            return None
        return completed.stdout.strip()

    return run


class GitProbe:
    """Read-only git queries."""

    def __init__(self, root: Path, runner: Optional[Runner] = None, history_depth: int = 20):
        self.root = root
        self.runner = runner or subprocess_runner(root)
        self.history_depth = history_depth

    def is_repo(self) -> bool:
        return self.runner(["rev-parse", "--is-inside-work-tree"]) == "true"

    def current_branch(self) -> Optional[str]:
        return self.runner(["rev-parse", "--abbrev-ref", "HEAD"]) or None

    def branch_exists(self, name: str) -> bool:
        """Local branch or ``origin/`` remote branch."""
        for ref in (f"refs/heads/{name}", f"refs/remotes/origin/{name}"):
            if self.runner(["rev-parse", "--verify", "--quiet", ref]) is not None:
                return True
        return False

    def recent_subjects(self) -> List[str]:
        output = self.runner(["log", f"-{self.history_depth}", "--format=%s"])
        return output.splitlines() if output else []

    def uncommitted(self) -> int:
        output = self.runner(["status", "--porcelain"])
        return len([line for line in output.splitlines() if line.strip()]) if output else 0

    def references_phase(self, label: str) -> bool:
        """Heuristic merge signal: a recent commit subject mentions the phase."""
        patterns = [
            re.compile(rf"(feat|fix|chore|docs)\({re.escape(label)}\)"),
            re.compile(rf"(?<!\d){re.escape(label)}(?!\d)"),
        ]
        for subject in self.recent_subjects():
            if any(pattern.search(subject) for pattern in patterns):
                return True
        return False


class StatusDeriver:
    """Compute artifact and git facts for the current phase."""

    def __init__(self, config: RegistryConfig, probe: Optional[GitProbe] = None):
        self.config = config
        self.probe = probe or GitProbe(config.root)

    def find_feature_dir(self, number: Optional[str], branch: Optional[str] = None) -> Optional[Path]:
        """``specs/<branch>`` when it exists, else the first ``specs/NNNN-*`` directory."""
        specs = self.config.specs_dir
        if not specs.is_dir():
            return None
        if branch and (specs / branch).is_dir():
            return specs / branch
        if not number:
            return None
        try:
            candidates = lookup_candidates(number)
        except ValueError:
            return None
        for candidate in candidates:
            matches = sorted(path for path in specs.glob(f"{format_phase(candidate)}-*") if path.is_dir())
            if matches:
                return matches[0]
        return None

    def derive(self, feature_dir: Optional[Path]) -> DerivedStatus:
        derived = DerivedStatus(feature_dir=feature_dir)
        if feature_dir is None or not feature_dir.is_dir():
            return derived

        artifacts = derived.artifacts
        artifacts.spec = (feature_dir / "spec.md").is_file()
        artifacts.plan = (feature_dir / "plan.md").is_file()
        tasks_path = feature_dir / "tasks.md"
        artifacts.tasks = tasks_path.is_file()
        checklists = feature_dir / "checklists"
        artifacts.checklists = checklists.is_dir() and any(checklists.iterdir())
        if artifacts.tasks:
            derived.tasks = count_checkboxes(tasks_path.read_text(encoding="utf-8"))

        proven = [artifacts.spec, artifacts.plan, artifacts.tasks, artifacts.checklists, derived.tasks.all_checked]
        for index, ok in enumerate(proven):
            if ok:
                derived.index = index
        if derived.index >= 0:
            derived.step = WORKFLOW_STEPS[derived.index]
        return derived

    def expected_branch(self, number: Optional[str], name: Optional[str], branch: Optional[str]) -> Optional[str]:
        if branch:
            return branch
        if number and name:
            return f"{number}-{slugify(name)}"
        return None

    def git_facts(self, expected_branch: Optional[str], phase_label: Optional[str]) -> GitFacts:
        facts = GitFacts(expected_branch=expected_branch)
        if not self.probe.is_repo():
            return facts
        facts.is_repo = True
        facts.branch = self.probe.current_branch()
        if expected_branch:
            facts.branch_exists = self.probe.branch_exists(expected_branch)
        if phase_label:
            facts.merged = self.probe.references_phase(phase_label)
        facts.uncommitted = self.probe.uncommitted()
        return facts
