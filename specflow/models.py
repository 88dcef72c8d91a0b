"""Data models for the SpecFlow phase registry.

This module contains the core data structures used throughout the registry,
representing phase numbers, phase records, backlog entries, and the cached
orchestration snapshot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union


PHASE_MIN = 0
PHASE_MAX = 9999
PHASE_WIDTH = 4
LEGACY_PHASE_WIDTH = 3


def format_phase(number: int, width: int = PHASE_WIDTH) -> str:
    """Render a phase number with its zero-padded width (``25`` -> ``"0025"``)."""
    if not PHASE_MIN <= number <= PHASE_MAX:
        raise ValueError(f"Phase number out of range: {number}")
    return f"{number:0{width}d}"


def parse_phase(text: Union[str, int]) -> int:
    """Parse user input such as ``"0025"``, ``"25"`` or ``"Phase 0025"``."""
    if isinstance(text, int):
        number = text
    else:
        digits = re.sub(r"\D", "", str(text))
        if not digits:
            raise ValueError(f"Not a phase number: {text!r}")
        number = int(digits)
    if not PHASE_MIN <= number <= PHASE_MAX:
        raise ValueError(f"Phase number out of range: {text!r}")
    return number


def decade(number: int) -> int:
    """First three digits of a phase number."""
    return number // 10


def slugify(name: str) -> str:
    """Kebab-case slug safe for filenames and branch names."""
    slug = name.lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def display_name(slug: str) -> str:
    """``core-engine`` -> ``Core Engine``."""
    return " ".join(word.capitalize() for word in slug.split("-") if word)


class PhaseStatus(str, Enum):
    """Phase status, one glyph per member."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    AWAITING_USER = "awaiting_user"
    COMPLETE = "complete"

    @property
    def glyph(self) -> str:
        return _STATUS_GLYPHS[self]

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @classmethod
    def from_glyph(cls, cell: str) -> "PhaseStatus":
        """Status for a table cell that starts with a known glyph.

        Unknown glyphs raise ``ValueError``; there is no default.
        """
        stripped = cell.strip()
        for status, glyph in _STATUS_GLYPHS.items():
            if stripped.startswith(glyph):
                return status
        raise ValueError(f"Unknown status glyph in {cell.strip()!r}")

    @classmethod
    def from_text(cls, text: str) -> "PhaseStatus":
        """Status from a user-supplied name such as ``done`` or ``wip``."""
        key = text.strip().lower().replace("-", "_").replace(" ", "_")
        if key in _STATUS_ALIASES:
            return _STATUS_ALIASES[key]
        valid = ", ".join(status.value for status in cls)
        raise ValueError(f"Unknown status: {text!r} (valid: {valid})")


_STATUS_GLYPHS = {
    PhaseStatus.NOT_STARTED: "⬜",
    PhaseStatus.IN_PROGRESS: "🔄",
    PhaseStatus.AWAITING_USER: "⏳",
    PhaseStatus.COMPLETE: "✅",
}

_STATUS_LABELS = {
    PhaseStatus.NOT_STARTED: "Not Started",
    PhaseStatus.IN_PROGRESS: "In Progress",
    PhaseStatus.AWAITING_USER: "Awaiting User",
    PhaseStatus.COMPLETE: "Complete",
}

_STATUS_ALIASES = {
    "not_started": PhaseStatus.NOT_STARTED,
    "notstarted": PhaseStatus.NOT_STARTED,
    "pending": PhaseStatus.NOT_STARTED,
    "in_progress": PhaseStatus.IN_PROGRESS,
    "inprogress": PhaseStatus.IN_PROGRESS,
    "progress": PhaseStatus.IN_PROGRESS,
    "wip": PhaseStatus.IN_PROGRESS,
    "awaiting_user": PhaseStatus.AWAITING_USER,
    "awaiting_user_gate": PhaseStatus.AWAITING_USER,
    "awaiting": PhaseStatus.AWAITING_USER,
    "complete": PhaseStatus.COMPLETE,
    "completed": PhaseStatus.COMPLETE,
    "done": PhaseStatus.COMPLETE,
}


class DetailKind(str, Enum):
    INLINE = "inline"
    FILE = "file"
    NONE = "none"


@dataclass(slots=True)
class DetailRef:
    """Where the detail text of a phase lives."""

    kind: DetailKind = DetailKind.NONE
    path: Optional[Path] = None

    @classmethod
    def inline(cls) -> "DetailRef":
        return cls(DetailKind.INLINE)

    @classmethod
    def file(cls, path: Path) -> "DetailRef":
        return cls(DetailKind.FILE, Path(path))

    @classmethod
    def none(cls) -> "DetailRef":
        return cls(DetailKind.NONE)

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind.value,
            "path": str(self.path) if self.path else None,
        }


@dataclass(slots=True)
class PhaseRecord:
    """One row of the phase table."""

    number: int
    name: str
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    gate: str = ""
    detail: DetailRef = field(default_factory=DetailRef.none)
    # Source text and the values parsed from it; lets the codec re-emit
    # untouched rows byte-for-byte and patch only changed cells.
    source: Optional[str] = field(default=None, repr=False, compare=False)
    parsed: Optional[Tuple[int, str, PhaseStatus, str]] = field(default=None, repr=False, compare=False)

    @property
    def label(self) -> str:
        return format_phase(self.number)

    @property
    def slug(self) -> str:
        return slugify(self.name)

    @property
    def has_user_gate(self) -> bool:
        return "USER GATE" in self.gate.upper()

    def values(self) -> Tuple[int, str, PhaseStatus, str]:
        return (self.number, self.name, self.status, self.gate)

    def is_dirty(self) -> bool:
        """True when the record no longer matches the row it was parsed from."""
        return self.parsed is None or self.parsed != self.values()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "number": self.label,
            "name": self.name,
            "status": self.status.value,
            "gate": self.gate,
            "has_user_gate": self.has_user_gate,
            "detail": self.detail.to_dict(),
        }


@dataclass(slots=True)
class DeferredPhase:
    """A phase pulled out of the active table; its detail is preserved."""

    original_number: int
    name: str
    deferred_date: str
    reason: str = ""
    gate: str = ""
    kind: str = field(default="deferred", init=False)

    @property
    def label(self) -> str:
        return format_phase(self.original_number)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind,
            "original_number": self.label,
            "name": self.name,
            "gate": self.gate,
            "deferred_date": self.deferred_date,
            "reason": self.reason,
        }


@dataclass(slots=True)
class BacklogNote:
    """A free-form idea with no phase number."""

    text: str
    priority: str = "P2"
    notes: str = ""
    added_date: str = field(default_factory=lambda: date.today().isoformat())
    kind: str = field(default="note", init=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind,
            "text": self.text,
            "priority": self.priority,
            "notes": self.notes,
            "added_date": self.added_date,
        }


BacklogEntry = Union[DeferredPhase, BacklogNote]

NOTE_PRIORITIES = ("P1", "P2", "P3")


# Workflow step scale shared by the cache and the artifact-derived status.
WORKFLOW_STEPS: List[str] = ["specify", "plan", "tasks", "implement", "verify"]


def step_index(name: Optional[str]) -> int:
    """Index of a workflow step name, ``-1`` when unknown."""
    if name in WORKFLOW_STEPS:
        return WORKFLOW_STEPS.index(name)
    return -1


@dataclass(slots=True)
class OrchestrationSnapshot:
    """Cached orchestration state. A hint, never authoritative."""

    phase_number: Optional[str] = None
    phase_name: Optional[str] = None
    branch: Optional[str] = None
    phase_status: str = "not_started"
    step_current: Optional[str] = None
    step_index: int = 0
    step_status: str = "not_started"
    tasks_completed: int = 0
    tasks_total: int = 0

    @property
    def has_phase(self) -> bool:
        return bool(self.phase_number)

    @property
    def has_step(self) -> bool:
        return bool(self.step_current)

    @classmethod
    def from_state(cls, data: Dict[str, Any]) -> "OrchestrationSnapshot":
        """Create from the orchestration-state.json document."""
        orchestration = data.get("orchestration") or {}
        phase = orchestration.get("phase") or {}
        step = orchestration.get("step") or {}
        progress = orchestration.get("progress") or {}
        number = phase.get("number")
        return cls(
            phase_number=str(number) if number not in (None, "") else None,
            phase_name=phase.get("name"),
            branch=phase.get("branch") or None,
            phase_status=phase.get("status") or "not_started",
            step_current=step.get("current") or None,
            step_index=_as_int(step.get("index")),
            step_status=step.get("status") or "not_started",
            tasks_completed=_as_int(progress.get("tasks_completed")),
            tasks_total=_as_int(progress.get("tasks_total")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "phase": {
                "number": self.phase_number,
                "name": self.phase_name,
                "branch": self.branch,
                "status": self.phase_status,
            },
            "step": {
                "current": self.step_current,
                "index": self.step_index,
                "status": self.step_status,
            },
            "progress": {
                "tasks_completed": self.tasks_completed,
                "tasks_total": self.tasks_total,
            },
        }


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
