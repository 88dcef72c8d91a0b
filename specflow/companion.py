"""Companion detail files: YAML front matter followed by markdown."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import PhaseStatus, display_name, format_phase, slugify

_FRONT_MATTER = "---"


def companion_path(directory: Path, number: int, name: str) -> Path:
    """``<directory>/NNNN-slug.md``"""
    return directory / f"{format_phase(number)}-{slugify(name)}.md"


def replace_numbers(text: str, mapping: Mapping[str, str]) -> str:
    """Replace whole phase-number tokens in one pass.

    All keys are matched simultaneously so chained mappings such as
    ``0020 -> 0030`` and ``0030 -> 0040`` do not cascade.
    """
    if not mapping:
        return text
    keys = sorted(mapping, key=len, reverse=True)
    pattern = re.compile(r"(?<!\d)(" + "|".join(re.escape(key) for key in keys) + r")(?!\d)")
    return pattern.sub(lambda match: mapping[match.group(1)], text)


@dataclass(slots=True)
class CompanionFile:
    """One phase's companion document."""

    path: Path
    meta: Dict[str, Any] = field(default_factory=dict)
    body: str = ""

    @classmethod
    def parse(cls, path: Path, text: str) -> "CompanionFile":
        if text.startswith(_FRONT_MATTER):
            parts = text.split(_FRONT_MATTER, 2)
            if len(parts) == 3:
                loaded = yaml.safe_load(parts[1]) or {}
                if isinstance(loaded, dict):
                    return cls(path, loaded, parts[2].lstrip("\n"))
        return cls(path, {}, text)

    @classmethod
    def load(cls, path: Path) -> "CompanionFile":
        return cls.parse(path, path.read_text(encoding="utf-8"))

    @classmethod
    def create(
        cls,
        directory: Path,
        number: int,
        name: str,
        gate: str = "",
        status: PhaseStatus = PhaseStatus.NOT_STARTED,
        today: Optional[date] = None,
    ) -> "CompanionFile":
        """New companion file with the standard skeleton."""
        stamp = (today or date.today()).isoformat()
        label = format_phase(number)
        meta = {
            "phase": label,
            "name": slugify(name),
            "status": status.value,
            "created": stamp,
            "updated": stamp,
        }
        body_lines = [
            f"# Phase {label}: {name}",
            "",
            "**Goal**: ",
            "",
            "**Scope**:",
            "",
            "**Deliverables**:",
            "",
            "**Verification Gate**: " + (gate or "Technical"),
            "",
        ]
        return cls(companion_path(directory, number, name), meta, "\n".join(body_lines))

    @property
    def title(self) -> str:
        name = self.meta.get("name")
        if name:
            return display_name(str(name))
        return display_name(self.path.stem.split("-", 1)[-1])

    def render(self) -> str:
        front = yaml.safe_dump(self.meta, sort_keys=False, allow_unicode=True).strip()
        return f"{_FRONT_MATTER}\n{front}\n{_FRONT_MATTER}\n\n{self.body}"

    def set_status(self, status: PhaseStatus, today: Optional[date] = None) -> None:
        self.meta["status"] = status.value
        self.meta["updated"] = (today or date.today()).isoformat()

    def renumber(self, mapping: Mapping[str, str], directory: Optional[Path] = None) -> None:
        """Apply an old -> new label mapping to the path, metadata and body."""
        old = self.path.name.split("-", 1)
        if old[0] in mapping:
            self.path = (directory or self.path.parent) / f"{mapping[old[0]]}-{old[1]}"
        elif directory is not None:
            self.path = directory / self.path.name
        phase = self.meta.get("phase")
        if phase is not None and str(phase) in mapping:
            self.meta["phase"] = mapping[str(phase)]
        self.body = replace_numbers(self.body, mapping)
