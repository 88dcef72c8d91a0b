"""Locate the detail block of a phase.

Detail lives in one of three places: an inline ``### NNNN - Name`` section of
the roadmap, a companion file ``<phases>/NNNN-slug.md``, or an archived
``## NNNN - Name`` section of the history file. Lookups are read-only.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .config import RegistryConfig
from .errors import AmbiguousMatch, PhaseNotFound
from .models import PHASE_MAX, format_phase, parse_phase

logger = logging.getLogger("specflow.sections")

SECTION_HEADER = re.compile(r"^###\s*(\d{3,4})\s*-\s*(.*?)\s*$")
ARCHIVE_HEADER = re.compile(r"^##\s*(\d{3,4})\s*-\s*(.*?)\s*$")
_HEADER = re.compile(r"^(#{1,6})\s")
_RULE = re.compile(r"^\s*(?:-{3,}|\*{3,}|_{3,})\s*$")


def header_level(line: str) -> int:
    match = _HEADER.match(line)
    return len(match.group(1)) if match else 0


def is_rule(line: str) -> bool:
    return bool(_RULE.match(line))


def section_end(lines: Sequence[str], start: int, level: int = 3) -> int:
    """Index one past the last line of the section whose header is at ``start``.

    A section runs to the line before the next header at the same or a higher
    level, or before a horizontal rule.
    """
    for index in range(start + 1, len(lines)):
        line = lines[index]
        found = header_level(line)
        if (found and found <= level) or is_rule(line):
            return index
    return len(lines)


def iter_sections(
    lines: Sequence[str], pattern: re.Pattern = SECTION_HEADER, level: int = 3
) -> Iterator[Tuple[int, str, int, int]]:
    """Yield ``(number, title, start, end)`` for each numbered section."""
    for index, line in enumerate(lines):
        match = pattern.match(line)
        if match:
            yield int(match.group(1)), match.group(2), index, section_end(lines, index, level)


def lookup_candidates(raw: Union[str, int]) -> List[int]:
    """Exact number first, then the single widening step ``n -> n*10``."""
    number = parse_phase(raw)
    candidates = [number]
    if number < 1000 and number * 10 <= PHASE_MAX:
        candidates.append(number * 10)
    return candidates


def resolve_number(raw: Union[str, int], known: Iterable[int]) -> int:
    """Resolve user input against existing phase numbers.

    Raises ``AmbiguousMatch`` when only a second widening step would match and
    ``PhaseNotFound`` otherwise.
    """
    known_set = set(known)
    for candidate in lookup_candidates(raw):
        if candidate in known_set:
            return candidate

    number = parse_phase(raw)
    if number < 100 and number * 100 in known_set:
        raise AmbiguousMatch(
            f"Phase {raw} only matches {format_phase(number * 100)} after widening twice",
            phase=str(raw),
            suggestion=f"Use the full number: {format_phase(number * 100)}",
        )
    raise PhaseNotFound(
        f"Phase {raw} not found",
        phase=str(raw),
        suggestion="List phases with: specflow roadmap status",
    )


@dataclass(slots=True)
class SectionLocation:
    """Where a phase's detail block was found."""

    kind: str
    number: int
    path: Path
    title: str = ""
    start: Optional[int] = None
    end: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind,
            "number": format_phase(self.number),
            "path": str(self.path),
            "title": self.title,
            "start": self.start,
            "end": self.end,
        }


class SectionLocator:
    """Find detail blocks by phase number."""

    def __init__(self, config: RegistryConfig):
        self.config = config

    # ------------------------------------------------------------------
    # Inline sections
    # ------------------------------------------------------------------

    def find_inline(self, lines: Sequence[str], raw: Union[str, int]) -> Optional[Tuple[int, int, int, str]]:
        """Return ``(number, start, end, title)`` for an inline section."""
        sections = list(iter_sections(lines))
        for candidate in lookup_candidates(raw):
            for number, title, start, end in sections:
                if number == candidate:
                    return number, start, end, title
        return None

    # ------------------------------------------------------------------
    # Companion files
    # ------------------------------------------------------------------

    def find_companion(
        self, raw: Union[str, int], directory: Optional[Path] = None, fuzzy: bool = True
    ) -> Optional[Path]:
        """Companion file for a number; ``fuzzy=False`` for already-resolved numbers."""
        directory = directory or self.config.phases_dir
        if not directory.is_dir():
            return None
        candidates = lookup_candidates(raw) if fuzzy else [parse_phase(raw)]
        for candidate in candidates:
            matches = sorted(directory.glob(f"{format_phase(candidate, self.config.phase_width)}-*.md"))
            if matches:
                if len(matches) > 1:
                    logger.warning(f"Several companion files for phase {format_phase(candidate)}; using {matches[0].name}")
                return matches[0]
        return None

    def has_companions(self) -> bool:
        directory = self.config.phases_dir
        return directory.is_dir() and any(
            path.is_file() and re.match(r"^\d{4}-", path.name) for path in directory.glob("*.md")
        )

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def find_archived(self, raw: Union[str, int]) -> Optional[Tuple[int, int, int, str]]:
        path = self.config.history_path
        if not path.exists():
            return None
        lines = path.read_text(encoding="utf-8").splitlines()
        sections = list(iter_sections(lines, ARCHIVE_HEADER, level=2))
        for candidate in lookup_candidates(raw):
            for number, title, start, end in sections:
                if number == candidate:
                    return number, start, end, title
        return None

    # ------------------------------------------------------------------
    # Combined lookup
    # ------------------------------------------------------------------

    def locate(self, raw: Union[str, int], roadmap_lines: Sequence[str]) -> Optional[SectionLocation]:
        """Search inline, then companion files (active, deferred), then the archive."""
        inline = self.find_inline(roadmap_lines, raw)
        if inline:
            number, start, end, title = inline
            return SectionLocation("inline", number, self.config.roadmap_path, title, start, end)

        for directory in (self.config.phases_dir, self.config.deferred_dir):
            path = self.find_companion(raw, directory)
            if path:
                number = int(path.name.split("-", 1)[0])
                return SectionLocation("file", number, path, path.stem.split("-", 1)[-1])

        archived = self.find_archived(raw)
        if archived:
            number, start, end, title = archived
            return SectionLocation("archive", number, self.config.history_path, title, start, end)
        return None

    def extract(self, location: SectionLocation, roadmap_lines: Optional[Sequence[str]] = None) -> str:
        """Text of a located block. Nothing is removed from its source."""
        if location.kind == "file":
            return location.path.read_text(encoding="utf-8")
        if location.kind == "inline" and roadmap_lines is not None:
            lines = list(roadmap_lines)
        else:
            lines = location.path.read_text(encoding="utf-8").splitlines()
        block = list(lines[location.start:location.end])
        while block and not block[-1].strip():
            block.pop()
        return "\n".join(block) + "\n"
