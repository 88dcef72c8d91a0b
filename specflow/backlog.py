"""Backlog sub-tables: deferred phases and free-form notes."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .errors import ParseWarning
from .models import (
    NOTE_PRIORITIES,
    PHASE_WIDTH,
    BacklogNote,
    DeferredPhase,
    format_phase,
)
from .table_codec import escape_cell, header_cells, is_separator, join_cells, split_cells, unescape_cell

logger = logging.getLogger("specflow.backlog")

DEFERRED = "deferred"
NOTES = "notes"

DEFERRED_HEADER = "| Phase | Name | Gate | Deferred | Reason |"
DEFERRED_SEPARATOR = "|-------|------|------|----------|--------|"
NOTES_HEADER = "| Item | Priority | Added | Notes |"
NOTES_SEPARATOR = "|------|----------|-------|-------|"

DEFERRED_TITLE = "### Deferred Phases"
NOTES_TITLE = "### Ideas"
TITLES = {DEFERRED: DEFERRED_TITLE, NOTES: NOTES_TITLE}


def is_deferred_header(line: str) -> bool:
    cells = header_cells(line)
    return bool(cells) and cells[0] == "phase" and "deferred" in cells


def is_notes_header(line: str) -> bool:
    cells = header_cells(line)
    return bool(cells) and cells[0] == "item" and "priority" in cells


def table_kind(line: str) -> Optional[str]:
    if not line.lstrip().startswith("|"):
        return None
    if is_deferred_header(line):
        return DEFERRED
    if is_notes_header(line):
        return NOTES
    return None


class BacklogCodec:
    """Row codec for the two backlog sub-tables."""

    def __init__(self, width: int = PHASE_WIDTH):
        self.width = width
        self._number = re.compile(rf"^\d{{{width}}}$")

    def parse_deferred_row(self, line: str) -> DeferredPhase:
        parts = split_cells(line)
        if parts is None:
            raise ValueError("not a table row")
        cells = [unescape_cell(cell.strip()) for cell in parts[1]]
        if len(cells) < 4:
            raise ValueError(f"expected at least 4 cells, found {len(cells)}")
        if not self._number.match(cells[0]):
            raise ValueError(f"phase number {cells[0]!r} is not {self.width} digits")
        return DeferredPhase(
            original_number=int(cells[0]),
            name=cells[1],
            gate=cells[2],
            deferred_date=cells[3],
            reason=cells[4] if len(cells) > 4 else "",
        )

    def parse_note_row(self, line: str) -> BacklogNote:
        parts = split_cells(line)
        if parts is None:
            raise ValueError("not a table row")
        cells = [unescape_cell(cell.strip()) for cell in parts[1]]
        if len(cells) < 2 or not cells[0]:
            raise ValueError("note row needs an item and a priority")
        priority = cells[1].upper()
        if priority not in NOTE_PRIORITIES:
            raise ValueError(f"unknown priority {cells[1]!r}")
        return BacklogNote(
            text=cells[0],
            priority=priority,
            added_date=cells[2] if len(cells) > 2 else "",
            notes=cells[3] if len(cells) > 3 else "",
        )

    def render_deferred_row(self, entry: DeferredPhase) -> str:
        cells = [
            format_phase(entry.original_number, self.width),
            escape_cell(entry.name),
            escape_cell(entry.gate),
            entry.deferred_date,
            escape_cell(entry.reason),
        ]
        return join_cells("", [f" {cell} " if cell else " " for cell in cells])

    def render_note_row(self, note: BacklogNote) -> str:
        cells = [escape_cell(note.text), note.priority, note.added_date, escape_cell(note.notes)]
        return join_cells("", [f" {cell} " if cell else " " for cell in cells])

    def render_entry(self, entry: Union[DeferredPhase, BacklogNote]) -> str:
        if isinstance(entry, DeferredPhase):
            return self.render_deferred_row(entry)
        return self.render_note_row(entry)

    # ------------------------------------------------------------------
    # Whole sub-tables
    # ------------------------------------------------------------------

    def read_table(
        self, lines: Sequence[str], lead: Sequence[str] = (), line_offset: int = 0
    ) -> Tuple["BacklogTable", List[Union[DeferredPhase, BacklogNote]], List[ParseWarning]]:
        """Parse one sub-table; ``lines`` starts at its header row."""
        kind = table_kind(lines[0])
        if kind is None:
            raise ValueError("not a backlog table header")
        parse_row = self.parse_deferred_row if kind == DEFERRED else self.parse_note_row
        table = BacklogTable(kind, list(lead), lines[0])
        entries: List[Union[DeferredPhase, BacklogNote]] = []
        warnings: List[ParseWarning] = []

        for index, line in enumerate(lines[1:], start=1):
            if index == 1 and is_separator(line):
                table.separator = line
                continue
            try:
                entry = parse_row(line)
            except ValueError as exc:
                table.malformed.append(line)
                warnings.append(ParseWarning(line_offset + index + 1, line, str(exc)))
                continue
            entries.append(entry)
            table.sources[self.render_entry(entry)] = line

        for warning in warnings:
            logger.warning(f"Skipped backlog row ({warning})")
        return table, entries, warnings


@dataclass(slots=True, eq=False)
class BacklogTable:
    """One sub-table as it appears in the file.

    ``lead`` is the standard title above the table when there is one. Rows
    that still render the same come back with their original spacing;
    malformed rows stay below the parsed ones.
    """

    kind: str
    lead: List[str]
    header: str
    separator: Optional[str] = None
    malformed: List[str] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def new(cls, kind: str) -> "BacklogTable":
        if kind == DEFERRED:
            return cls(kind, [DEFERRED_TITLE, ""], DEFERRED_HEADER, DEFERRED_SEPARATOR)
        return cls(kind, [NOTES_TITLE, ""], NOTES_HEADER, NOTES_SEPARATOR)

    @property
    def titled(self) -> bool:
        return bool(self.lead)

    def render(self, rows: Sequence[str]) -> List[str]:
        """Lines for the given canonical rows; a titled table with nothing in it is dropped."""
        if not rows and not self.malformed and self.titled:
            return []
        lines = list(self.lead) + [self.header]
        if self.separator is not None:
            lines.append(self.separator)
        lines.extend(self.sources.get(row, row) for row in rows)
        lines.extend(self.malformed)
        return lines
