"""Phase table rows to and from ``PhaseRecord`` values.

A row looks like ``| 0010 | Core Engine | ✅ Complete | USER GATE: demo |``.
Rows the codec parsed are re-emitted from their source text; rows whose
values changed are patched cell by cell so the author's padding survives.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Tuple

from .errors import ParseWarning
from .models import PHASE_WIDTH, PhaseRecord, PhaseStatus, format_phase

logger = logging.getLogger("specflow.table_codec")

_CELL_SPLIT = re.compile(r"(?<!\\)\|")
_SEPARATOR = re.compile(r"^\s*\|[\s:|-]+\|\s*$")

NAME_CELL = 1
STATUS_CELL = 2
GATE_CELL = 3


def split_cells(line: str) -> Optional[Tuple[str, List[str], str]]:
    """Split a table line into ``(prefix, raw cells, suffix)``.

    Cells keep their surrounding whitespace. Returns ``None`` for lines that
    are not pipe-delimited.
    """
    start = line.find("|")
    end = line.rfind("|")
    if start < 0 or end <= start or line[:start].strip():
        return None
    cells = _CELL_SPLIT.split(line[start + 1:end])
    return line[:start], cells, line[end + 1:]


def join_cells(prefix: str, cells: Sequence[str], suffix: str = "") -> str:
    return prefix + "|" + "|".join(cells) + "|" + suffix


def escape_cell(text: str) -> str:
    return text.replace("|", "\\|")


def unescape_cell(text: str) -> str:
    return text.replace("\\|", "|")


def replace_cell_text(cell: str, text: str) -> str:
    """Swap the content of a raw cell, keeping its leading/trailing padding."""
    if not cell.strip():
        return f" {text} "
    lead = cell[: len(cell) - len(cell.lstrip())]
    trail = cell[len(cell.rstrip()):]
    return f"{lead}{text}{trail}"


def is_separator(line: str) -> bool:
    return bool(_SEPARATOR.match(line)) and "-" in line


def header_cells(line: str) -> List[str]:
    parts = split_cells(line)
    if parts is None:
        return []
    return [cell.strip().lower() for cell in parts[1]]


class TableCodec:
    """Serializer/deserializer pair for the phase table."""

    def __init__(self, width: int = PHASE_WIDTH):
        self.width = width
        self._number = re.compile(rf"^\d{{{width}}}$")

    # ------------------------------------------------------------------
    # Table structure
    # ------------------------------------------------------------------

    def is_table_header(self, line: str) -> bool:
        cells = header_cells(line)
        return bool(cells) and cells[0] == "phase" and "status" in cells

    def find_table(self, lines: Sequence[str]) -> Optional[Tuple[int, int, int]]:
        """Locate the phase table as ``(header, first_row, end)`` line indexes."""
        for index, line in enumerate(lines):
            if not self.is_table_header(line):
                continue
            first = index + 1
            if first < len(lines) and is_separator(lines[first]):
                first += 1
            end = first
            while end < len(lines) and lines[end].lstrip().startswith("|"):
                end += 1
            return index, first, end
        return None

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_row(self, line: str, line_number: int = 0) -> PhaseRecord:
        """Parse one body row. Raises ``ValueError`` describing the defect."""
        parts = split_cells(line)
        if parts is None:
            raise ValueError("not a table row")
        _, cells, _ = parts
        if len(cells) < 3:
            raise ValueError(f"expected at least 3 cells, found {len(cells)}")

        key = cells[0].strip()
        if not self._number.match(key):
            raise ValueError(f"phase number {key!r} is not {self.width} digits")

        name = unescape_cell(cells[NAME_CELL].strip())
        if not name:
            raise ValueError(f"phase {key} has an empty name")

        status = PhaseStatus.from_glyph(cells[STATUS_CELL])
        gate = unescape_cell(cells[GATE_CELL].strip()) if len(cells) > GATE_CELL else ""

        record = PhaseRecord(number=int(key), name=name, status=status, gate=gate)
        record.source = line
        record.parsed = record.values()
        return record

    def parse_with_warnings(self, text: str) -> Tuple[List[PhaseRecord], List[ParseWarning]]:
        """Parse every well-formed row; malformed rows become warnings."""
        lines = text.splitlines()
        table = self.find_table(lines)
        if table is not None:
            _, first, end = table
            candidates = range(first, end)
        else:
            # Fragment without a header: every pipe row is a candidate.
            candidates = [
                index for index, line in enumerate(lines)
                if line.lstrip().startswith("|")
                and not self.is_table_header(line)
                and not is_separator(line)
            ]

        records: List[PhaseRecord] = []
        warnings: List[ParseWarning] = []
        for index in candidates:
            line = lines[index]
            try:
                records.append(self.parse_row(line, index + 1))
            except ValueError as exc:
                warnings.append(ParseWarning(index + 1, line, str(exc)))

        for warning in warnings:
            logger.warning(f"Skipped phase table row ({warning})")
        return records, warnings

    def parse(self, text: str) -> List[PhaseRecord]:
        records, _ = self.parse_with_warnings(text)
        return records

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def status_cell(self, status: PhaseStatus, glyph_only: bool = False) -> str:
        if glyph_only:
            return status.glyph
        return f"{status.glyph} {status.label}"

    def render_row(self, record: PhaseRecord) -> str:
        if record.source is not None and not record.is_dirty():
            return record.source
        if record.source is not None and record.parsed is not None:
            patched = self._patch_row(record)
            if patched is not None:
                return patched
        return self._canonical_row(record)

    def render(self, records: Sequence[PhaseRecord]) -> str:
        return "\n".join(self.render_row(record) for record in records)

    def _canonical_row(self, record: PhaseRecord) -> str:
        cells = [
            format_phase(record.number, self.width),
            escape_cell(record.name),
            self.status_cell(record.status),
            escape_cell(record.gate),
        ]
        return join_cells("", [f" {cell} " if cell else " " for cell in cells])

    def _patch_row(self, record: PhaseRecord) -> Optional[str]:
        parts = split_cells(record.source or "")
        if parts is None:
            return None
        prefix, cells, suffix = parts
        old_number, old_name, old_status, old_gate = record.parsed
        cells = list(cells)

        if record.number != old_number:
            cells[0] = replace_cell_text(cells[0], format_phase(record.number, self.width))
        if record.name != old_name:
            cells[NAME_CELL] = replace_cell_text(cells[NAME_CELL], escape_cell(record.name))
        if record.status != old_status:
            glyph_only = cells[STATUS_CELL].strip() == old_status.glyph
            cells[STATUS_CELL] = replace_cell_text(
                cells[STATUS_CELL], self.status_cell(record.status, glyph_only)
            )
        if record.gate != old_gate:
            if len(cells) > GATE_CELL:
                cells[GATE_CELL] = replace_cell_text(cells[GATE_CELL], escape_cell(record.gate))
            else:
                cells.append(f" {escape_cell(record.gate)} ")

        return join_cells(prefix, cells, suffix)
