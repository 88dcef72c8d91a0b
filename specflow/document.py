"""The roadmap document as records plus untouched text blocks.

``RoadmapDocument.parse`` splits ROADMAP.md into:

- ``head``: everything up to and including the phase table separator,
- ``rows``: parsed ``PhaseRecord`` values (malformed rows kept as raw text),
- ``body``: inline ``### NNNN - Name`` sections, the text between them and,
  wherever it sits, the ``## Backlog`` section as one block.

A section owns the horizontal rule that directly follows it, so moving or
removing a section takes its separator along. ``render`` reassembles the
same bytes when nothing changed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple, Union

from .backlog import DEFERRED, NOTES, TITLES, BacklogCodec, BacklogTable, table_kind
from .errors import ParseWarning, ValidationFailed
from .models import BacklogNote, DeferredPhase, PhaseRecord, format_phase
from .sections import SECTION_HEADER, header_level, is_rule, section_end
from .table_codec import TableCodec

logger = logging.getLogger("specflow.document")

BACKLOG_HEADER = re.compile(r"^##\s+Backlog\b", re.IGNORECASE)
BACKLOG_INTRO = "> Deferred phases and ideas not yet scheduled."
RULE = "---"


def section_header(number: int, name: str, width: int = 4) -> str:
    return f"### {format_phase(number, width)} - {name}"


def _trim_blank(lines: Sequence[str]) -> List[str]:
    trimmed = list(lines)
    while trimmed and not trimmed[-1].strip():
        trimmed.pop()
    while trimmed and not trimmed[0].strip():
        trimmed.pop(0)
    return trimmed


def _trim_end(lines: List[str], keep: int = 0) -> None:
    while len(lines) > keep and not lines[-1].strip():
        lines.pop()


@dataclass(slots=True, eq=False)
class Section:
    """An inline detail block: header line plus everything up to the next header.

    ``rule`` holds a horizontal rule that closed the section in the file,
    with the blank lines after it.
    """

    number: int
    title: str
    lines: List[str]
    rule: List[str] = field(default_factory=list)

    @classmethod
    def new(cls, number: int, name: str, body: Optional[Sequence[str]] = None) -> "Section":
        lines = [section_header(number, name), ""]
        lines.extend(body if body is not None else ["**Goal**: ", ""])
        if lines[-1].strip():
            lines.append("")
        return cls(number, name, lines)

    def set_number(self, number: int, width: int = 4) -> None:
        match = SECTION_HEADER.match(self.lines[0])
        if match:
            header = self.lines[0]
            self.lines[0] = header[: match.start(1)] + format_phase(number, width) + header[match.end(1):]
        else:
            self.lines[0] = section_header(number, self.title, width)
        self.number = number

    def attach_rule(self) -> None:
        if self.rule:
            return
        _trim_end(self.lines, keep=1)
        self.lines.append("")
        self.rule = [RULE]

    def detach_rule(self) -> None:
        self.rule = []

    def ensure_trailing_blank(self) -> None:
        end = self.rule or self.lines
        if not end or end[-1].strip():
            end.append("")

    def trim_end(self) -> None:
        _trim_end(self.rule or self.lines, keep=1)

    def rendered(self) -> List[str]:
        return self.lines + self.rule

    def content(self) -> List[str]:
        """Lines without the header, leading/trailing blanks removed."""
        return _trim_blank(self.lines[1:])

    def text(self) -> str:
        return "\n".join(_trim_blank(self.lines)) + "\n"


@dataclass(slots=True, eq=False)
class TextBlock:
    lines: List[str]

    def ensure_trailing_blank(self) -> None:
        if not self.lines or self.lines[-1].strip():
            self.lines.append("")

    def trim_end(self) -> None:
        _trim_end(self.lines)

    def rendered(self) -> List[str]:
        return self.lines


def parse_blocks(lines: Sequence[str]) -> List[Union[Section, TextBlock]]:
    """Split lines into numbered sections and the text between them."""
    blocks: List[Union[Section, TextBlock]] = []
    pending: List[str] = []
    index = 0
    while index < len(lines):
        match = SECTION_HEADER.match(lines[index])
        if match:
            if pending:
                blocks.append(TextBlock(pending))
                pending = []
            end = section_end(lines, index, 3)
            section = Section(int(match.group(1)), match.group(2), list(lines[index:end]))
            if end < len(lines) and is_rule(lines[end]):
                stop = end + 1
                while stop < len(lines) and not lines[stop].strip():
                    stop += 1
                section.rule = list(lines[end:stop])
                end = stop
            blocks.append(section)
            index = end
            continue
        pending.append(lines[index])
        index += 1
    if pending:
        blocks.append(TextBlock(pending))
    return blocks


def _take_lead(pending: List[str], title: str) -> List[str]:
    """Pop a standard sub-table title (and the blanks after it) off ``pending``."""
    index = len(pending)
    while index and not pending[index - 1].strip():
        index -= 1
    if index and pending[index - 1].strip().lower() == title.lower():
        lead = pending[index - 1:]
        del pending[index - 1:]
        return lead
    return []


BacklogPart = Union[Section, TextBlock, BacklogTable]


@dataclass(slots=True, eq=False)
class Backlog:
    """The ``## Backlog`` section.

    Held as text, the two sub-tables and deferred detail sections. It is
    emitted verbatim until something changes; after that the sub-tables are
    re-rendered where they stand and the text around them passes through.
    """

    header: str
    lines: List[str]
    parts: List[BacklogPart] = field(default_factory=list)
    deferred: List[DeferredPhase] = field(default_factory=list)
    notes: List[BacklogNote] = field(default_factory=list)
    dirty: bool = False
    created: bool = False

    @classmethod
    def empty(cls) -> "Backlog":
        return cls("## Backlog", [], [TextBlock(["", BACKLOG_INTRO, ""])], dirty=True, created=True)

    @classmethod
    def parse(
        cls, header: str, lines: Sequence[str], codec: BacklogCodec, line_offset: int = 0
    ) -> Tuple["Backlog", List[ParseWarning]]:
        backlog = cls(header, list(lines))
        warnings: List[ParseWarning] = []
        pending: List[str] = []
        seen: Set[str] = set()

        def flush() -> None:
            if pending:
                backlog.parts.append(TextBlock(list(pending)))
                pending.clear()

        index = 0
        while index < len(lines):
            line = lines[index]
            match = SECTION_HEADER.match(line)
            if match:
                flush()
                end = section_end(lines, index, 3)
                backlog.parts.append(Section(int(match.group(1)), match.group(2), list(lines[index:end])))
                index = end
                continue
            kind = table_kind(line)
            if kind is not None and kind not in seen:
                seen.add(kind)
                end = index + 1
                while end < len(lines) and lines[end].lstrip().startswith("|"):
                    end += 1
                lead = _take_lead(pending, TITLES[kind])
                flush()
                table, entries, table_warnings = codec.read_table(lines[index:end], lead, line_offset + index)
                backlog.parts.append(table)
                (backlog.deferred if kind == DEFERRED else backlog.notes).extend(entries)
                warnings.extend(table_warnings)
                index = end
                continue
            if kind is not None:
                warnings.append(ParseWarning(line_offset + index + 1, line, f"second {kind} table is not read"))
                logger.warning(f"Ignored a second {kind} table in the backlog (line {line_offset + index + 1})")
            pending.append(line)
            index += 1
        flush()
        return backlog, warnings

    @property
    def numbers(self) -> List[int]:
        return [entry.original_number for entry in self.deferred]

    @property
    def sections(self) -> List[Section]:
        return [part for part in self.parts if isinstance(part, Section)]

    @property
    def vacant(self) -> bool:
        """True when nothing is left but what the registry itself writes."""
        if self.deferred or self.notes or self.header.strip() != "## Backlog":
            return False
        for part in self.parts:
            if isinstance(part, Section):
                return False
            if isinstance(part, BacklogTable):
                if part.malformed or not part.titled:
                    return False
            elif any(line.strip() and line.strip() != BACKLOG_INTRO for line in part.lines):
                return False
        return True

    def entry(self, number: int) -> Optional[DeferredPhase]:
        for entry in self.deferred:
            if entry.original_number == number:
                return entry
        return None

    def section(self, number: int) -> Optional[Section]:
        for section in self.sections:
            if section.number == number:
                return section
        return None

    def add_section(self, section: Section) -> None:
        """Keep a deferred phase's detail, ordered by number among the others."""
        section.detach_rule()
        positions = [index for index, part in enumerate(self.parts) if isinstance(part, Section)]
        later = [index for index in positions if self.parts[index].number > section.number]
        if later:
            slot = later[0]
        elif positions:
            slot = positions[-1] + 1
        else:
            slot = len(self.parts)
        self.parts.insert(slot, section)
        self.dirty = True

    def remove_section(self, number: int) -> Optional[Section]:
        section = self.section(number)
        if section is not None:
            self.parts = [part for part in self.parts if part is not section]
            self.dirty = True
        return section

    def clear_sections(self) -> None:
        self.parts = [part for part in self.parts if not isinstance(part, Section)]
        self.dirty = True

    def ensure_trailing_blank(self) -> None:
        if not self.dirty and (not self.lines or self.lines[-1].strip()):
            self.lines.append("")

    def trim_end(self) -> None:
        if not self.dirty:
            _trim_end(self.lines)

    def _layout(self) -> List[BacklogPart]:
        """Parts in output order, with a sub-table added for a kind that has none yet."""
        parts = list(self.parts)

        def position(kind: str) -> Optional[int]:
            for index, part in enumerate(parts):
                if isinstance(part, BacklogTable) and part.kind == kind:
                    return index
            return None

        def first_section() -> int:
            for index, part in enumerate(parts):
                if isinstance(part, Section):
                    return index
            return len(parts)

        if self.deferred and position(DEFERRED) is None:
            notes_at = position(NOTES)
            parts.insert(notes_at if notes_at is not None else first_section(), BacklogTable.new(DEFERRED))
        if self.notes and position(NOTES) is None:
            deferred_at = position(DEFERRED)
            parts.insert(deferred_at + 1 if deferred_at is not None else first_section(), BacklogTable.new(NOTES))
        return parts

    def render_lines(self, codec: BacklogCodec) -> List[str]:
        if not self.dirty:
            return [self.header] + self.lines
        out = [self.header]
        previous_solid = False
        for part in self._layout():
            if isinstance(part, BacklogTable):
                entries = self.deferred if part.kind == DEFERRED else self.notes
                chunk = part.render([codec.render_entry(entry) for entry in entries])
                solid = True
            else:
                chunk = list(part.lines)
                solid = isinstance(part, Section)
            # Blank-to-blank junctions collapse; tables and sections get one blank line around them.
            while chunk and not chunk[0].strip() and not out[-1].strip():
                chunk.pop(0)
            if not chunk:
                continue
            if chunk[0].strip() and out[-1].strip() and (solid or previous_solid):
                out.append("")
            out.extend(chunk)
            previous_solid = solid
        if out[-1].strip():
            out.append("")
        return out


Block = Union[Section, TextBlock, Backlog]


def _prefers_rules(sections: Sequence[Section]) -> bool:
    ruled = sum(1 for section in sections if section.rule)
    return ruled > 0 and ruled * 2 >= len(sections)


class RoadmapDocument:
    """ROADMAP.md as an explicit record list plus passthrough text."""

    def __init__(
        self,
        head: List[str],
        rows: List[Union[PhaseRecord, str]],
        body: List[Block],
        trailing_newline: bool = True,
        codec: Optional[TableCodec] = None,
        warnings: Optional[List[ParseWarning]] = None,
    ):
        self.head = head
        self.rows = rows
        self.body = body
        self.trailing_newline = trailing_newline
        self.codec = codec or TableCodec()
        self.backlog_codec = BacklogCodec(self.codec.width)
        self.warnings = warnings or []
        # Whether sections are separated by horizontal rules, as first read.
        self.ruled = _prefers_rules(self.sections)

    @classmethod
    def parse(cls, text: str, codec: Optional[TableCodec] = None) -> "RoadmapDocument":
        codec = codec or TableCodec()
        lines = text.split("\n")
        trailing_newline = text.endswith("\n")
        if trailing_newline:
            lines.pop()

        table = codec.find_table(lines)
        if table is None:
            raise ValidationFailed(
                "No phase table found (expected a '| Phase | Name | Status | Gate |' header)",
                suggestion="Add the phase table to ROADMAP.md",
            )
        _, first, end = table

        rows: List[Union[PhaseRecord, str]] = []
        warnings: List[ParseWarning] = []
        for index in range(first, end):
            try:
                rows.append(codec.parse_row(lines[index], index + 1))
            except ValueError as exc:
                rows.append(lines[index])
                warnings.append(ParseWarning(index + 1, lines[index], str(exc)))
                logger.warning(f"Skipped phase table row (line {index + 1}: {exc})")

        backlog_start = next(
            (index for index in range(end, len(lines)) if BACKLOG_HEADER.match(lines[index])), None
        )
        body: List[Block] = []
        if backlog_start is None:
            body.extend(parse_blocks(lines[end:]))
        else:
            backlog_end = len(lines)
            for index in range(backlog_start + 1, len(lines)):
                level = header_level(lines[index])
                if (level and level <= 2) or is_rule(lines[index]):
                    backlog_end = index
                    break
            backlog, backlog_warnings = Backlog.parse(
                lines[backlog_start],
                lines[backlog_start + 1:backlog_end],
                BacklogCodec(codec.width),
                backlog_start + 1,
            )
            warnings.extend(backlog_warnings)
            body.extend(parse_blocks(lines[end:backlog_start]))
            body.append(backlog)
            body.extend(parse_blocks(lines[backlog_end:]))

        return cls(lines[:first], rows, body, trailing_newline, codec, warnings)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def records(self) -> List[PhaseRecord]:
        return [row for row in self.rows if isinstance(row, PhaseRecord)]

    @property
    def numbers(self) -> List[int]:
        return [record.number for record in self.records]

    @property
    def backlog(self) -> Optional[Backlog]:
        for block in self.body:
            if isinstance(block, Backlog):
                return block
        return None

    @property
    def backlog_numbers(self) -> List[int]:
        backlog = self.backlog
        return backlog.numbers if backlog else []

    @property
    def sections(self) -> List[Section]:
        return [block for block in self.body if isinstance(block, Section)]

    def used_numbers(self) -> Set[int]:
        return set(self.numbers) | set(self.backlog_numbers)

    def record(self, number: int) -> Optional[PhaseRecord]:
        for record in self.records:
            if record.number == number:
                return record
        return None

    def section(self, number: int) -> Optional[Section]:
        for section in self.sections:
            if section.number == number:
                return section
        return None

    def _index(self, block: Block) -> int:
        for index, candidate in enumerate(self.body):
            if candidate is block:
                return index
        raise ValueError("block is not part of this document")

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_record(self, record: PhaseRecord) -> None:
        self.rows.append(record)
        self.normalize()

    def remove_record(self, number: int) -> PhaseRecord:
        record = self.record(number)
        if record is None:
            raise KeyError(number)
        self.rows.remove(record)
        return record

    def add_section(self, section: Section) -> None:
        """Place a section among the others by number.

        With no sections yet it goes before the backlog. In a document whose
        sections are separated by horizontal rules the separators are kept
        between neighbours.
        """
        blocks = self.body
        slot = None
        for index, block in enumerate(blocks):
            if isinstance(block, Section):
                if block.number < section.number:
                    slot = index + 1
                elif slot is None:
                    slot = index
                    break
        if slot is None:
            backlog = self.backlog
            slot = self._index(backlog) if backlog is not None else len(blocks)
        if slot == 0:
            blocks.insert(0, TextBlock([""]))
            slot = 1

        previous = blocks[slot - 1]
        if self.ruled:
            followed = any(isinstance(block, Section) for block in blocks[slot:])
            if not followed and isinstance(previous, Section) and not previous.rule:
                previous.attach_rule()
            else:
                section.attach_rule()
        previous.ensure_trailing_blank()
        blocks.insert(slot, section)
        if slot + 1 < len(blocks):
            section.ensure_trailing_blank()
        else:
            section.trim_end()

    def remove_section(self, number: int) -> Optional[Section]:
        section = self.section(number)
        if section is None:
            return None
        index = self._index(section)
        del self.body[index]
        previous = self.body[index - 1] if index > 0 else None
        was_last = not any(isinstance(block, Section) for block in self.body[index:])
        if was_last and not section.rule and isinstance(previous, Section) and previous.rule:
            previous.detach_rule()
        if self.body and index == len(self.body):
            self.body[-1].trim_end()
        return section

    def ensure_backlog(self) -> Backlog:
        backlog = self.backlog
        if backlog is None:
            backlog = Backlog.empty()
            self.body.append(backlog)
        return backlog

    def prune_backlog(self) -> bool:
        """Drop a backlog that holds nothing but the registry's own scaffolding."""
        backlog = self.backlog
        if backlog is None or not backlog.vacant:
            return False
        index = self._index(backlog)
        del self.body[index]
        if self.body and index == len(self.body):
            self.body[-1].trim_end()
        logger.debug("Removed the empty backlog section")
        return True

    def normalize(self) -> None:
        """Restore ascending row order and matching section order."""
        groups: List[List[Union[PhaseRecord, str]]] = []
        keys: List[int] = []
        for row in self.rows:
            if isinstance(row, PhaseRecord):
                groups.append([row])
                keys.append(row.number)
            elif groups:
                groups[-1].append(row)
            else:
                groups.append([row])
                keys.append(-1)
        ordered = sorted(zip(keys, range(len(groups)), groups))
        self.rows = [row for _, _, group in ordered for row in group]

        slots = [index for index, block in enumerate(self.body) if isinstance(block, Section)]
        sections = sorted((self.body[index] for index in slots), key=lambda section: section.number)
        for index, section in zip(slots, sections):
            if self.body[index] is not section:
                section.ensure_trailing_blank()
            self.body[index] = section

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self) -> str:
        out: List[str] = list(self.head)
        for row in self.rows:
            out.append(self.codec.render_row(row) if isinstance(row, PhaseRecord) else row)
        for index, block in enumerate(self.body):
            if isinstance(block, Backlog):
                backlog_lines = block.render_lines(self.backlog_codec)
                if block.created and out and out[-1].strip():
                    out.append("")
                if block.dirty and index == len(self.body) - 1:
                    _trim_end(backlog_lines)
                out.extend(backlog_lines)
            else:
                out.extend(block.rendered())
        text = "\n".join(out)
        return text + "\n" if self.trailing_newline else text

    def lines(self) -> List[str]:
        return self.render().splitlines()


def document_problems(document: RoadmapDocument) -> List[str]:
    """Ordering and uniqueness violations, empty when the document is sound."""
    problems: List[str] = []
    numbers = document.numbers
    for previous, current in zip(numbers, numbers[1:]):
        if current <= previous:
            problems.append(
                f"Phase {format_phase(current)} follows {format_phase(previous)}; "
                "rows must be strictly increasing"
            )
    seen: Set[int] = set()
    for number in numbers + document.backlog_numbers:
        if number in seen:
            problems.append(f"Phase {format_phase(number)} appears more than once")
        seen.add(number)
    section_numbers = [section.number for section in document.sections]
    if section_numbers != sorted(section_numbers):
        problems.append("Inline detail sections are not in table order")
    return problems


class DocumentValidator:
    """Post-write check for a staged roadmap."""

    def __init__(self, codec: TableCodec, expected_rows: Optional[int] = None):
        self.codec = codec
        self.expected_rows = expected_rows

    def __call__(self, text: str) -> None:
        document = RoadmapDocument.parse(text, self.codec)
        problems = document_problems(document)
        if self.expected_rows is not None and len(document.numbers) != self.expected_rows:
            problems.append(f"Expected {self.expected_rows} phase rows, found {len(document.numbers)}")
        if problems:
            raise ValidationFailed(
                "Staged roadmap failed validation: " + "; ".join(problems),
                suggestion="The original ROADMAP.md was left unchanged",
            )
