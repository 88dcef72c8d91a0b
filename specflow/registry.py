"""Phase registry mutations.

Every mutating operation takes the registry lock, loads ROADMAP.md into a
``RoadmapDocument``, edits records and detail blocks in memory, and writes
all touched files through one ``Transaction``. The staged roadmap must pass
``DocumentValidator`` before anything on disk changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .allocator import Allocation, next_in_decade
from .atomic import AtomicWriter, RegistryLock, Transaction
from .backlog import BacklogCodec
from .companion import CompanionFile, replace_numbers
from .config import RegistryConfig
from .document import (
    DocumentValidator,
    RoadmapDocument,
    Section,
    document_problems,
)
from .errors import (
    AnchorNotFound,
    DocumentNotFound,
    NumberInUse,
    PhaseInProgress,
    PhaseNotFound,
    ValidationFailed,
)
from .models import (
    NOTE_PRIORITIES,
    PHASE_MAX,
    BacklogNote,
    DeferredPhase,
    DetailRef,
    PhaseRecord,
    PhaseStatus,
    format_phase,
    parse_phase,
)
from .sections import SectionLocator, is_rule, resolve_number
from .specflow_logging import (
    log_operation,
    log_performance,
    log_phase_deferred,
    log_phase_inserted,
    log_phase_restored,
    log_phases_renumbered,
    log_status_updated,
    observability_hooks,
)
from .state import StateStore, get_value, set_value
from .table_codec import TableCodec

logger = logging.getLogger("specflow.registry")

HISTORY_TEMPLATE = """# Project History

> Completed phases, newest first.

---
"""

DETAIL_MODES = {"auto", "inline", "file", "none"}
ACTIVE_STATUSES = (PhaseStatus.IN_PROGRESS, PhaseStatus.AWAITING_USER)


@dataclass(slots=True)
class MutationResult:
    """Outcome of one registry operation."""

    operation: str
    phase: Optional[str] = None
    changed: bool = True
    dry_run: bool = False
    rolled_over: bool = False
    warnings: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    backups: List[str] = field(default_factory=list)
    mapping: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "operation": self.operation,
            "phase": self.phase,
            "changed": self.changed,
            "dry_run": self.dry_run,
            "rolled_over": self.rolled_over,
            "warnings": list(self.warnings),
            "files": list(self.files),
            "backups": list(self.backups),
            "mapping": dict(self.mapping),
            **self.details,
        }


@dataclass(slots=True)
class RenumberPlan:
    """Everything a renumber touches, computed once for preview and execution."""

    mapping: List[Tuple[int, int]]
    companions: List[Tuple[Path, Path]] = field(default_factory=list)
    spec_dirs: List[Tuple[Path, Path]] = field(default_factory=list)
    state_number: Optional[Tuple[str, str]] = None

    @property
    def changes(self) -> Dict[int, int]:
        return {old: new for old, new in self.mapping if old != new}

    @property
    def labels(self) -> Dict[str, str]:
        return {format_phase(old): format_phase(new) for old, new in self.changes.items()}

    def files(self, roadmap: Path, state: Path) -> List[str]:
        files = [str(roadmap)] if self.changes else []
        files.extend(f"{source} -> {target}" for source, target in self.companions)
        files.extend(f"{source} -> {target}" for source, target in self.spec_dirs)
        if self.state_number:
            files.append(str(state))
        return files

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "mapping": [
                {"old": format_phase(old), "new": format_phase(new), "changed": old != new}
                for old, new in self.mapping
            ],
            "companions": [[str(a), str(b)] for a, b in self.companions],
            "spec_dirs": [[str(a), str(b)] for a, b in self.spec_dirs],
            "state_number": list(self.state_number) if self.state_number else None,
        }


class PhaseRegistry:
    """Insert, defer, restore, renumber and update phases in ROADMAP.md."""

    def __init__(
        self,
        config: RegistryConfig,
        clock: Callable[[], date] = date.today,
        writer: Optional[AtomicWriter] = None,
    ):
        self.config = config
        self.clock = clock
        self.codec = TableCodec(config.phase_width)
        self.locator = SectionLocator(config)
        self.writer = writer or AtomicWriter(config.backup_dir)
        self.state = StateStore(config, self.writer)

    # ------------------------------------------------------------------
    # Loading and writing
    # ------------------------------------------------------------------

    def load(self, codec: Optional[TableCodec] = None) -> RoadmapDocument:
        path = self.config.roadmap_path
        if not path.exists():
            raise DocumentNotFound(
                f"Roadmap not found: {path}",
                suggestion="Create ROADMAP.md with a '| Phase | Name | Status | Gate |' table",
            )
        return RoadmapDocument.parse(path.read_text(encoding="utf-8"), codec or self.codec)

    def lock(self) -> RegistryLock:
        return RegistryLock(self.config.lock_path, self.config.lock_timeout)

    def _today(self) -> str:
        return self.clock().isoformat()

    def _stage_document(self, transaction: Transaction, document: RoadmapDocument, backup: bool = False) -> None:
        document.normalize()
        validator = DocumentValidator(document.codec, len(document.records))
        transaction.write(self.config.roadmap_path, document.render(), validator, backup=backup)

    def _resolve_anchor(self, document: RoadmapDocument, after: Union[str, int]) -> int:
        try:
            return resolve_number(after, document.numbers)
        except PhaseNotFound as exc:
            raise AnchorNotFound(
                f"Phase {after} not found; cannot place a phase after it",
                phase=str(after),
                suggestion="List phases with: specflow roadmap status",
            ) from exc

    def _allocate(self, anchor: int, used: set) -> Allocation:
        allocation = next_in_decade(anchor, used, self.config.allow_rollover)
        if allocation.rolled_over:
            logger.warning(allocation.warning)
        return allocation

    def _detail_mode(self, detail: str) -> str:
        if detail not in DETAIL_MODES:
            raise ValueError(f"detail must be one of {sorted(DETAIL_MODES)}")
        if detail == "auto":
            return "file" if self.locator.has_companions() else "inline"
        return detail

    def _attach_detail(self, document: RoadmapDocument, record: PhaseRecord) -> None:
        if document.section(record.number) is not None:
            record.detail = DetailRef.inline()
            return
        path = self.locator.find_companion(record.number, fuzzy=False)
        if path is not None:
            record.detail = DetailRef.file(path)

    # ------------------------------------------------------------------
    # Insert / defer / restore
    # ------------------------------------------------------------------

    @log_performance("insert_phase")
    def insert(
        self, after: Union[str, int], name: str, gate: str = "", detail: str = "auto"
    ) -> MutationResult:
        """Add a NotStarted phase in the first free slot after ``after``."""
        name = name.strip() if name else ""
        if not name:
            raise ValueError("Phase name cannot be empty")
        mode = self._detail_mode(detail)

        with log_operation("insert_phase", after=str(after), name=name), self.lock():
            document = self.load()
            anchor = self._resolve_anchor(document, after)
            allocation = self._allocate(anchor, document.used_numbers())
            record = PhaseRecord(allocation.number, name, PhaseStatus.NOT_STARTED, gate.strip())

            with Transaction(self.writer) as transaction:
                if mode == "file":
                    companion = CompanionFile.create(
                        self.config.phases_dir, record.number, name, record.gate, today=self.clock()
                    )
                    transaction.write(companion.path, companion.render())
                    record.detail = DetailRef.file(companion.path)
                elif mode == "inline":
                    body = ["**Goal**: ", ""]
                    if record.gate:
                        body.extend([f"**Verification Gate**: {record.gate}", ""])
                    document.add_section(Section.new(record.number, name, body))
                    record.detail = DetailRef.inline()
                document.add_record(record)
                self._stage_document(transaction, document)
                files = transaction.changed_paths()
                transaction.commit()

        logger.info(f"Inserted phase {record.label} '{name}' after {format_phase(anchor)}")
        log_phase_inserted(record.label, format_phase(anchor), rolled_over=allocation.rolled_over)
        return MutationResult(
            "insert",
            phase=record.label,
            rolled_over=allocation.rolled_over,
            warnings=[allocation.warning] if allocation.warning else [],
            files=files,
            details={"record": record.to_dict(), "after": format_phase(anchor)},
        )

    @log_performance("defer_phase")
    def defer(self, number: Union[str, int], force: bool = False, reason: str = "") -> MutationResult:
        """Move a phase and its detail into the backlog."""
        with log_operation("defer_phase", phase=str(number), force=force), self.lock():
            document = self.load()
            resolved = resolve_number(number, document.numbers)
            record = document.record(resolved)
            if record.status in ACTIVE_STATUSES and not force:
                raise PhaseInProgress(
                    f"Phase {record.label} is {record.status.label.lower()}; deferring it would "
                    "shelve in-flight work",
                    phase=record.label,
                    suggestion=f"Use force: specflow roadmap defer {record.label} --force",
                )

            document.remove_record(resolved)
            backlog = document.ensure_backlog()
            backlog.deferred.append(
                DeferredPhase(resolved, record.name, self._today(), reason.strip(), record.gate)
            )
            backlog.deferred.sort(key=lambda entry: entry.original_number)
            backlog.dirty = True

            with Transaction(self.writer) as transaction:
                section = document.remove_section(resolved)
                if section is not None:
                    backlog.add_section(section)
                companion = self.locator.find_companion(resolved, fuzzy=False)
                if companion is not None:
                    transaction.rename(companion, self.config.deferred_dir / companion.name)
                self._stage_document(transaction, document)
                files = transaction.changed_paths()
                transaction.commit()

        logger.info(f"Deferred phase {record.label} to backlog")
        log_phase_deferred(record.label, force, reason=reason)
        warnings = []
        if force and record.status in ACTIVE_STATUSES:
            warnings.append(f"Phase {record.label} was {record.status.label.lower()} when deferred")
        return MutationResult(
            "defer",
            phase=record.label,
            warnings=warnings,
            files=files,
            details={"deferred_date": self._today(), "reason": reason.strip()},
        )

    @log_performance("restore_phase")
    def restore(
        self,
        number: Union[str, int],
        after: Optional[Union[str, int]] = None,
        as_number: Optional[Union[str, int]] = None,
    ) -> MutationResult:
        """Bring a deferred phase back into the table as NotStarted.

        Number resolution: ``as_number`` verbatim, else the first free slot
        after ``after``, else the original number, else the first free slot
        after the original number.
        """
        if after is not None and as_number is not None:
            raise ValueError("Pass either 'after' or 'as_number', not both")

        with log_operation("restore_phase", phase=str(number)), self.lock():
            document = self.load()
            backlog = document.backlog
            if backlog is None or not backlog.deferred:
                raise PhaseNotFound(
                    f"Phase {number} is not in the backlog (no deferred phases)",
                    phase=str(number),
                    suggestion="List the backlog with: specflow backlog list",
                )
            original = resolve_number(number, backlog.numbers)
            entry = backlog.entry(original)
            # The original number stays taken if an active row reuses it.
            used = set(document.numbers) | (set(backlog.numbers) - {original})

            allocation = None
            if as_number is not None:
                target = parse_phase(as_number)
                if target in used:
                    raise NumberInUse(
                        f"Phase number {format_phase(target)} is already in use",
                        phase=format_phase(target),
                        suggestion=f"Pick a free number or use: specflow roadmap restore {entry.label} --after <phase>",
                    )
            elif after is not None:
                allocation = self._allocate(self._resolve_anchor(document, after), used)
                target = allocation.number
            elif original not in used:
                target = original
            else:
                allocation = self._allocate(original, used)
                target = allocation.number

            record = PhaseRecord(target, entry.name, PhaseStatus.NOT_STARTED, entry.gate)
            backlog.deferred.remove(entry)
            backlog.dirty = True

            with Transaction(self.writer) as transaction:
                section = backlog.remove_section(original)
                document.prune_backlog()
                if section is not None:
                    section.set_number(target)
                    document.add_section(section)
                    record.detail = DetailRef.inline()
                else:
                    companion = self.locator.find_companion(original, self.config.deferred_dir, fuzzy=False)
                    if companion is not None:
                        detail = CompanionFile.load(companion)
                        if target != original:
                            detail.renumber({entry.label: record.label})
                        detail.set_status(PhaseStatus.NOT_STARTED, self.clock())
                        transaction.write(companion, detail.render())
                        destination = self.config.phases_dir / detail.path.name
                        transaction.rename(companion, destination)
                        record.detail = DetailRef.file(destination)
                document.add_record(record)
                self._stage_document(transaction, document)
                files = transaction.changed_paths()
                transaction.commit()

        rolled_over = bool(allocation and allocation.rolled_over)
        logger.info(f"Restored phase {entry.label} as {record.label}")
        log_phase_restored(record.label, entry.label, rolled_over=rolled_over)
        return MutationResult(
            "restore",
            phase=record.label,
            rolled_over=rolled_over,
            warnings=[allocation.warning] if allocation and allocation.warning else [],
            files=files,
            details={"original_number": entry.label, "record": record.to_dict()},
        )

    # ------------------------------------------------------------------
    # Renumber
    # ------------------------------------------------------------------

    def plan_renumber(self, document: RoadmapDocument, start: int = 10, step: int = 10) -> RenumberPlan:
        """old -> new mapping in table order, plus every file it touches."""
        if start < 0:
            raise ValueError("start must be zero or greater")
        if step < 1:
            raise ValueError("step must be at least 1")

        records = document.records
        mapping: List[Tuple[int, int]] = []
        for index, record in enumerate(records):
            new = start + index * step
            if new > PHASE_MAX:
                raise ValueError(
                    f"Renumbering {len(records)} phases from {start} by {step} would exceed {PHASE_MAX}"
                )
            mapping.append((record.number, new))

        plan = RenumberPlan(mapping)
        deferred = set(document.backlog_numbers)
        for old, new in plan.changes.items():
            if new in deferred:
                raise NumberInUse(
                    f"Renumbering {format_phase(old)} to {format_phase(new)} collides with a deferred phase",
                    phase=format_phase(new),
                    suggestion="Choose another --start/--step, or restore or clear the deferred phase first",
                )

        for old, new in plan.changes.items():
            companion = self.locator.find_companion(old, fuzzy=False)
            if companion is not None:
                rest = companion.name.split("-", 1)[1]
                plan.companions.append((companion, companion.with_name(f"{format_phase(new)}-{rest}")))
            if self.config.specs_dir.is_dir():
                for directory in sorted(self.config.specs_dir.glob(f"{format_phase(old)}-*")):
                    if directory.is_dir():
                        rest = directory.name.split("-", 1)[1]
                        plan.spec_dirs.append((directory, directory.with_name(f"{format_phase(new)}-{rest}")))

        state = self.state.load_optional()
        current = get_value(state or {}, "orchestration.phase.number")
        if current not in (None, ""):
            try:
                current_number = parse_phase(str(current))
            except ValueError:
                current_number = None
            if current_number in plan.changes:
                plan.state_number = (str(current), format_phase(plan.changes[current_number]))
        return plan

    @log_performance("renumber_phases")
    def renumber(self, start: int = 10, step: int = 10, dry_run: bool = False) -> MutationResult:
        """Reassign ``start, start+step, ...`` in table order."""
        with log_operation("renumber_phases", start=start, step=step, dry_run=dry_run), self.lock():
            document = self.load()
            plan = self.plan_renumber(document, start, step)
            labels = plan.labels
            files = plan.files(self.config.roadmap_path, self.config.state_path)

            if dry_run or not labels:
                log_phases_renumbered(labels, dry_run=True)
                return MutationResult(
                    "renumber",
                    changed=False,
                    dry_run=dry_run,
                    mapping=labels,
                    files=files,
                    details={"plan": plan.to_dict()},
                )

            changes = plan.changes
            for record in document.records:
                if record.number in changes:
                    record.number = changes[record.number]
            for section in document.sections:
                if section.number in changes:
                    section.set_number(changes[section.number])

            with Transaction(self.writer) as transaction:
                for source, target in plan.companions:
                    detail = CompanionFile.load(source)
                    detail.renumber(labels)
                    transaction.write(source, detail.render())
                    transaction.rename(source, target)
                for source, target in plan.spec_dirs:
                    for path in sorted(source.rglob("*.md")):
                        text = path.read_text(encoding="utf-8")
                        updated = replace_numbers(text, labels)
                        if updated != text:
                            transaction.write(path, updated)
                    transaction.rename(source, target)
                if plan.state_number:
                    data = self.state.load()
                    self._renumber_state(data, plan.state_number[0], plan.state_number[1])
                    self.state.save(data, transaction, backup=True)
                self._stage_document(transaction, document, backup=True)
                backups = transaction.commit()

        logger.info(f"Renumbered {len(labels)} phases")
        log_phases_renumbered(labels, dry_run=False)
        return MutationResult(
            "renumber",
            mapping=labels,
            files=files,
            backups=[str(path) for path in backups],
            details={"plan": plan.to_dict()},
        )

    @staticmethod
    def _renumber_state(data: Dict[str, Any], old: str, new: str) -> None:
        set_value(data, "orchestration.phase.number", new)
        branch = get_value(data, "orchestration.phase.branch")
        if isinstance(branch, str) and branch.startswith(f"{old}-"):
            set_value(data, "orchestration.phase.branch", new + branch[len(old):])

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @log_performance("update_status")
    def update_status(self, number: Union[str, int], status: Union[str, PhaseStatus]) -> MutationResult:
        """Rewrite one row's status. Setting the current status is a no-op."""
        if not isinstance(status, PhaseStatus):
            status = PhaseStatus.from_text(status)

        with log_operation("update_status", phase=str(number), status=status.value), self.lock():
            document = self.load()
            resolved = resolve_number(number, document.numbers)
            record = document.record(resolved)
            previous = record.status
            if previous == status:
                log_status_updated(record.label, status.value, changed=False)
                return MutationResult("update_status", phase=record.label, changed=False,
                                      details={"status": status.value, "previous": previous.value})

            record.status = status
            with Transaction(self.writer) as transaction:
                companion = self.locator.find_companion(resolved, fuzzy=False)
                if companion is not None:
                    detail = CompanionFile.load(companion)
                    detail.set_status(status, self.clock())
                    transaction.write(companion, detail.render())
                self._stage_document(transaction, document)
                files = transaction.changed_paths()
                transaction.commit()

        logger.info(f"Phase {record.label} status {previous.value} -> {status.value}")
        log_status_updated(record.label, status.value, changed=True, previous=previous.value)
        return MutationResult(
            "update_status",
            phase=record.label,
            files=files,
            details={"status": status.value, "previous": previous.value},
        )

    # ------------------------------------------------------------------
    # Archive and backlog
    # ------------------------------------------------------------------

    @log_performance("archive_phase")
    def archive(self, number: Union[str, int]) -> MutationResult:
        """Move a phase's detail into the history file. The table row stays."""
        with log_operation("archive_phase", phase=str(number)), self.lock():
            document = self.load()
            resolved = resolve_number(number, document.numbers)
            record = document.record(resolved)
            section = document.section(resolved)
            companion = self.locator.find_companion(resolved, fuzzy=False)
            if section is None and companion is None:
                raise PhaseNotFound(
                    f"Phase {record.label} has no detail section or companion file to archive",
                    phase=record.label,
                    suggestion=f"Check with: specflow roadmap show {record.label}",
                )

            if section is not None:
                content = section.content()
            else:
                body = CompanionFile.load(companion).body.splitlines()
                if body and body[0].startswith("# "):
                    body = body[1:]
                content = body
            entry = [
                f"## {record.label} - {record.name}",
                "",
                f"**Completed**: {self._today()}",
                "",
                *_strip_blank_edges(content),
                "",
            ]

            history_path = self.config.history_path
            history = history_path.read_text(encoding="utf-8") if history_path.exists() else HISTORY_TEMPLATE

            with Transaction(self.writer) as transaction:
                transaction.write(history_path, _insert_history_entry(history, entry))
                if section is not None:
                    document.remove_section(resolved)
                    record.detail = DetailRef.none()
                    self._stage_document(transaction, document)
                if companion is not None:
                    transaction.remove(companion)
                files = transaction.changed_paths()
                transaction.commit()

        warnings = []
        if record.status != PhaseStatus.COMPLETE:
            warnings.append(f"Phase {record.label} is archived while {record.status.label.lower()}")
        logger.info(f"Archived phase {record.label} to {history_path}")
        observability_hooks.log_registry_event("phase_archived", phase=record.label, history=str(history_path))
        return MutationResult("archive", phase=record.label, warnings=warnings, files=files)

    @log_performance("add_backlog_note")
    def add_note(self, text: str, priority: str = "P2", notes: str = "") -> MutationResult:
        text = text.strip() if text else ""
        if not text:
            raise ValueError("Backlog item text cannot be empty")
        priority = priority.strip().upper()
        if priority not in NOTE_PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(NOTE_PRIORITIES)}")

        with log_operation("add_backlog_note", priority=priority), self.lock():
            document = self.load()
            backlog = document.ensure_backlog()
            note = BacklogNote(text, priority, notes.strip(), self._today())
            backlog.notes.append(note)
            backlog.dirty = True
            with Transaction(self.writer) as transaction:
                self._stage_document(transaction, document)
                transaction.commit()

        observability_hooks.log_registry_event("backlog_note_added", priority=priority, text=text)
        return MutationResult("add_note", details={"note": note.to_dict()})

    def list_backlog(self) -> Dict[str, Any]:
        document = self.load()
        backlog = document.backlog
        if backlog is None:
            return {"deferred": [], "notes": []}
        return {
            "deferred": [entry.to_dict() for entry in backlog.deferred],
            "notes": [note.to_dict() for note in backlog.notes],
        }

    @log_performance("clear_backlog")
    def clear_backlog(self, include_deferred: bool = False) -> MutationResult:
        """Drop every note; deferred phases and their detail only when asked."""
        with log_operation("clear_backlog", include_deferred=include_deferred), self.lock():
            document = self.load()
            backlog = document.backlog
            if backlog is None or not (backlog.notes or (include_deferred and backlog.deferred)):
                return MutationResult("clear_backlog", changed=False,
                                      details={"cleared_notes": 0, "cleared_deferred": 0})

            cleared_notes = len(backlog.notes)
            cleared_deferred = 0
            backlog.notes = []
            with Transaction(self.writer) as transaction:
                if include_deferred:
                    cleared_deferred = len(backlog.deferred)
                    for entry in backlog.deferred:
                        companion = self.locator.find_companion(
                            entry.original_number, self.config.deferred_dir, fuzzy=False
                        )
                        if companion is not None:
                            transaction.remove(companion)
                    backlog.deferred = []
                    backlog.clear_sections()
                backlog.dirty = True
                document.prune_backlog()
                self._stage_document(transaction, document)
                files = transaction.changed_paths()
                transaction.commit()

        logger.info(f"Cleared {cleared_notes} notes and {cleared_deferred} deferred phases")
        return MutationResult(
            "clear_backlog",
            files=files,
            details={"cleared_notes": cleared_notes, "cleared_deferred": cleared_deferred},
        )

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    @log_performance("migrate_roadmap")
    def migrate(self, dry_run: bool = False) -> MutationResult:
        """Convert a 3-digit roadmap to 4-digit numbers (``n -> n*10``)."""
        legacy_codec = TableCodec(self.config.legacy_width)
        with log_operation("migrate_roadmap", dry_run=dry_run), self.lock():
            document = self.load(legacy_codec)
            current = self.load()
            if document.records and current.records:
                raise ValidationFailed(
                    "Roadmap mixes 3-digit and 4-digit phase numbers; refusing to migrate",
                    suggestion="Convert the remaining rows by hand, then run: specflow roadmap validate",
                )
            if not document.records:
                return MutationResult(
                    "migrate", changed=False, dry_run=dry_run,
                    warnings=[] if current.records else ["No phases found to migrate"],
                    details={"message": "Roadmap already uses 4-digit phase numbers"},
                )

            mapping = {
                format_phase(record.number, self.config.legacy_width): format_phase(record.number * 10)
                for record in document.records
            }
            for entry in (document.backlog.deferred if document.backlog else []):
                mapping[format_phase(entry.original_number, self.config.legacy_width)] = format_phase(
                    entry.original_number * 10
                )
            state = self.state.load_optional()
            state_number = get_value(state or {}, "orchestration.phase.number")
            state_change = None
            if state_number not in (None, "") and str(state_number) in mapping:
                state_change = (str(state_number), mapping[str(state_number)])

            files = [str(self.config.roadmap_path)] + ([str(self.config.state_path)] if state_change else [])
            if dry_run:
                return MutationResult("migrate", changed=False, dry_run=True, mapping=mapping, files=files)

            for record in document.records:
                record.number *= 10
            for section in document.sections:
                section.set_number(section.number * 10)
            if document.backlog is not None:
                for entry in document.backlog.deferred:
                    entry.original_number *= 10
                for section in document.backlog.sections:
                    section.set_number(section.number * 10)
                document.backlog.dirty = True
            document.codec = self.codec
            document.backlog_codec = BacklogCodec(self.codec.width)

            with Transaction(self.writer) as transaction:
                if state_change:
                    self._renumber_state(state, *state_change)
                    self.state.save(state, transaction, backup=True)
                self._stage_document(transaction, document, backup=True)
                backups = transaction.commit()

        logger.info(f"Migrated {len(mapping)} phase numbers to {self.config.phase_width} digits")
        return MutationResult(
            "migrate", mapping=mapping, files=files, backups=[str(path) for path in backups]
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def validate(self) -> Dict[str, Any]:
        """Check the roadmap without changing it."""
        try:
            document = self.load()
        except ValidationFailed as exc:
            return {"valid": False, "errors": [exc.message], "warnings": [], "phase_count": 0}

        errors = document_problems(document)
        if not document.records:
            errors.append("Phase table has no phases")

        warnings = [str(warning) for warning in document.warnings]
        for record in document.records:
            if document.section(record.number) is None and self.locator.find_companion(
                record.number, fuzzy=False
            ) is None:
                warnings.append(f"Phase {record.label} has no detail section")
        active = [record.label for record in document.records if record.status == PhaseStatus.IN_PROGRESS]
        if len(active) > 1:
            warnings.append(f"More than one phase in progress: {', '.join(active)}")

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "phase_count": len(document.records),
        }

    def show(self, number: Union[str, int]) -> Dict[str, Any]:
        """Detail text of a phase, wherever it lives."""
        document = self.load()
        lines = document.lines()
        location = self.locator.locate(number, lines)
        if location is None:
            raise PhaseNotFound(
                f"No detail found for phase {number}",
                phase=str(number),
                suggestion="Check the number with: specflow roadmap status",
            )
        return {
            "phase": format_phase(location.number),
            "location": location.to_dict(),
            "content": self.locator.extract(location, lines),
        }

    def records(self) -> List[PhaseRecord]:
        document = self.load()
        records = document.records
        for record in records:
            self._attach_detail(document, record)
        return records

    def next_phase(self) -> Optional[PhaseRecord]:
        for record in self.records():
            if record.status == PhaseStatus.NOT_STARTED:
                return record
        return None

    def current_phase(self) -> Optional[PhaseRecord]:
        for record in self.records():
            if record.status in ACTIVE_STATUSES:
                return record
        return None

    def document_status(self, number: Union[str, int]) -> Optional[PhaseStatus]:
        """Status column for a phase, ``None`` when it is not in the table."""
        document = self.load()
        try:
            resolved = resolve_number(number, document.numbers)
        except PhaseNotFound:
            return None
        return document.record(resolved).status

    def summary(self) -> Dict[str, Any]:
        document = self.load()
        records = document.records
        for record in records:
            self._attach_detail(document, record)
        counts = {status.value: 0 for status in PhaseStatus}
        for record in records:
            counts[record.status.value] += 1
        total = len(records)
        complete = counts[PhaseStatus.COMPLETE.value]
        next_record = next((r for r in records if r.status == PhaseStatus.NOT_STARTED), None)
        current = next((r for r in records if r.status in ACTIVE_STATUSES), None)
        backlog = document.backlog
        return {
            "total": total,
            "counts": counts,
            "percentage": int(complete * 100 / total) if total else 0,
            "current": current.to_dict() if current else None,
            "next": next_record.to_dict() if next_record else None,
            "phases": [record.to_dict() for record in records],
            "backlog": {
                "deferred": len(backlog.deferred) if backlog else 0,
                "notes": len(backlog.notes) if backlog else 0,
            },
            "warnings": [str(warning) for warning in document.warnings],
        }


def _strip_blank_edges(lines: List[str]) -> List[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _insert_history_entry(history: str, entry: List[str]) -> str:
    """Newest first: directly below the first horizontal rule."""
    lines = history.splitlines()
    rule = next((index for index, line in enumerate(lines) if is_rule(line)), None)
    if rule is None:
        return "\n".join(_strip_blank_edges(lines) + [""] + entry) + "\n"
    after = _strip_blank_edges(lines[rule + 1:])
    combined = lines[: rule + 1] + [""] + entry
    if after:
        combined += after
    return "\n".join(_strip_blank_edges(combined)) + "\n"

