"""Unit tests for PhaseRegistry mutations and views."""

import json
from datetime import datetime

import pytest

from specflow.atomic import AtomicWriter
from specflow.companion import CompanionFile
from specflow.config import RegistryConfig
from specflow.errors import (
    AnchorNotFound,
    DecadeExhausted,
    DocumentNotFound,
    NumberInUse,
    PhaseInProgress,
    PhaseNotFound,
)
from specflow.models import PhaseStatus
from specflow.registry import PhaseRegistry
from specflow.specflow_logging import observability_hooks

from tests.support import SAMPLE_ROADMAP, TODAY, write_roadmap, write_state

TABLE_HEAD = "# Roadmap\n\n| Phase | Name | Status | Gate |\n|-------|------|--------|------|\n"

RULED_ROWS = (
    "| 0010 | Core | ✅ Complete | |\n"
    "| 0020 | Storage | ⬜ Not Started | |\n"
    "| 0030 | CLI | ⬜ Not Started | |\n"
)

RULED = TABLE_HEAD + RULED_ROWS + (
    "\n"
    "### 0010 - Core\n\n**Goal**: Engine.\n\n---\n\n"
    "### 0020 - Storage\n\n**Goal**: Persist data.\n\n---\n\n"
    "### 0030 - CLI\n\n**Goal**: Command line.\n\n---\n"
)

DETAILS_BELOW_BACKLOG = TABLE_HEAD + RULED_ROWS + (
    "\n"
    "## Backlog\n\n"
    "### Ideas\n\n"
    "| Item | Priority | Added | Notes |\n"
    "|------|----------|-------|-------|\n"
    "| Dark mode | P3 | 2026-01-03 | |\n"
    "\n"
    "## Phase Details\n\n"
    "### 0010 - Core\n\n**Goal**: Engine.\n\n"
    "### 0020 - Storage\n\n**Goal**: Persist data.\n\n"
    "### 0030 - CLI\n\n**Goal**: Command line.\n"
)

NOTES_WITH_PROSE = SAMPLE_ROADMAP + (
    "\n"
    "## Backlog\n\n"
    "### Ideas\n\n"
    "| Item | Priority | Added | Notes |\n"
    "|------|----------|-------|-------|\n"
    "| Dark mode | P3 | 2026-01-03 | |\n"
    "\n"
    "Keep this paragraph: reviewed every sprint.\n"
    "\n"
    "### Decisions\n"
    "\n"
    "Anything agreed at planning goes here.\n"
)


def roadmap_text(project):
    return project.roadmap_path.read_text(encoding="utf-8")


def fresh_registry(config):
    writer = AtomicWriter(config.backup_dir, clock=lambda: datetime(2026, 1, 15, 12, 0, 0))
    return PhaseRegistry(config, clock=lambda: TODAY, writer=writer)


class TestInsert:
    """Test cases for inserting phases."""

    def test_insert_after_anchor(self, project, registry):
        """A new phase takes the first free slot in the anchor's decade."""
        result = registry.insert("10", "Caching")

        assert result.phase == "0011"
        assert result.rolled_over is False
        assert result.details["after"] == "0010"
        document = registry.load()
        assert document.numbers == [10, 11, 20, 30]
        assert [section.number for section in document.sections] == [10, 11, 20, 30]
        text = roadmap_text(project)
        assert "| 0011 | Caching | ⬜ Not Started | |" in text
        assert "### 0011 - Caching\n\n**Goal**: \n\n### 0020 - Storage Layer" in text

    def test_insert_skips_taken_slots(self, registry):
        """Repeated inserts walk forward through the decade."""
        registry.insert("10", "A")
        assert registry.insert("10", "B").phase == "0012"

    def test_unknown_anchor(self, project, registry):
        """An unknown anchor fails without touching the file."""
        with pytest.raises(AnchorNotFound) as exc_info:
            registry.insert("99", "Orphan")
        assert exc_info.value.suggestion
        assert roadmap_text(project) == SAMPLE_ROADMAP

    def test_empty_name(self, registry):
        """Names are required."""
        with pytest.raises(ValueError, match="cannot be empty"):
            registry.insert("10", "  ")

    def test_full_decade_rolls_over(self, project, registry):
        """A full decade rolls over to the next primary slot with a warning."""
        rows = "".join(f"| {n:04d} | Phase {n} | ⬜ Not Started | |\n" for n in range(10, 20))
        write_roadmap(project.root, TABLE_HEAD + rows + "| 0030 | Later | ⬜ Not Started | |\n")

        result = registry.insert("15", "Overflow")

        assert result.phase == "0020"
        assert result.rolled_over is True
        assert result.warnings == ["Decade 001x is full; rolled over to 0020"]
        assert 20 in registry.load().numbers

    def test_rollover_disallowed(self, project):
        """With rollover off a full decade is an error."""
        rows = "".join(f"| {n:04d} | Phase {n} | ⬜ Not Started | |\n" for n in range(10, 20))
        write_roadmap(project.root, TABLE_HEAD + rows)
        registry = fresh_registry(RegistryConfig(root=project.root, allow_rollover=False))

        with pytest.raises(DecadeExhausted):
            registry.insert("19", "Overflow")

    def test_insert_with_companion_file(self, project, registry):
        """File detail mode writes a companion file instead of a section."""
        result = registry.insert("10", "Caching", gate="Benchmarks", detail="file")

        path = project.phases_dir / "0011-caching.md"
        assert path.exists()
        companion = CompanionFile.load(path)
        assert companion.meta["phase"] == "0011"
        assert "**Verification Gate**: Benchmarks" in companion.body
        assert "### 0011" not in roadmap_text(project)
        assert result.details["record"]["detail"]["kind"] == "file"

    def test_auto_detail_follows_existing_companions(self, project, registry):
        """Auto mode uses files once the project has companion files."""
        registry.insert("10", "Caching", detail="file")
        registry.insert("20", "Indexes")
        assert (project.phases_dir / "0021-indexes.md").exists()

    def test_bad_detail_mode(self, registry):
        """Only the known detail modes are accepted."""
        with pytest.raises(ValueError, match="detail must be one of"):
            registry.insert("10", "X", detail="sidecar")

    def test_insert_event(self, registry):
        """Inserting fires the phase_inserted hook."""
        seen = []
        observability_hooks.register_hook("phase_inserted", lambda **data: seen.append(data))
        registry.insert("10", "Caching")
        assert seen[0]["phase"] == "0011"
        assert seen[0]["after"] == "0010"


class TestDeferAndRestore:
    """Test cases for moving phases to and from the backlog."""

    def test_defer_in_progress_needs_force(self, project, registry):
        """In-flight phases are protected."""
        with pytest.raises(PhaseInProgress) as exc_info:
            registry.defer("20")
        assert "--force" in exc_info.value.suggestion
        assert roadmap_text(project) == SAMPLE_ROADMAP

    def test_forced_defer(self, project, registry):
        """The row and its section move to the backlog."""
        result = registry.defer("20", force=True, reason="Blocked")

        assert result.phase == "0020"
        assert result.details == {"deferred_date": "2026-01-15", "reason": "Blocked"}
        assert result.warnings == ["Phase 0020 was in progress when deferred"]
        document = registry.load()
        assert document.numbers == [10, 30]
        assert document.section(20) is None
        assert document.backlog.numbers == [20]
        assert document.backlog.section(20) is not None
        assert (
            "| 0020 | Storage Layer | USER GATE: demo persistence | 2026-01-15 | Blocked |"
            in roadmap_text(project)
        )

    def test_defer_not_started(self, registry):
        """Phases that have not started defer without force."""
        result = registry.defer("30")
        assert result.warnings == []
        assert registry.load().backlog.numbers == [30]

    def test_defer_moves_companion(self, project, registry):
        """Companion files move to the deferred directory."""
        registry.insert("30", "Extras", detail="file")
        registry.defer("31")
        assert not (project.phases_dir / "0031-extras.md").exists()
        assert (project.deferred_dir / "0031-extras.md").exists()

    def test_restore_original_number(self, project, registry):
        """A restored phase comes back NotStarted under its old number."""
        registry.defer("20", force=True)
        result = registry.restore("20")

        assert result.phase == "0020"
        assert result.details["original_number"] == "0020"
        document = registry.load()
        assert document.numbers == [10, 20, 30]
        assert document.record(20).status == PhaseStatus.NOT_STARTED
        assert document.record(20).gate == "USER GATE: demo persistence"
        assert document.section(20) is not None
        assert document.backlog is None
        assert "## Backlog" not in roadmap_text(project)

    def test_defer_and_restore_keep_rules(self, project, registry):
        """Sections separated by rules come back exactly as they were."""
        write_roadmap(project.root, RULED)

        registry.defer("20")
        deferred = roadmap_text(project)
        assert "### 0020 - Storage" in deferred.split("## Backlog")[1]
        assert "---\n\n---" not in deferred

        registry.restore("20")
        assert roadmap_text(project) == RULED

    def test_insert_after_defer_keeps_single_rules(self, project, registry):
        """A section inserted into a ruled roadmap does not double up rules."""
        write_roadmap(project.root, RULED)

        registry.defer("20")
        registry.insert("10", "Caching")

        text = roadmap_text(project)
        assert "---\n\n---" not in text
        assert "**Goal**: Engine.\n\n---\n\n### 0011 - Caching\n\n**Goal**: \n\n---\n\n### 0030 - CLI" in text

    def test_defer_with_details_below_backlog(self, project, registry):
        """Detail sections after the backlog move into it and back."""
        write_roadmap(project.root, DETAILS_BELOW_BACKLOG)

        registry.defer("20")
        document = registry.load()
        assert document.section(20) is None
        assert document.backlog.section(20) is not None
        text = roadmap_text(project)
        assert text.count("**Goal**: Persist data.") == 1
        assert text.index("### 0020 - Storage") < text.index("## Phase Details")

        registry.restore("20")
        assert roadmap_text(project) == DETAILS_BELOW_BACKLOG

    def test_insert_with_details_below_backlog(self, project, registry):
        """New sections join their siblings below the backlog."""
        write_roadmap(project.root, DETAILS_BELOW_BACKLOG)

        registry.insert("10", "Caching")

        text = roadmap_text(project)
        assert "**Goal**: Engine.\n\n### 0011 - Caching\n\n**Goal**: \n\n### 0020 - Storage" in text
        assert registry.validate()["valid"] is True

    def test_restore_when_number_reused(self, project, registry):
        """An active row with the same number pushes the restore to a free slot."""
        write_roadmap(project.root, TABLE_HEAD + (
            "| 0010 | Core | ✅ Complete | |\n"
            "| 0040 | Reused | ⬜ Not Started | |\n"
            "\n"
            "## Backlog\n"
            "\n"
            "### Deferred Phases\n"
            "\n"
            "| Phase | Name | Gate | Deferred | Reason |\n"
            "|-------|------|------|----------|--------|\n"
            "| 0040 | Plugins | | 2026-01-02 | |\n"
        ))

        result = registry.restore("40")

        assert result.phase == "0041"
        assert registry.load().numbers == [10, 40, 41]

    def test_restore_after_anchor(self, registry):
        """``after`` places the phase in the anchor's decade."""
        registry.defer("30")
        assert registry.restore("30", after="10").phase == "0011"

    def test_restore_as_number_in_use(self, registry):
        """An explicit number must be free."""
        registry.defer("30")
        with pytest.raises(NumberInUse):
            registry.restore("30", as_number="0020")

    def test_restore_rejects_both_options(self, registry):
        """``after`` and ``as_number`` are exclusive."""
        with pytest.raises(ValueError):
            registry.restore("30", after="10", as_number="0050")

    def test_restore_empty_backlog(self, registry):
        """Restoring with nothing deferred is PhaseNotFound."""
        with pytest.raises(PhaseNotFound, match="not in the backlog"):
            registry.restore("20")


class TestRenumber:
    """Test cases for renumbering."""

    @pytest.fixture
    def gapped(self, project):
        write_roadmap(project.root, TABLE_HEAD + (
            "| 0010 | Core | ✅ Complete | |\n"
            "| 0025 | B | 🔄 In Progress | |\n"
            "| 0099 | X | ⬜ Not Started | |\n"
            "\n"
            "### 0025 - B\n"
            "\n"
            "Depends on 0010.\n"
        ))
        companion = CompanionFile.create(project.phases_dir, 99, "X", today=TODAY)
        project.phases_dir.mkdir(parents=True)
        companion.path.write_text(companion.render(), encoding="utf-8")
        spec_dir = project.specs_dir / "0025-b"
        spec_dir.mkdir(parents=True)
        (spec_dir / "spec.md").write_text("Phase 0025 work\n", encoding="utf-8")
        write_state(project, {
            "orchestration.phase.number": "0025",
            "orchestration.phase.branch": "0025-b",
        })
        return project

    def test_dry_run_matches_execution(self, gapped, registry):
        """The preview reports exactly what the real run does."""
        before = roadmap_text(gapped)
        preview = registry.renumber(dry_run=True)
        assert preview.changed is False
        assert roadmap_text(gapped) == before

        result = registry.renumber()
        assert preview.mapping == result.mapping == {"0025": "0020", "0099": "0030"}
        assert preview.files == result.files

    def test_renumber_updates_every_reference(self, gapped, registry):
        """Rows, sections, companions, spec directories and state all follow."""
        result = registry.renumber()

        document = registry.load()
        assert document.numbers == [10, 20, 30]
        assert [section.number for section in document.sections] == [20]

        assert not (gapped.phases_dir / "0099-x.md").exists()
        companion = CompanionFile.load(gapped.phases_dir / "0030-x.md")
        assert companion.meta["phase"] == "0030"
        assert companion.body.startswith("# Phase 0030: X")

        assert not (gapped.specs_dir / "0025-b").exists()
        assert (gapped.specs_dir / "0020-b" / "spec.md").read_text(encoding="utf-8") == "Phase 0020 work\n"

        state = json.loads(gapped.state_path.read_text(encoding="utf-8"))
        assert state["orchestration"]["phase"]["number"] == "0020"
        assert state["orchestration"]["phase"]["branch"] == "0020-b"

        assert len(result.backups) == 2
        assert sorted(p.name for p in gapped.backup_dir.iterdir()) == [
            "ROADMAP.md.20260115-120000.bak",
            "orchestration-state.json.20260115-120000.bak",
        ]

    def test_already_sequential(self, registry):
        """Nothing to do is reported as unchanged."""
        result = registry.renumber()
        assert result.changed is False
        assert result.mapping == {}

    def test_collision_with_deferred(self, project, registry):
        """Renumbering onto a deferred number is refused."""
        registry.defer("30")
        registry.insert("20", "Extra")
        with pytest.raises(NumberInUse):
            registry.renumber(start=10, step=10)

    def test_bad_step(self, registry):
        """Step must be positive."""
        with pytest.raises(ValueError, match="step"):
            registry.renumber(step=0)


class TestStatusAndArchive:
    """Test cases for status updates and archiving."""

    def test_update_status(self, project, registry):
        """Only the status cell changes."""
        result = registry.update_status("30", "done")
        assert result.changed is True
        assert result.details == {"status": "complete", "previous": "not_started"}
        assert roadmap_text(project) == SAMPLE_ROADMAP.replace(
            "| 0030 | CLI | ⬜ Not Started | |", "| 0030 | CLI | ✅ Complete | |"
        )

    def test_update_status_is_idempotent(self, project, registry):
        """Setting the current status again changes nothing."""
        registry.update_status("30", "complete")
        text = roadmap_text(project)
        again = registry.update_status("30", "complete")
        assert again.changed is False
        assert roadmap_text(project) == text

    def test_update_status_unknown(self, registry):
        """Unknown status names list the valid ones."""
        with pytest.raises(ValueError, match="valid: not_started"):
            registry.update_status("30", "paused")

    def test_update_status_syncs_companion(self, project, registry):
        """Companion front matter follows the row."""
        registry.insert("30", "Extras", detail="file")
        registry.update_status("31", "in_progress")
        assert CompanionFile.load(project.phases_dir / "0031-extras.md").meta["status"] == "in_progress"

    def test_archive_section(self, project, registry):
        """Archiving moves the section to the history file and keeps the row."""
        result = registry.archive("10")

        assert result.warnings == []
        history = project.history_path.read_text(encoding="utf-8")
        assert "## 0010 - Core Engine\n\n**Completed**: 2026-01-15\n\n**Goal**: Build the engine.\n" in history
        document = registry.load()
        assert document.numbers == [10, 20, 30]
        assert document.section(10) is None

    def test_archive_newest_first(self, project, registry):
        """Later archives go above earlier ones."""
        registry.archive("10")
        registry.archive("20")
        history = project.history_path.read_text(encoding="utf-8")
        assert history.index("## 0020") < history.index("## 0010")

    def test_archive_incomplete_warns(self, registry):
        """Archiving unfinished work is allowed with a warning."""
        result = registry.archive("20")
        assert result.warnings == ["Phase 0020 is archived while in progress"]

    def test_archive_without_detail(self, registry):
        """A phase with nothing to archive is an error."""
        registry.archive("10")
        with pytest.raises(PhaseNotFound, match="no detail"):
            registry.archive("10")


class TestBacklogNotes:
    """Test cases for backlog notes."""

    def test_add_and_list(self, registry):
        """Priorities are normalized to upper case."""
        result = registry.add_note("Dark mode", "p1", "Users asked")
        assert result.details["note"]["priority"] == "P1"
        backlog = registry.list_backlog()
        assert backlog["deferred"] == []
        assert backlog["notes"][0]["text"] == "Dark mode"
        assert backlog["notes"][0]["added_date"] == "2026-01-15"

    def test_bad_priority(self, registry):
        """Only P1, P2 and P3 are accepted."""
        with pytest.raises(ValueError, match="priority"):
            registry.add_note("Idea", "P9")

    def test_clear_keeps_deferred_by_default(self, registry):
        """Clearing drops notes but keeps deferred phases unless asked."""
        registry.add_note("Idea")
        registry.defer("30")

        result = registry.clear_backlog()
        assert result.details == {"cleared_notes": 1, "cleared_deferred": 0}
        assert registry.list_backlog()["notes"] == []
        assert len(registry.list_backlog()["deferred"]) == 1

        result = registry.clear_backlog(include_deferred=True)
        assert result.details == {"cleared_notes": 0, "cleared_deferred": 1}
        assert registry.list_backlog() == {"deferred": [], "notes": []}

    def test_note_keeps_backlog_text(self, project, registry):
        """Adding an idea only adds its row; prose and other headings stay."""
        write_roadmap(project.root, NOTES_WITH_PROSE)

        registry.add_note("Telemetry", "P3")

        assert roadmap_text(project) == NOTES_WITH_PROSE.replace(
            "| Dark mode | P3 | 2026-01-03 | |\n",
            "| Dark mode | P3 | 2026-01-03 | |\n| Telemetry | P3 | 2026-01-15 | |\n",
        )

    def test_clear_removes_empty_backlog(self, project, registry):
        """A backlog the registry created goes away once it is empty."""
        registry.add_note("Idea")
        assert "## Backlog" in roadmap_text(project)

        registry.clear_backlog()
        assert roadmap_text(project) == SAMPLE_ROADMAP

    def test_clear_keeps_backlog_with_text(self, project, registry):
        """A backlog holding the user's own text survives being emptied."""
        write_roadmap(project.root, NOTES_WITH_PROSE)

        registry.clear_backlog()

        text = roadmap_text(project)
        assert "## Backlog" in text
        assert "| Dark mode |" not in text
        assert "Keep this paragraph: reviewed every sprint." in text
        assert text.endswith("### Decisions\n\nAnything agreed at planning goes here.\n")

    def test_clear_empty_backlog(self, registry):
        """Nothing to clear is a no-op."""
        assert registry.clear_backlog().changed is False


class TestMigrate:
    """Test cases for 3-digit to 4-digit migration."""

    LEGACY = TABLE_HEAD.replace("# Roadmap", "# Legacy") + (
        "| 001 | Core | ✅ Complete | |\n"
        "| 002 | Storage | 🔄 In Progress | |\n"
        "\n"
        "### 001 - Core\n"
        "\n"
        "Done.\n"
        "\n"
        "### 002 - Storage\n"
        "\n"
        "Ongoing.\n"
    )

    def test_dry_run(self, project, registry):
        """A preview reports the mapping and leaves the file alone."""
        write_roadmap(project.root, self.LEGACY)
        result = registry.migrate(dry_run=True)
        assert result.mapping == {"001": "0010", "002": "0020"}
        assert result.changed is False
        assert roadmap_text(project) == self.LEGACY

    def test_migrate(self, project, registry):
        """Rows, sections and the cached phase number are widened."""
        write_roadmap(project.root, self.LEGACY)
        write_state(project, {"orchestration.phase.number": "002", "orchestration.phase.branch": "002-storage"})

        result = registry.migrate()

        text = roadmap_text(project)
        assert "| 0010 | Core | ✅ Complete | |" in text
        assert "| 0020 | Storage | 🔄 In Progress | |" in text
        assert "### 0010 - Core" in text and "### 0020 - Storage" in text
        state = json.loads(project.state_path.read_text(encoding="utf-8"))
        assert state["orchestration"]["phase"]["number"] == "0020"
        assert state["orchestration"]["phase"]["branch"] == "0020-storage"
        assert len(result.backups) == 2

    def test_already_migrated(self, registry):
        """A 4-digit roadmap is a no-op."""
        result = registry.migrate()
        assert result.changed is False
        assert "already uses 4-digit" in result.details["message"]


class TestViews:
    """Test cases for read-only views."""

    def test_validate(self, registry):
        """The sample roadmap is valid."""
        report = registry.validate()
        assert report == {"valid": True, "errors": [], "warnings": [], "phase_count": 3}

    def test_validate_reports_problems(self, project, registry):
        """Ordering problems are errors; missing detail is a warning."""
        write_roadmap(project.root, TABLE_HEAD + (
            "| 0020 | B | ⬜ Not Started | |\n"
            "| 0010 | A | ⬜ Not Started | |\n"
        ))
        report = registry.validate()
        assert report["valid"] is False
        assert any("strictly increasing" in error for error in report["errors"])
        assert "Phase 0010 has no detail section" in report["warnings"]

    def test_show(self, registry):
        """Detail text is returned with where it was found."""
        shown = registry.show("20")
        assert shown["phase"] == "0020"
        assert shown["location"]["kind"] == "inline"
        assert "Persist data." in shown["content"]

    def test_show_missing(self, registry):
        """Unknown phases raise PhaseNotFound."""
        with pytest.raises(PhaseNotFound):
            registry.show("0099")

    def test_next_and_current(self, registry):
        """Next is the first NotStarted row; current the first active one."""
        assert registry.next_phase().label == "0030"
        assert registry.current_phase().label == "0020"

    def test_summary(self, registry):
        """Counts and percentage cover every row."""
        summary = registry.summary()
        assert summary["total"] == 3
        assert summary["counts"]["complete"] == 1
        assert summary["percentage"] == 33
        assert summary["current"]["number"] == "0020"
        assert summary["next"]["number"] == "0030"
        assert summary["backlog"] == {"deferred": 0, "notes": 0}

    def test_missing_roadmap(self, project, registry):
        """A missing roadmap raises DocumentNotFound."""
        project.roadmap_path.unlink()
        with pytest.raises(DocumentNotFound, match="Roadmap not found"):
            registry.summary()
