"""Unit tests for companion detail files and the state store."""

import json
from datetime import date

import pytest

from specflow.atomic import validate_json
from specflow.companion import CompanionFile, companion_path, replace_numbers
from specflow.errors import DocumentNotFound, ValidationFailed
from specflow.models import PhaseStatus
from specflow.state import StateStore, get_value, set_value


class TestCompanionFile:
    """Test cases for CompanionFile."""

    def test_create(self, tmp_path):
        """New companion files carry front matter and a heading."""
        companion = CompanionFile.create(tmp_path, 11, "Cache Layer", "Benchmarks pass", today=date(2026, 1, 15))
        assert companion.path == tmp_path / "0011-cache-layer.md"
        assert companion.meta == {
            "phase": "0011",
            "name": "cache-layer",
            "status": "not_started",
            "created": "2026-01-15",
            "updated": "2026-01-15",
        }
        assert companion.body.startswith("# Phase 0011: Cache Layer")
        assert "**Verification Gate**: Benchmarks pass" in companion.body

    def test_render_and_parse(self, tmp_path):
        """Rendered files load back with the same metadata and body."""
        companion = CompanionFile.create(tmp_path, 11, "Cache Layer", today=date(2026, 1, 15))
        loaded = CompanionFile.parse(companion.path, companion.render())
        assert loaded.meta == companion.meta
        assert loaded.body == companion.body
        assert loaded.title == "Cache Layer"

    def test_file_without_front_matter(self, tmp_path):
        """Plain markdown is all body."""
        companion = CompanionFile.parse(tmp_path / "0020-api.md", "# API\n")
        assert companion.meta == {}
        assert companion.body == "# API\n"
        assert companion.title == "Api"

    def test_set_status(self, tmp_path):
        """Status changes stamp the update date."""
        companion = CompanionFile.create(tmp_path, 11, "X", today=date(2026, 1, 1))
        companion.set_status(PhaseStatus.COMPLETE, date(2026, 2, 1))
        assert companion.meta["status"] == "complete"
        assert companion.meta["updated"] == "2026-02-01"

    def test_renumber(self, tmp_path):
        """Renumbering updates path, metadata and body references."""
        companion = CompanionFile.create(tmp_path, 25, "API", today=date(2026, 1, 1))
        companion.body += "Depends on 0099 and 10025.\n"
        companion.renumber({"0025": "0020", "0099": "0030"})
        assert companion.path == tmp_path / "0020-api.md"
        assert companion.meta["phase"] == "0020"
        assert companion.body.startswith("# Phase 0020: API")
        assert "Depends on 0030 and 10025." in companion.body

    def test_replace_numbers_does_not_cascade(self):
        """Chained mappings are applied simultaneously."""
        assert replace_numbers("0020 then 0030", {"0020": "0030", "0030": "0040"}) == "0030 then 0040"

    def test_companion_path(self, tmp_path):
        """File names are number plus slug."""
        assert companion_path(tmp_path, 40, "Plugin System").name == "0040-plugin-system.md"


class TestStateStore:
    """Test cases for StateStore."""

    def test_missing_state(self, project):
        """Loading a missing state file suggests initializing it."""
        store = StateStore(project)
        with pytest.raises(DocumentNotFound) as exc_info:
            store.load()
        assert "specflow state init" in exc_info.value.suggestion
        assert store.load_optional() is None
        assert not store.snapshot().has_phase

    def test_init_and_save(self, project):
        """Saving recomputes the progress percentage."""
        store = StateStore(project)
        data = store.init("demo")
        assert data["schema_version"] == "2.0"
        set_value(data, "orchestration.progress.tasks_completed", 3)
        set_value(data, "orchestration.progress.tasks_total", 4)
        store.save(data)

        saved = json.loads(project.state_path.read_text(encoding="utf-8"))
        assert saved["project"]["name"] == "demo"
        assert get_value(saved, "orchestration.progress.percentage") == 75

    def test_unparseable_state(self, project):
        """Garbled JSON reads as no state."""
        project.state_path.write_text("{not json", encoding="utf-8")
        assert StateStore(project).load_optional() is None

    def test_get_and_set_value(self):
        """Dotted keys create parents as needed."""
        data = {}
        set_value(data, "a.b.c", 1)
        assert data == {"a": {"b": {"c": 1}}}
        assert get_value(data, "a.b.c") == 1
        assert get_value(data, "a.x", "default") == "default"

    def test_save_never_writes_invalid_json(self, project):
        """The writer validates the serialized state."""
        store = StateStore(project)
        store.init("demo")
        before = project.state_path.read_text(encoding="utf-8")
        with pytest.raises(ValidationFailed):
            store.writer.write(project.state_path, "[]", validate_json)
        assert project.state_path.read_text(encoding="utf-8") == before
