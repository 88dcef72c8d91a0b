"""Shared fixtures: a sample project with a roadmap, state file and fake git."""

from datetime import datetime

import pytest

from specflow.atomic import AtomicWriter
from specflow.config import RegistryConfig
from specflow.registry import PhaseRegistry
from specflow.specflow_logging import observability_hooks, performance_monitor
from specflow.status import GitProbe

from tests.support import TODAY, fake_git, write_roadmap


@pytest.fixture(autouse=True)
def clean_observability():
    """Isolate the global hook registry and metrics between tests."""
    observability_hooks.hooks.clear()
    performance_monitor.clear()
    yield
    observability_hooks.hooks.clear()
    performance_monitor.clear()


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".specify").mkdir()
    write_roadmap(tmp_path)
    return RegistryConfig(root=tmp_path)


@pytest.fixture
def registry(project):
    writer = AtomicWriter(project.backup_dir, clock=lambda: datetime(2026, 1, 15, 12, 0, 0))
    return PhaseRegistry(project, clock=lambda: TODAY, writer=writer)


@pytest.fixture
def no_git(project):
    return GitProbe(project.root, runner=fake_git())
