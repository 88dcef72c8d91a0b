"""Sample project content and helpers shared by the test-suite."""

import json
from datetime import date
from pathlib import Path

from specflow.config import RegistryConfig
from specflow.state import initial_state, set_value

TODAY = date(2026, 1, 15)

SAMPLE_ROADMAP = """# Project Roadmap

> Phases in execution order.

| Phase | Name | Status | Gate |
|-------|------|--------|------|
| 0010 | Core Engine | ✅ Complete | Unit tests pass |
| 0020 | Storage Layer | 🔄 In Progress | USER GATE: demo persistence |
| 0030 | CLI | ⬜ Not Started | |

---

## Phase Details

### 0010 - Core Engine

**Goal**: Build the engine.

### 0020 - Storage Layer

**Goal**: Persist data.

### 0030 - CLI

**Goal**: Command line.
"""


def write_roadmap(root: Path, text: str = SAMPLE_ROADMAP) -> Path:
    path = root / "ROADMAP.md"
    path.write_text(text, encoding="utf-8")
    return path


def write_state(config: RegistryConfig, values=None) -> dict:
    """State file with dotted-key overrides such as ``{"orchestration.phase.number": "0020"}``."""
    data = initial_state("sample")
    for key, value in (values or {}).items():
        set_value(data, key, value)
    config.state_path.parent.mkdir(parents=True, exist_ok=True)
    config.state_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return data


def fake_git(responses=None):
    """GitProbe runner answering from a dict keyed by the joined git arguments."""
    responses = responses or {}

    def run(args):
        return responses.get(" ".join(args))

    return run
