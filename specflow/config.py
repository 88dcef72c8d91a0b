"""Configuration for the phase registry.

All paths, widths and policy knobs live on ``RegistryConfig``. Environment
overrides are read only by ``RegistryConfig.from_env``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .models import LEGACY_PHASE_WIDTH, PHASE_WIDTH


PROJECT_ROOT_ENV = "SPECFLOW_PROJECT_ROOT"
STORAGE_DIR_ENV = "SPECFLOW_STORAGE_DIR"
ALLOW_ROLLOVER_ENV = "SPECFLOW_ALLOW_ROLLOVER"
LOCK_TIMEOUT_ENV = "SPECFLOW_LOCK_TIMEOUT"

DEFAULT_STORAGE_DIR = ".specify"
STATE_SCHEMA_VERSION = "2.0"


def find_project_root(start: Optional[Path] = None, marker: str = DEFAULT_STORAGE_DIR) -> Optional[Path]:
    """Search upward from ``start`` for a directory holding ``marker``."""
    current = (start or Path.cwd()).resolve()
    while True:
        if (current / marker).is_dir():
            return current
        if current == current.parent:
            return None
        current = current.parent


@dataclass(slots=True)
class RegistryConfig:
    """Locations and policy for one project's registry."""

    root: Path
    storage_dir_name: str = DEFAULT_STORAGE_DIR
    roadmap_name: str = "ROADMAP.md"
    state_name: str = "orchestration-state.json"
    phase_width: int = PHASE_WIDTH
    legacy_width: int = LEGACY_PHASE_WIDTH
    allow_rollover: bool = True
    lock_timeout: float = 10.0

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser().resolve()

    @classmethod
    def from_env(cls, root: Optional[str] = None) -> "RegistryConfig":
        """Resolve the project root and policy from arguments and environment.

        Root resolution order: explicit argument, ``SPECFLOW_PROJECT_ROOT``,
        then an upward search for the storage directory.
        """
        storage = os.getenv(STORAGE_DIR_ENV) or DEFAULT_STORAGE_DIR

        if root:
            resolved = Path(root).expanduser().resolve()
            if not resolved.exists():
                raise ValueError(f"Provided root '{root}' does not exist.")
        else:
            env_root = os.getenv(PROJECT_ROOT_ENV)
            if env_root:
                resolved = Path(env_root).expanduser().resolve()
                if not resolved.exists():
                    raise ValueError(
                        f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
                    )
            else:
                detected = find_project_root(marker=storage)
                if detected is None:
                    raise ValueError(
                        "Unable to determine project root automatically. Pass --root or set "
                        f"the {PROJECT_ROOT_ENV} environment variable."
                    )
                resolved = detected

        allow_rollover = os.getenv(ALLOW_ROLLOVER_ENV, "1").strip().lower() not in {"0", "false", "no", "off"}
        try:
            lock_timeout = float(os.getenv(LOCK_TIMEOUT_ENV, "10"))
        except ValueError:
            raise ValueError(f"{LOCK_TIMEOUT_ENV} must be a number of seconds")

        return cls(
            root=resolved,
            storage_dir_name=storage,
            allow_rollover=allow_rollover,
            lock_timeout=lock_timeout,
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def specify_dir(self) -> Path:
        return self.root / self.storage_dir_name

    @property
    def roadmap_path(self) -> Path:
        return self.root / self.roadmap_name

    @property
    def state_path(self) -> Path:
        return self.specify_dir / self.state_name

    @property
    def phases_dir(self) -> Path:
        return self.specify_dir / "phases"

    @property
    def deferred_dir(self) -> Path:
        return self.phases_dir / "deferred"

    @property
    def history_path(self) -> Path:
        return self.specify_dir / "history" / "HISTORY.md"

    @property
    def backup_dir(self) -> Path:
        return self.specify_dir / "backup"

    @property
    def lock_path(self) -> Path:
        return self.specify_dir / "registry.lock"

    @property
    def specs_dir(self) -> Path:
        return self.root / "specs"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "root": str(self.root),
            "roadmap_path": str(self.roadmap_path),
            "state_path": str(self.state_path),
            "phases_dir": str(self.phases_dir),
            "history_path": str(self.history_path),
            "backup_dir": str(self.backup_dir),
            "phase_width": self.phase_width,
            "allow_rollover": self.allow_rollover,
            "lock_timeout": self.lock_timeout,
        }
