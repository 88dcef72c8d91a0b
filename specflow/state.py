"""Read and write the orchestration cache (``orchestration-state.json``)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .atomic import AtomicWriter, Transaction, validate_json
from .config import STATE_SCHEMA_VERSION, RegistryConfig
from .errors import DocumentNotFound
from .models import OrchestrationSnapshot

logger = logging.getLogger("specflow.state")


def initial_state(project_name: str) -> Dict[str, Any]:
    """A fresh cache document."""
    return {
        "schema_version": STATE_SCHEMA_VERSION,
        "project": {"name": project_name},
        "orchestration": OrchestrationSnapshot().to_dict(),
        "last_updated": datetime.now(timezone.utc).isoformat(),
    }


def set_value(data: Dict[str, Any], dotted_key: str, value: Any) -> None:
    """Assign ``orchestration.step.index``-style keys, creating parents."""
    node = data
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def get_value(data: Dict[str, Any], dotted_key: str, default: Any = None) -> Any:
    node: Any = data
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


class StateStore:
    """The cached snapshot. Read as a hint; written only through the atomic writer."""

    def __init__(self, config: RegistryConfig, writer: Optional[AtomicWriter] = None):
        self.config = config
        self.writer = writer or AtomicWriter(config.backup_dir)

    @property
    def path(self) -> Path:
        return self.config.state_path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            raise DocumentNotFound(
                f"State file not found: {self.path}",
                suggestion="Initialize the project state with: specflow state init",
            )
        return json.loads(self.path.read_text(encoding="utf-8"))

    def load_optional(self) -> Optional[Dict[str, Any]]:
        """The cache, or ``None`` when it is missing or unreadable."""
        try:
            return self.load()
        except (DocumentNotFound, json.JSONDecodeError) as exc:
            logger.debug(f"No usable state file: {exc}")
            return None

    def snapshot(self) -> OrchestrationSnapshot:
        data = self.load_optional()
        return OrchestrationSnapshot.from_state(data or {})

    def render(self, data: Dict[str, Any]) -> str:
        data["last_updated"] = datetime.now(timezone.utc).isoformat()
        progress = get_value(data, "orchestration.progress")
        if isinstance(progress, dict):
            total = progress.get("tasks_total") or 0
            completed = progress.get("tasks_completed") or 0
            progress["percentage"] = int(completed * 100 / total) if total else 0
        return json.dumps(data, indent=2) + "\n"

    def save(self, data: Dict[str, Any], transaction: Optional[Transaction] = None, backup: bool = False) -> None:
        content = self.render(data)
        if transaction is not None:
            transaction.write(self.path, content, validate_json, backup=backup)
        else:
            self.writer.write(self.path, content, validate_json, backup=backup)
        logger.debug(f"State saved to {self.path}")

    def init(self, project_name: Optional[str] = None) -> Dict[str, Any]:
        data = initial_state(project_name or self.config.root.name)
        self.save(data)
        return data
