"""Atomic file replacement, backups, multi-file transactions and the registry lock.

Content is staged into a temporary file beside its target, read back and
validated, and only then swapped in with ``os.replace``. A failed validation
removes the staged file; the target and the backup area are left untouched.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .errors import LockTimeout, ValidationFailed

logger = logging.getLogger("specflow.atomic")

Validator = Callable[[str], None]


def validate_json(text: str) -> None:
    """Validator for the orchestration cache: must be a JSON object."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationFailed(f"Staged JSON does not parse: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationFailed("Staged JSON is not an object")


class AtomicWriter:
    """Temp-write, validate, rename."""

    def __init__(self, backup_dir: Optional[Path] = None, clock: Callable[[], datetime] = datetime.now):
        self.backup_dir = backup_dir
        self.clock = clock

    def stage(self, path: Path, content: str, validator: Optional[Validator] = None) -> Path:
        """Write ``content`` to a temp file in ``path``'s directory and validate it."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        staged = Path(temp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            if validator is not None:
                validator(staged.read_text(encoding="utf-8"))
        except Exception:
            staged.unlink(missing_ok=True)
            raise
        return staged

    def commit(self, staged: Path, path: Path, backup: bool = False) -> Optional[Path]:
        """Swap a staged file in. Returns the backup path, if one was made."""
        backup_path = self.backup(path) if backup else None
        os.replace(staged, path)
        logger.debug(f"Replaced {path}")
        return backup_path

    def write(
        self,
        path: Path,
        content: str,
        validator: Optional[Validator] = None,
        backup: bool = False,
    ) -> Optional[Path]:
        staged = self.stage(path, content, validator)
        try:
            return self.commit(staged, Path(path), backup=backup)
        except Exception:
            staged.unlink(missing_ok=True)
            raise

    def backup(self, path: Path) -> Optional[Path]:
        """Copy ``path`` to ``<backup_dir>/<name>.<YYYYmmdd-HHMMSS>.bak``."""
        path = Path(path)
        if not path.exists() or self.backup_dir is None:
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = self.clock().strftime("%Y%m%d-%H%M%S")
        target = self.backup_dir / f"{path.name}.{stamp}.bak"
        counter = 1
        while target.exists():
            target = self.backup_dir / f"{path.name}.{stamp}-{counter}.bak"
            counter += 1
        shutil.copy2(path, target)
        logger.info(f"Backed up {path} to {target}")
        return target


@dataclass(slots=True)
class _StagedWrite:
    path: Path
    staged: Path
    backup: bool


class Transaction:
    """A group of writes, renames and removals applied together.

    Writes are staged and validated as they are added, so a bad write fails
    before any file is touched. Writes address paths as they exist before the
    renames; on commit, writes land first, then renames, then removals.
    """

    def __init__(self, writer: AtomicWriter):
        self.writer = writer
        self.writes: List[_StagedWrite] = []
        self.renames: List[Tuple[Path, Path]] = []
        self.removals: List[Path] = []
        self.backups: List[Path] = []
        self._committed = False

    def write(self, path: Path, content: str, validator: Optional[Validator] = None, backup: bool = False) -> None:
        path = Path(path)
        if path.exists() and path.read_text(encoding="utf-8") == content:
            return
        self.writes.append(_StagedWrite(path, self.writer.stage(path, content, validator), backup))

    def rename(self, source: Path, target: Path) -> None:
        if Path(source) != Path(target):
            self.renames.append((Path(source), Path(target)))

    def remove(self, path: Path) -> None:
        self.removals.append(Path(path))

    def changed_paths(self) -> List[str]:
        paths = [str(item.path) for item in self.writes]
        paths.extend(f"{source} -> {target}" for source, target in self.renames)
        paths.extend(f"{path} (removed)" for path in self.removals)
        return paths

    def commit(self) -> List[Path]:
        """Apply everything. Returns the backups made."""
        if self._committed:
            raise RuntimeError("Transaction already committed")
        for target in (target for _, target in self.renames):
            if target.exists() and target not in {source for source, _ in self.renames}:
                self.rollback()
                raise ValidationFailed(f"Rename target already exists: {target}")

        for item in self.writes:
            made = self.writer.commit(item.staged, item.path, backup=item.backup)
            if made:
                self.backups.append(made)

        # Two passes through temporary names so swaps and chains cannot collide.
        parked: List[Tuple[Path, Path]] = []
        for index, (source, target) in enumerate(self.renames):
            holding = source.with_name(f".{source.name}.renaming-{os.getpid()}-{index}")
            os.replace(source, holding)
            parked.append((holding, target))
        for holding, target in parked:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(holding, target)
            logger.debug(f"Renamed to {target}")

        for path in self.removals:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)

        self._committed = True
        return self.backups

    def rollback(self) -> None:
        """Discard staged files. Nothing on disk has changed yet."""
        for item in self.writes:
            item.staged.unlink(missing_ok=True)
        self.writes.clear()

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._committed:
            self.rollback()
        return False


class RegistryLock:
    """Advisory exclusive lock around a read-modify-write cycle."""

    def __init__(self, path: Path, timeout: float = 10.0, retry_delay: float = 0.1):
        self.path = Path(path)
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._handle = None

    def __enter__(self) -> "RegistryLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, "a+")
        start_time = time.time()
        while True:
            try:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as e:
                if e.errno not in (errno.EACCES, errno.EAGAIN):
                    self._handle.close()
                    raise
                if time.time() - start_time >= self.timeout:
                    self._handle.close()
                    raise LockTimeout(
                        f"Could not acquire lock on {self.path} after {self.timeout}s",
                        suggestion="Another specflow command may be running; retry when it finishes",
                    )
                time.sleep(self.retry_delay)
        logger.debug(f"Acquired registry lock {self.path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._handle:
            try:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            finally:
                self._handle.close()
                self._handle = None
        return False
