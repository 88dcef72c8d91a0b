"""Error kinds raised by the phase registry.

Every fatal error names the offending phase number or file and, where one
exists, the command that resolves it. Row-level parse problems are not
raised: they are accumulated as ``ParseWarning`` values.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class RegistryError(Exception):
    """Base class for every registry failure."""

    code = "REGISTRY"
    exit_code = 1

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.suggestion = suggestion

    def format(self) -> str:
        """Format error for CLI output."""
        lines = [f"Error: {self.message}"]
        if self.suggestion:
            lines.append(f"Suggestion: {self.suggestion}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "error": self.message,
            "code": self.code,
            "phase": self.phase,
            "suggestion": self.suggestion,
        }


class AnchorNotFound(RegistryError):
    """The phase to insert after does not exist."""

    code = "ANCHOR_NOT_FOUND"


class PhaseNotFound(RegistryError):
    code = "PHASE_NOT_FOUND"


class AmbiguousMatch(PhaseNotFound):
    """A fuzzy lookup would need more than one widening step.

    Subclasses ``PhaseNotFound`` so callers treat it as not-found.
    """

    code = "AMBIGUOUS_MATCH"


class NumberInUse(RegistryError):
    code = "NUMBER_IN_USE"


class PhaseInProgress(RegistryError):
    """Refusing to move in-flight work without an explicit force flag."""

    code = "PHASE_IN_PROGRESS"


class DecadeExhausted(RegistryError):
    code = "DECADE_EXHAUSTED"


class ValidationFailed(RegistryError):
    """A staged write failed its post-write invariant check."""

    code = "VALIDATION_FAILED"


class DocumentNotFound(RegistryError):
    code = "NOT_FOUND"


class LockTimeout(RegistryError):
    code = "LOCK_TIMEOUT"


@dataclass(slots=True)
class ParseWarning:
    """A single skipped row, recorded instead of aborting the read."""

    line_number: int
    line: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "line_number": self.line_number,
            "line": self.line,
            "reason": self.reason,
        }

    def __str__(self) -> str:
        return f"line {self.line_number}: {self.reason}"
