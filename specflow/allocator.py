"""Phase number allocation under the decade scheme.

A decade is the ten numbers sharing their first three digits. Slot 0 is the
primary phase; slots 1-9 hold phases inserted after it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, Any, Dict, Optional

from .errors import DecadeExhausted
from .models import PHASE_MAX, decade, format_phase


@dataclass(slots=True, frozen=True)
class Allocation:
    number: int
    rolled_over: bool = False

    @property
    def label(self) -> str:
        return format_phase(self.number)

    @property
    def warning(self) -> Optional[str]:
        if not self.rolled_over:
            return None
        return (
            f"Decade {format_phase(decade(self.number) - 1, 3)}x is full; "
            f"rolled over to {self.label}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"number": self.label, "rolled_over": self.rolled_over, "warning": self.warning}


def next_in_decade(after: int, used: AbstractSet[int], allow_rollover: bool = True) -> Allocation:
    """First free number after ``after`` within its decade.

    ``used`` holds every active and backlog number. When the decade is full
    the next decade's primary slot is returned with ``rolled_over`` set; that
    slot must itself be free and in range, and rollover must be allowed.
    """
    last = decade(after) * 10 + 9
    for candidate in range(after + 1, last + 1):
        if candidate not in used:
            return Allocation(candidate)

    rollover = (decade(after) + 1) * 10
    if not allow_rollover:
        raise DecadeExhausted(
            f"No free number after {format_phase(after)} in its decade",
            phase=format_phase(after),
            suggestion="Renumber phases with: specflow roadmap renumber",
        )
    if rollover > PHASE_MAX or rollover in used:
        raise DecadeExhausted(
            f"No free number after {format_phase(after)}: decade is full and "
            f"{rollover if rollover > PHASE_MAX else format_phase(rollover)} is unavailable",
            phase=format_phase(after),
            suggestion="Renumber phases with: specflow roadmap renumber",
        )
    return Allocation(rollover, rolled_over=True)
