"""SpecFlow phase registry - core functionality package."""

from .config import RegistryConfig
from .models import PhaseRecord, PhaseStatus
from .reconcile import Reconciler
from .registry import PhaseRegistry
from .status import StatusDeriver
from .workflow import RegistryWorkflow

__version__ = "0.1.0"

__all__ = [
    "PhaseRegistry",
    "PhaseRecord",
    "PhaseStatus",
    "Reconciler",
    "RegistryConfig",
    "RegistryWorkflow",
    "StatusDeriver",
]
