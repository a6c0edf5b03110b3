"""Candidate document batch intake engine."""

from .orchestrator import BatchOrchestrator, BatchRunResult, BatchStats, IntakeDependencies
from .settings import Settings, get_settings

__version__ = "0.1.0"

__all__ = [
    "BatchOrchestrator",
    "BatchRunResult",
    "BatchStats",
    "IntakeDependencies",
    "Settings",
    "__version__",
    "get_settings",
]
