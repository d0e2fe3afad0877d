"""Core module containing configuration, data models, errors and the analysis services."""

from .config import Settings, get_settings
from .errors import AppError, ConflictError, NotFoundError, ValidationError
from .models import (
    AnalysisDepth,
    AnalysisRun,
    ConfidenceLevel,
    ControlFinding,
    FindingStatus,
    Framework,
    PhaseStatus,
    RepositoryFinding,
    RepositoryTask,
    Snapshot,
    SnapshotStatus,
)

# Services are imported lazily to avoid circular imports with storage and signals


def __getattr__(name: str):
    """Lazy import for the service classes."""
    if name == "AnalysisOrchestrator":
        from .orchestrator import AnalysisOrchestrator
        return AnalysisOrchestrator
    if name == "FindingsService":
        from .findings import FindingsService
        return FindingsService
    if name == "SnapshotService":
        from .snapshots import SnapshotService
        return SnapshotService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AnalysisDepth",
    "AnalysisOrchestrator",
    "AnalysisRun",
    "AppError",
    "ConfidenceLevel",
    "ConflictError",
    "ControlFinding",
    "FindingStatus",
    "FindingsService",
    "Framework",
    "NotFoundError",
    "PhaseStatus",
    "RepositoryFinding",
    "RepositoryTask",
    "Settings",
    "Snapshot",
    "SnapshotService",
    "SnapshotStatus",
    "ValidationError",
    "get_settings",
]
