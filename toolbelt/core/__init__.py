"""
Core modules for the toolbelt installation orchestrator.
"""

from .errors import (
    ToolbeltError,
    CatalogError,
    CatalogErrorKind,
    ManifestError,
    ManifestErrorKind,
    InstallError,
    CancellationError
)
from .catalog import ToolCatalog, find_cycle
from .manifest import ManifestStore
from .resolver import DependencyResolver
from .progress import ProgressBus, ProgressEvent, BufferedSubscription, CallbackSubscription
from .orchestrator import InstallationOrchestrator
from .health import HealthChecker

__all__ = [
    "ToolbeltError",
    "CatalogError",
    "CatalogErrorKind",
    "ManifestError",
    "ManifestErrorKind",
    "InstallError",
    "CancellationError",
    "ToolCatalog",
    "find_cycle",
    "ManifestStore",
    "DependencyResolver",
    "ProgressBus",
    "ProgressEvent",
    "BufferedSubscription",
    "CallbackSubscription",
    "InstallationOrchestrator",
    "HealthChecker"
]
