"""
Configuration for the toolbelt installation orchestrator.
"""

from .settings import Settings, CatalogConfig, ManifestConfig, InstallerConfig, LoggingConfig

__all__ = ["Settings", "CatalogConfig", "ManifestConfig", "InstallerConfig", "LoggingConfig"]
