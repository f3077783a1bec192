"""
External install operations.
"""

from .installers import (
    Installer,
    SourceBuildInstaller,
    PackageManagerInstaller,
    PrebuiltBinaryInstaller,
    MockInstaller,
    InstallerRegistry
)

__all__ = [
    "Installer",
    "SourceBuildInstaller",
    "PackageManagerInstaller",
    "PrebuiltBinaryInstaller",
    "MockInstaller",
    "InstallerRegistry"
]
