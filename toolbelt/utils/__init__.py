"""
Utility modules for the toolbelt installation orchestrator.
"""

from .logging import setup_root_logger
from .probe import find_binary, extract_version, probe_version, versions_match, file_checksum

__all__ = [
    "setup_root_logger",
    "find_binary",
    "extract_version",
    "probe_version",
    "versions_match",
    "file_checksum"
]
