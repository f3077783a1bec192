"""
Live probes of installed binaries: location, version and checksum.
"""

import hashlib
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional, List

logger = logging.getLogger(__name__)

_VERSION_ASSIGNMENT = re.compile(r'version=([^\s,]+)')
_VERSION_NUMBER = re.compile(r'\bv?(\d+\.\d+(?:\.\d+)*(?:[-+][0-9A-Za-z.]+)?)')


def find_binary(binary_name: str, extra_dirs: Optional[List[Path]] = None) -> Optional[str]:
    """Locate a binary on PATH, then in any extra directories."""
    path = shutil.which(binary_name)
    if path:
        return path
    for directory in extra_dirs or []:
        path = shutil.which(binary_name, path=str(directory))
        if path:
            return path
    return None


def extract_version(output: str) -> Optional[str]:
    """
    Pull a version string out of ``--version`` style output.

    Args:
        output: Command output

    Returns:
        Version without a leading ``v``, or None when nothing looks like one
    """
    if not output or not output.strip():
        return None

    # lazygit style: "commit=..., version=0.40.2, os=linux"
    match = _VERSION_ASSIGNMENT.search(output)
    if match:
        return match.group(1).lstrip("v")

    for line in output.strip().splitlines():
        match = _VERSION_NUMBER.search(line)
        if match:
            return match.group(1)
    return None


def probe_version(binary_path: str, test_command: str = "--version", timeout: float = 10) -> Optional[str]:
    """Run the binary's version command and extract the version."""
    args = test_command.split() if test_command else ["--version"]
    try:
        result = subprocess.run(
            [binary_path, *args],
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Version probe failed for {binary_path}: {e}")
        return None
    return extract_version(result.stdout or result.stderr)


def versions_match(expected: Optional[str], actual: Optional[str]) -> bool:
    """Compare an expected version against a reported one; "latest" matches anything."""
    if not expected or expected == "latest":
        return True
    if not actual:
        return False
    expected_norm = expected.strip().lstrip("v")
    actual_norm = actual.strip().lstrip("v")
    return actual_norm == expected_norm or actual_norm.startswith(expected_norm + ".") \
        or actual_norm.startswith(expected_norm + "-")


def file_checksum(path: str) -> Optional[str]:
    """sha256 of a file, None if it cannot be read."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    except OSError:
        return None
    return digest.hexdigest()
