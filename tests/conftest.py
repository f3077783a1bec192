"""
Shared fixtures: small catalogs, a temporary manifest and an instrumented installer.
"""

import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from toolbelt.core import ToolCatalog, ManifestStore
from toolbelt.integrations import Installer, InstallerRegistry
from toolbelt.models import InstallMethod, InstallResult, InstallationRecord, InstallStatus


def make_catalog(graph: Dict[str, List[str]], bundles: Optional[List[dict]] = None) -> ToolCatalog:
    """Build a validated catalog from ``{tool_id: [dependency ids]}`` in declaration order."""
    tools = [{"id": tool_id, "name": tool_id, "dependencies": deps} for tool_id, deps in graph.items()]
    return ToolCatalog.from_dict({"tools": tools}, {"bundles": bundles or []})


def installed_record(tool_id: str, version: str = "1.0.0") -> InstallationRecord:
    return InstallationRecord(tool_id=tool_id, installed_version=version, status=InstallStatus.INSTALLED)


class FakeInstaller(Installer):
    """Installer that sleeps instead of installing and records when each call ran."""

    method = InstallMethod.SOURCE_BUILD

    def __init__(self,
                 fail: Iterable[str] = (),
                 raise_for: Iterable[str] = (),
                 delay: float = 0.01,
                 delays: Optional[Dict[str, float]] = None,
                 supports_termination: bool = False,
                 on_start: Optional[Callable[[str], None]] = None):
        super().__init__()
        self.fail = set(fail)
        self.raise_for = set(raise_for)
        self.delay = delay
        self.delays = dict(delays or {})
        self.supports_termination = supports_termination
        self.on_start = on_start
        self.calls: List[str] = []
        self.intervals: Dict[str, Tuple[float, float]] = {}
        self.active = 0
        self.peak = 0

    async def install(self, tool, options) -> InstallResult:
        self.calls.append(tool.id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        started = time.monotonic()
        try:
            if self.on_start:
                self.on_start(tool.id)
            await asyncio.sleep(self.delays.get(tool.id, self.delay))
            if tool.id in self.raise_for:
                raise RuntimeError(f"installer crashed on {tool.id}")
        finally:
            self.active -= 1
            self.intervals[tool.id] = (started, time.monotonic())

        if tool.id in self.fail:
            return InstallResult.failure(f"make: *** [{tool.id}] Error 2")
        return InstallResult(success=True, version="1.0.0", method=self.method, diagnostic_text="ok")

    def max_overlap(self) -> int:
        """Largest number of install intervals open at the same instant."""
        events = []
        for start, end in self.intervals.values():
            events.append((start, 1))
            events.append((end, -1))
        # Ends sort before starts at equal timestamps
        events.sort(key=lambda e: (e[0], e[1]))
        current = peak = 0
        for _, delta in events:
            current += delta
            peak = max(peak, current)
        return peak


def registry_for(installer: Installer) -> InstallerRegistry:
    return InstallerRegistry({method: installer for method in InstallMethod})


@pytest.fixture
def manifest(tmp_path) -> ManifestStore:
    return ManifestStore(tmp_path / "manifest.json")


@pytest.fixture
def abc_catalog() -> ToolCatalog:
    """A with two dependents B and C."""
    return make_catalog({"A": [], "B": ["A"], "C": ["A"]})


@pytest.fixture
def diamond_catalog() -> ToolCatalog:
    """A <- B, A <- C, B <- D, C <- D."""
    return make_catalog({"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]})
