"""
Error taxonomy for catalog, manifest, installation and cancellation failures.
"""

from enum import Enum
from typing import Optional, List, Dict, Any


class ToolbeltError(Exception):
    """Base class for all toolbelt errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        return self.message


class CatalogErrorKind(str, Enum):
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    CYCLE_DETECTED = "cycle_detected"
    UNKNOWN_TOOL = "unknown_tool"
    DUPLICATE_TOOL = "duplicate_tool"
    INVALID = "invalid"


class CatalogError(ToolbeltError):
    """Invalid catalog or request; fatal before any install is attempted."""

    def __init__(self, kind: CatalogErrorKind, message: str,
                 tools: Optional[List[str]] = None,
                 cycle: Optional[List[str]] = None):
        super().__init__(message, tools=tools or [], cycle=cycle or [])
        self.kind = kind
        self.tools = tools or []
        self.cycle = cycle or []

    @classmethod
    def cycle_detected(cls, cycle: List[str]) -> "CatalogError":
        return cls(
            CatalogErrorKind.CYCLE_DETECTED,
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            tools=list(dict.fromkeys(cycle)),
            cycle=cycle
        )

    @classmethod
    def unknown_tool(cls, name: str) -> "CatalogError":
        return cls(CatalogErrorKind.UNKNOWN_TOOL, f"Tool or bundle not found: {name}", tools=[name])


class ManifestErrorKind(str, Enum):
    UNREADABLE = "unreadable"
    CORRUPT = "corrupt"
    UNWRITABLE = "unwritable"


class ManifestError(ToolbeltError):
    """The manifest cannot be trusted; fatal for the whole run."""

    def __init__(self, kind: ManifestErrorKind, message: str, path: Optional[str] = None):
        super().__init__(message, path=path)
        self.kind = kind
        self.path = path


class InstallError(ToolbeltError):
    """A tool failed to install. Contained to its node during a run."""

    def __init__(self, message: str, tool_ids: Optional[List[str]] = None, diagnostic: str = ""):
        super().__init__(message, tool_ids=tool_ids or [])
        self.tool_ids = tool_ids or []
        self.diagnostic = diagnostic or message


class CancellationError(ToolbeltError):
    """The run was cancelled before every node reached a terminal state."""

    def __init__(self, message: str = "Run cancelled", pending: Optional[List[str]] = None):
        super().__init__(message, pending=pending or [])
        self.pending = pending or []
