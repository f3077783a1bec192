"""
Data models for the toolbelt installation orchestrator.
"""

from .tool import ToolConfig, BundleConfig, InstallMethod
from .installation import InstallationRecord, InstallationOptions, InstallResult, InstallStatus
from .plan import NodeState, PlanNode, ExecutionPlan, ToolOutcome, RunSummary
from .health import HealthStatus, HealthReport

__all__ = [
    "ToolConfig",
    "BundleConfig",
    "InstallMethod",
    "InstallationRecord",
    "InstallationOptions",
    "InstallResult",
    "InstallStatus",
    "NodeState",
    "PlanNode",
    "ExecutionPlan",
    "ToolOutcome",
    "RunSummary",
    "HealthStatus",
    "HealthReport"
]
