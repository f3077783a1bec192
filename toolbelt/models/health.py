"""
Health check models.
"""

from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Health of an installed tool."""
    UNKNOWN = "unknown"
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


class HealthReport(BaseModel):
    """Result of checking one tool against the manifest and the live system."""
    tool_id: str
    status: HealthStatus
    messages: List[str] = Field(default_factory=list)
    expected_version: Optional[str] = None
    manifest_version: Optional[str] = None
    live_version: Optional[str] = None
    binary_path: Optional[str] = None
    in_catalog: bool = True
