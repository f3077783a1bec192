"""
Installation record, options and result models.
"""

import os
from enum import Enum
from typing import Optional, List
from datetime import datetime, timezone
from pydantic import BaseModel, Field, validator

from .tool import InstallMethod


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_parallelism() -> int:
    """Number of CPUs, capped at 4 to keep concurrent builds within memory."""
    return max(1, min(os.cpu_count() or 1, 4))


class InstallStatus(str, Enum):
    """Terminal outcome persisted in the manifest."""
    INSTALLED = "installed"
    FAILED = "failed"
    SKIPPED = "skipped"


class InstallationRecord(BaseModel):
    """Durable record of the last installation outcome for one tool."""
    tool_id: str = Field(..., description="Tool identifier")
    installed_version: str = Field(default="", description="Version reported by the install")
    method: InstallMethod = Field(default=InstallMethod.SOURCE_BUILD, description="Install method")
    installed_at: datetime = Field(default_factory=_utcnow)
    checksum: Optional[str] = Field(None, description="sha256 of the installed binary")
    status: InstallStatus = Field(..., description="Terminal status")
    diagnostic: Optional[str] = Field(None, description="Failure output or skip reason")
    dependencies: List[str] = Field(default_factory=list)
    user_requested: bool = Field(default=False, description="Named in the request, not pulled in")
    binary_paths: List[str] = Field(default_factory=list)
    bundles: List[str] = Field(default_factory=list, description="Bundles whose installation included this tool")

    @property
    def is_installed(self) -> bool:
        return self.status == InstallStatus.INSTALLED

    class Config:
        json_schema_extra = {
            "example": {
                "tool_id": "ripgrep",
                "installed_version": "14.1.0",
                "method": "source_build",
                "installed_at": "2025-01-12T10:04:11+00:00",
                "checksum": "6a1d3c...",
                "status": "installed",
                "user_requested": True,
                "binary_paths": ["/usr/local/bin/rg"]
            }
        }


class InstallationOptions(BaseModel):
    """Immutable configuration for a single orchestration run."""
    parallelism: int = Field(default_factory=default_parallelism, description="Max concurrent installs")
    force: bool = Field(default=False, description="Reinstall tools already installed")
    skip_deps: bool = Field(default=False, description="Trust that dependencies are satisfied")
    dry_run: bool = Field(default=False, description="Plan only, install nothing")
    fail_fast: bool = Field(default=False, description="Stop scheduling after the first failure")
    retry_failed: bool = Field(default=True, description="Retry tools whose last attempt failed")
    build_type: str = Field(default="standard", description="Build type passed to source builds")
    run_tests: bool = Field(default=False, description="Ask install scripts to run test suites")

    @validator('parallelism')
    def validate_parallelism(cls, v):
        if v < 1:
            raise ValueError("parallelism must be a positive integer")
        return v

    class Config:
        frozen = True


class InstallResult(BaseModel):
    """What an external install operation reports back."""
    success: bool
    version: str = ""
    method: Optional[InstallMethod] = None
    checksum: Optional[str] = None
    diagnostic_text: str = ""
    binary_paths: List[str] = Field(default_factory=list)

    @classmethod
    def failure(cls, diagnostic_text: str) -> "InstallResult":
        return cls(success=False, diagnostic_text=diagnostic_text)
