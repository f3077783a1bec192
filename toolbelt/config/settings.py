"""
Configuration settings for the toolbelt installation orchestrator.
"""

from typing import Optional
from pathlib import Path
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from ..models.installation import default_parallelism


class CatalogConfig(BaseModel):
    """Tool catalog locations."""
    tools_path: Path = Field(default=Path("catalog/tools.json"), description="Tool definitions")
    bundles_path: Optional[Path] = Field(default=Path("catalog/bundles.json"), description="Bundle definitions")


class ManifestConfig(BaseModel):
    """Manifest store configuration."""
    path: Path = Field(default=Path("~/.toolbelt/manifest.json"), description="Manifest file")
    backup_dir: Optional[Path] = Field(None, description="Backup directory (default: next to manifest)")
    backup_before_run: bool = Field(default=True, description="Back up the manifest before each install run")
    backup_retention: int = Field(default=10, description="Number of manifest backups to keep")

    @validator('path', 'backup_dir')
    def expand_user(cls, v):
        return v.expanduser() if v is not None else v

    @validator('backup_retention')
    def validate_retention(cls, v):
        if v < 1:
            raise ValueError("backup_retention must be at least 1")
        return v


class InstallerConfig(BaseModel):
    """External install operation configuration."""
    scripts_dir: Path = Field(default=Path("scripts"), description="Directory of install-<name>.sh scripts")
    build_dir: Path = Field(default=Path("~/.toolbelt/build"), description="Working directory for source builds")
    bin_dir: Path = Field(default=Path("~/.local/bin"), description="Destination for prebuilt binaries")
    package_manager: Optional[str] = Field(None, description="Force a package manager instead of detecting one")
    timeout_seconds: int = Field(default=3600, description="Per-tool install timeout in seconds")
    build_type: str = Field(default="standard", description="Default build type for source builds")

    @validator('build_dir', 'bin_dir')
    def expand_user(cls, v):
        return v.expanduser()

    @validator('timeout_seconds')
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level")
    file_path: Optional[Path] = Field(default=Path("logs/toolbelt.log"))
    max_file_size_mb: int = Field(default=10, description="Maximum log file size in MB")
    backup_count: int = Field(default=5, description="Number of log backups to keep")


class Settings(BaseSettings):
    """Main application settings."""
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    manifest: ManifestConfig = Field(default_factory=ManifestConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Operational settings
    max_parallel_jobs: int = Field(default_factory=default_parallelism, description="Concurrent installs")
    fail_fast: bool = Field(default=False, description="Stop scheduling after the first failure")
    retry_failed: bool = Field(default=True, description="Retry tools whose last install failed")

    class Config:
        env_prefix = "TOOLBELT_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"
        extra = "ignore"  # Ignore extra fields from environment

    @validator('max_parallel_jobs')
    def validate_parallel_jobs(cls, v):
        if v < 1:
            raise ValueError("max_parallel_jobs must be a positive integer")
        return v
