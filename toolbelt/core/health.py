"""
Health checker: compares manifest records and live binaries with the catalog.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from ..models.health import HealthReport, HealthStatus
from ..models.installation import InstallationRecord, InstallStatus
from ..models.tool import InstallMethod
from ..utils.probe import find_binary, probe_version, versions_match, file_checksum
from .catalog import ToolCatalog
from .errors import CatalogError, ToolbeltError
from .manifest import ManifestStore


class HealthChecker:
    """Read-only status checks of installed tools."""

    def __init__(self,
                 catalog: ToolCatalog,
                 manifest: ManifestStore,
                 extra_dirs: Optional[List[Path]] = None,
                 locate: Callable[..., Optional[str]] = find_binary,
                 probe: Callable[..., Optional[str]] = probe_version):
        """
        Initialize the health checker.

        Args:
            catalog: Tool catalog with expected versions
            manifest: Manifest store to compare against
            extra_dirs: Directories searched after PATH (e.g. the install bin dir)
            locate: Binary lookup, ``(binary_name, extra_dirs) -> path``
            probe: Version probe, ``(path, test_command) -> version``
        """
        self.logger = logging.getLogger(__name__)
        self.catalog = catalog
        self.manifest = manifest
        self.extra_dirs = list(extra_dirs or [])
        self.locate = locate
        self.probe = probe

    def check(self, tool_id: str) -> HealthReport:
        """
        Check one catalog tool.

        Args:
            tool_id: Catalog tool id

        Returns:
            HealthReport with status and explanatory messages
        """
        tool, found = self.catalog.lookup(tool_id)
        if not found:
            raise CatalogError.unknown_tool(tool_id)

        record, has_record = self.manifest.get(tool_id)
        report = HealthReport(
            tool_id=tool_id,
            status=HealthStatus.UNKNOWN,
            expected_version=tool.version,
            manifest_version=record.installed_version if has_record and record.installed_version else None
        )

        report.binary_path = self.locate(tool.binary_name, self.extra_dirs)
        if report.binary_path:
            report.live_version = self.probe(report.binary_path, tool.test_command)

        status = record.status if has_record else None
        if status == InstallStatus.INSTALLED:
            self._check_installed(report)
        elif status == InstallStatus.FAILED:
            if report.binary_path:
                report.status = HealthStatus.WARNING
                report.messages.append(f"Last install failed but {tool.binary_name} is present at {report.binary_path}")
            else:
                report.status = HealthStatus.FAIL
                report.messages.append("Last install failed")
                if record.diagnostic:
                    report.messages.append(record.diagnostic.strip().splitlines()[-1])
        else:
            if report.binary_path:
                report.status = HealthStatus.WARNING
                report.messages.append(f"{tool.binary_name} found at {report.binary_path} but not tracked in manifest")
            else:
                report.status = HealthStatus.UNKNOWN
                report.messages.append("Not installed")
            if status == InstallStatus.SKIPPED and record.diagnostic:
                report.messages.append(f"Last run skipped: {record.diagnostic}")

        self.logger.debug(f"Health of {tool_id}: {report.status.value}")
        return report

    def _check_installed(self, report: HealthReport) -> None:
        if not report.binary_path:
            report.status = HealthStatus.WARNING
            report.messages.append("Recorded as installed but binary not found")
            return

        report.status = HealthStatus.PASS
        if not versions_match(report.expected_version, report.manifest_version):
            report.status = HealthStatus.WARNING
            report.messages.append(
                f"Manifest version {report.manifest_version or 'unknown'} does not match "
                f"expected {report.expected_version}"
            )
        if report.live_version is None:
            if report.expected_version and report.expected_version != "latest":
                report.status = HealthStatus.WARNING
                report.messages.append("Could not determine installed version")
        elif not versions_match(report.expected_version, report.live_version):
            report.status = HealthStatus.WARNING
            report.messages.append(
                f"Installed version {report.live_version} does not match expected {report.expected_version}"
            )
        if report.status == HealthStatus.PASS:
            report.messages.append(f"OK ({report.live_version or report.manifest_version or 'version unknown'})")

    def check_all(self, tool_ids: Optional[List[str]] = None) -> List[HealthReport]:
        """
        Check catalog tools and any manifest records the catalog no longer knows.

        Args:
            tool_ids: Restrict to these tools (default: entire catalog plus orphans)
        """
        if tool_ids:
            return [self.check(tool_id) for tool_id in tool_ids]

        reports = [self.check(tool.id) for tool in self.catalog.tools]
        for tool_id, record in sorted(self.manifest.get_all().items()):
            if tool_id in self.catalog:
                continue
            reports.append(HealthReport(
                tool_id=tool_id,
                status=HealthStatus.UNKNOWN,
                messages=[f"Recorded as {record.status.value} but no longer in the catalog"],
                manifest_version=record.installed_version or None,
                in_catalog=False
            ))
        return reports

    def adopt(self, tool_id: str) -> InstallationRecord:
        """
        Record a tool already present on the machine as installed.

        Args:
            tool_id: Catalog tool id

        Returns:
            The record written to the manifest
        """
        tool, found = self.catalog.lookup(tool_id)
        if not found:
            raise CatalogError.unknown_tool(tool_id)

        path = self.locate(tool.binary_name, self.extra_dirs)
        if not path:
            raise ToolbeltError(f"Cannot adopt {tool_id}: {tool.binary_name} not found", tool_id=tool_id)

        version = self.probe(path, tool.test_command) or ""
        record = InstallationRecord(
            tool_id=tool_id,
            installed_version=version,
            method=InstallMethod.PRE_EXISTING,
            installed_at=datetime.now(timezone.utc),
            checksum=file_checksum(path),
            status=InstallStatus.INSTALLED,
            dependencies=list(tool.dependencies),
            user_requested=True,
            binary_paths=[path]
        )
        self.manifest.put(record)
        self.logger.info(f"Adopted pre-existing {tool_id} {version} at {path}".rstrip())
        return record
