"""
External install operations, one implementation per install method.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..models.installation import InstallationOptions, InstallResult
from ..models.tool import ToolConfig, InstallMethod
from ..utils.probe import find_binary, probe_version, file_checksum

# Answers for scripts that prompt despite --force
_PROMPT_ANSWERS = b"y\n" * 10


class Installer(ABC):
    """Capability interface for installing a single tool."""

    method: InstallMethod
    supports_termination: bool = False

    def __init__(self, bin_dir: Optional[Path] = None):
        self.logger = logging.getLogger(__name__)
        self.bin_dir = Path(bin_dir).expanduser() if bin_dir else None

    @abstractmethod
    async def install(self, tool: ToolConfig, options: InstallationOptions) -> InstallResult:
        """
        Install one tool.

        Must return a result for every outcome of its own steps; the
        orchestrator treats exceptions as failures with the exception text as
        diagnostic.
        """

    async def _describe(self, tool: ToolConfig, diagnostic: str = "",
                        checksum: Optional[str] = None) -> InstallResult:
        """Build a success result by probing the installed binary."""
        extra_dirs = [self.bin_dir] if self.bin_dir else []
        path = find_binary(tool.binary_name, extra_dirs)
        version = ""
        if path:
            version = await asyncio.to_thread(probe_version, path, tool.test_command) or ""
            if checksum is None:
                checksum = await asyncio.to_thread(file_checksum, path)
        else:
            self.logger.warning(f"{tool.id} reported success but {tool.binary_name} is not on PATH")
        return InstallResult(
            success=True,
            version=version or tool.version,
            method=self.method,
            checksum=checksum,
            diagnostic_text=diagnostic,
            binary_paths=[path] if path else []
        )


class SubprocessInstaller(Installer):
    """Shared subprocess handling for installers that shell out."""

    supports_termination = True

    def __init__(self, timeout_seconds: float = 3600, bin_dir: Optional[Path] = None):
        super().__init__(bin_dir=bin_dir)
        self.timeout_seconds = timeout_seconds

    async def _run(self, cmd: List[str], cwd: Optional[Path] = None) -> Tuple[Optional[int], str]:
        """
        Run a command, capturing combined output.

        Returns:
            (return code or None on timeout, output)
        """
        self.logger.debug(f"Running: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd) if cwd else None
            )
        except OSError as e:
            return 127, f"Failed to start {cmd[0]}: {e}"

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(input=_PROMPT_ANSWERS),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            await self._terminate(process)
            return None, f"Timed out after {self.timeout_seconds} seconds"
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        return process.returncode, stdout.decode(errors="replace") if stdout else ""

    async def _terminate(self, process) -> None:
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=10)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()


class SourceBuildInstaller(SubprocessInstaller):
    """Runs the tool's build script from the scripts directory."""

    method = InstallMethod.SOURCE_BUILD

    def __init__(self, scripts_dir: Path, build_dir: Path,
                 timeout_seconds: float = 3600, bin_dir: Optional[Path] = None):
        super().__init__(timeout_seconds=timeout_seconds, bin_dir=bin_dir)
        self.scripts_dir = Path(scripts_dir)
        self.build_dir = Path(build_dir).expanduser()

    def build_command(self, tool: ToolConfig, options: InstallationOptions) -> List[str]:
        cmd = ["bash", str(self.scripts_dir / tool.install_ref)]
        flag = tool.build_flag(options.build_type)
        if flag:
            cmd.append(flag)
        # Dependencies are scheduled by the orchestrator
        cmd.extend(["--skip-deps", "--force"])
        if options.run_tests:
            cmd.append("--run-tests")
        return cmd

    async def install(self, tool: ToolConfig, options: InstallationOptions) -> InstallResult:
        script_path = self.scripts_dir / tool.install_ref
        if not script_path.exists():
            return InstallResult.failure(f"Installation script not found: {script_path}")

        self.build_dir.mkdir(parents=True, exist_ok=True)
        returncode, output = await self._run(self.build_command(tool, options), cwd=self.build_dir)
        if returncode != 0:
            status = "timed out" if returncode is None else f"exit code {returncode}"
            return InstallResult.failure(f"{tool.install_ref} failed ({status})\n{output}")
        return await self._describe(tool, diagnostic=output)


class PackageManagerInstaller(SubprocessInstaller):
    """Delegates installation to the system package manager."""

    method = InstallMethod.PACKAGE_MANAGER

    # Detection order; first manager found on PATH wins
    MANAGERS: Dict[str, List[str]] = {
        "apt": ["apt-get", "install", "-y"],
        "yum": ["yum", "install", "-y"],
        "dnf": ["dnf", "install", "-y"],
        "pacman": ["pacman", "-S", "--noconfirm"],
        "brew": ["brew", "install"],
    }

    def __init__(self, manager: Optional[str] = None,
                 timeout_seconds: float = 1800, bin_dir: Optional[Path] = None):
        super().__init__(timeout_seconds=timeout_seconds, bin_dir=bin_dir)
        self._manager = manager

    @property
    def manager(self) -> Optional[str]:
        if self._manager is None:
            self._manager = self.detect()
        return self._manager

    @classmethod
    def detect(cls) -> Optional[str]:
        for name, cmd in cls.MANAGERS.items():
            if shutil.which(cmd[0]):
                return name
        return None

    def build_command(self, tool: ToolConfig) -> List[str]:
        cmd = list(self.MANAGERS[self.manager]) + [tool.install_ref]
        needs_root = self.manager != "brew" and hasattr(os, "geteuid") and os.geteuid() != 0
        if needs_root:
            cmd = ["sudo", "-n"] + cmd
        return cmd

    async def install(self, tool: ToolConfig, options: InstallationOptions) -> InstallResult:
        if self.manager is None:
            return InstallResult.failure(
                f"No supported package manager found ({', '.join(self.MANAGERS)})"
            )
        if self.manager not in self.MANAGERS:
            return InstallResult.failure(f"Unsupported package manager: {self.manager}")

        returncode, output = await self._run(self.build_command(tool))
        if returncode != 0:
            status = "timed out" if returncode is None else f"exit code {returncode}"
            return InstallResult.failure(
                f"{self.manager} install {tool.install_ref} failed ({status})\n{output}"
            )
        return await self._describe(tool, diagnostic=output)


class PrebuiltBinaryInstaller(Installer):
    """Downloads a release binary straight into the bin directory."""

    method = InstallMethod.PREBUILT_BINARY

    def __init__(self, bin_dir: Path, timeout_seconds: float = 300):
        super().__init__(bin_dir=bin_dir)
        self.timeout_seconds = timeout_seconds

    async def install(self, tool: ToolConfig, options: InstallationOptions) -> InstallResult:
        url = tool.install_ref
        if not url.startswith(("https://", "http://", "file://")):
            return InstallResult.failure(f"Prebuilt install reference is not a URL: {url}")

        destination = self.bin_dir / tool.binary_name
        try:
            await asyncio.to_thread(self._download, url, destination)
        except (OSError, urllib.error.URLError, ValueError) as e:
            return InstallResult.failure(f"Download of {url} failed: {e}")

        return await self._describe(tool, diagnostic=f"Downloaded {url}", checksum=file_checksum(str(destination)))

    def _download(self, url: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
        try:
            with os.fdopen(fd, "wb") as out:
                with urllib.request.urlopen(url, timeout=self.timeout_seconds) as response:
                    shutil.copyfileobj(response, out)
            os.chmod(tmp_name, 0o755)
            os.replace(tmp_name, destination)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        self.logger.info(f"Installed {destination} from {url}")


class MockInstaller(Installer):
    """Installer that succeeds without touching the machine (for testing)."""

    def __init__(self, method: InstallMethod = InstallMethod.SOURCE_BUILD, delay_seconds: float = 0.0):
        super().__init__()
        self.method = method
        self.delay_seconds = delay_seconds
        self.installed: List[str] = []

    async def install(self, tool: ToolConfig, options: InstallationOptions) -> InstallResult:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self.installed.append(tool.id)
        version = tool.version if tool.version != "latest" else "0.0.0-mock"
        return InstallResult(
            success=True,
            version=version,
            method=self.method,
            diagnostic_text=f"Mock install of {tool.id}"
        )


class InstallerRegistry:
    """Maps install methods to installer implementations."""

    def __init__(self, installers: Optional[Dict[InstallMethod, Installer]] = None):
        self._installers: Dict[InstallMethod, Installer] = dict(installers or {})

    def register(self, method: InstallMethod, installer: Installer) -> None:
        self._installers[method] = installer

    def for_tool(self, tool: ToolConfig) -> Installer:
        installer = self._installers.get(tool.method)
        if installer is None:
            raise LookupError(f"No installer registered for method {tool.method.value} ({tool.id})")
        return installer

    @classmethod
    def default(cls, scripts_dir: Path, build_dir: Path, bin_dir: Path,
                package_manager: Optional[str] = None,
                timeout_seconds: float = 3600) -> "InstallerRegistry":
        return cls({
            InstallMethod.SOURCE_BUILD: SourceBuildInstaller(
                scripts_dir=scripts_dir, build_dir=build_dir,
                timeout_seconds=timeout_seconds, bin_dir=bin_dir
            ),
            InstallMethod.PACKAGE_MANAGER: PackageManagerInstaller(
                manager=package_manager, timeout_seconds=timeout_seconds, bin_dir=bin_dir
            ),
            InstallMethod.PREBUILT_BINARY: PrebuiltBinaryInstaller(bin_dir=bin_dir),
        })

    @classmethod
    def mock(cls, delay_seconds: float = 0.0) -> "InstallerRegistry":
        return cls({
            method: MockInstaller(method=method, delay_seconds=delay_seconds)
            for method in (InstallMethod.SOURCE_BUILD, InstallMethod.PACKAGE_MANAGER, InstallMethod.PREBUILT_BINARY)
        })
