"""
Manifest store: durable record of installation outcomes keyed by tool id.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Tuple

from pydantic import ValidationError

from ..models.installation import InstallationRecord
from ..models.tool import InstallMethod
from .errors import ManifestError, ManifestErrorKind, ToolbeltError

SCHEMA_VERSION = "1.0"


class ManifestStore:
    """
    JSON-file backed manifest with serialized, atomic writes.

    Every ``put`` rewrites the whole document through a temporary file in the
    same directory followed by ``os.replace``, so the file on disk always holds
    a complete snapshot.
    """

    def __init__(self, path: Path, backup_dir: Optional[Path] = None, backup_retention: Optional[int] = None):
        """
        Initialize the manifest store. Nothing is read until first access.

        Args:
            path: Manifest file location
            backup_dir: Directory for manifest backups (default: <manifest dir>/backups)
            backup_retention: Number of backups to keep, or None to keep all
        """
        self.logger = logging.getLogger(__name__)
        self.path = Path(path).expanduser()
        self.backup_dir = Path(backup_dir).expanduser() if backup_dir else self.path.parent / "backups"
        self.backup_retention = backup_retention
        self._lock = threading.RLock()
        self._records: Optional[Dict[str, InstallationRecord]] = None
        self._created_at: Optional[str] = None

    # Reads

    def get(self, tool_id: str) -> Tuple[Optional[InstallationRecord], bool]:
        with self._lock:
            record = self._loaded().get(tool_id)
            return record, record is not None

    def get_all(self) -> Dict[str, InstallationRecord]:
        with self._lock:
            return dict(self._loaded())

    def is_installed(self, tool_id: str) -> bool:
        record, found = self.get(tool_id)
        return found and record.is_installed

    def dependents(self, tool_id: str) -> List[str]:
        """Installed tools whose recorded dependencies include ``tool_id``."""
        return sorted(
            other_id for other_id, record in self.get_all().items()
            if other_id != tool_id and record.is_installed and tool_id in record.dependencies
        )

    def can_safely_remove(self, tool_id: str) -> Tuple[bool, List[str]]:
        """
        Decide whether a tracked tool could be removed without breaking others.

        Args:
            tool_id: Tool identifier

        Returns:
            Tuple of (removable, reasons it is not)

        Raises:
            ToolbeltError: The tool has no manifest record
        """
        record, found = self.get(tool_id)
        if not found:
            raise ToolbeltError(f"Tool {tool_id} is not tracked", tool_id=tool_id)

        reasons = []
        if record.method == InstallMethod.PRE_EXISTING:
            reasons.append("tool was present before toolbelt")
        dependents = self.dependents(tool_id)
        if dependents:
            reasons.append(f"required by: {', '.join(dependents)}")
        return not reasons, reasons

    def reload(self) -> Dict[str, InstallationRecord]:
        """Discard the cache and re-read the backing file."""
        with self._lock:
            self._records = None
            return dict(self._loaded())

    def _loaded(self) -> Dict[str, InstallationRecord]:
        if self._records is None:
            self._records = self._read(self.path)
        return self._records

    def _read(self, path: Path) -> Dict[str, InstallationRecord]:
        if not path.exists():
            self.logger.debug(f"No manifest at {path}, starting empty")
            return {}

        try:
            raw = path.read_text()
        except OSError as e:
            raise ManifestError(ManifestErrorKind.UNREADABLE, f"Cannot read manifest {path}: {e}", str(path))

        records, created_at = self._parse(raw, path)
        if path == self.path:
            self._created_at = created_at
        return records

    @staticmethod
    def _parse(raw: str, path: Path) -> Tuple[Dict[str, InstallationRecord], Optional[str]]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ManifestError(ManifestErrorKind.CORRUPT, f"Manifest {path} is not valid JSON: {e}", str(path))

        if not isinstance(data, dict):
            raise ManifestError(ManifestErrorKind.CORRUPT, f"Manifest {path} is not a JSON object", str(path))
        version = data.get("schema_version")
        if version != SCHEMA_VERSION:
            raise ManifestError(
                ManifestErrorKind.CORRUPT,
                f"Unsupported manifest schema version: {version}",
                str(path)
            )

        records: Dict[str, InstallationRecord] = {}
        for tool_id, entry in (data.get("installations") or {}).items():
            try:
                record = InstallationRecord(**entry)
            except (TypeError, ValidationError) as e:
                raise ManifestError(
                    ManifestErrorKind.CORRUPT,
                    f"Invalid manifest record for {tool_id}: {e}",
                    str(path)
                )
            if record.tool_id != tool_id:
                raise ManifestError(
                    ManifestErrorKind.CORRUPT,
                    f"Manifest key {tool_id} holds a record for {record.tool_id}",
                    str(path)
                )
            records[tool_id] = record
        return records, data.get("created_at")

    # Writes

    def put(self, record: InstallationRecord) -> None:
        """Persist one record, replacing any prior entry for the same tool."""
        with self._lock:
            records = dict(self._loaded())
            records[record.tool_id] = record
            self._write(records)
            self._records = records
        self.logger.debug(f"Recorded {record.tool_id}: {record.status.value}")

    def track_bundle(self, bundle_name: str, tool_ids: List[str]) -> List[str]:
        """
        Note that a bundle's installation included the given tools.

        Only tools with an Installed record are tagged.

        Args:
            bundle_name: Bundle name as declared in the catalog
            tool_ids: Member tool ids of the bundle

        Returns:
            Ids of the records that now list the bundle
        """
        with self._lock:
            records = dict(self._loaded())
            tagged = []
            changed = False
            for tool_id in tool_ids:
                record = records.get(tool_id)
                if record is None or not record.is_installed:
                    continue
                tagged.append(tool_id)
                if bundle_name not in record.bundles:
                    records[tool_id] = record.model_copy(update={"bundles": record.bundles + [bundle_name]})
                    changed = True
            if changed:
                self._write(records)
                self._records = records
        if tagged:
            self.logger.debug(f"Bundle {bundle_name} covers {', '.join(tagged)}")
        return tagged

    def _write(self, records: Dict[str, InstallationRecord]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        if self._created_at is None:
            self._created_at = now
        document = {
            "schema_version": SCHEMA_VERSION,
            "installations": {
                tool_id: record.model_dump(mode="json")
                for tool_id, record in sorted(records.items())
            },
            "created_at": self._created_at,
            "updated_at": now
        }
        self._atomic_write(self.path, json.dumps(document, indent=2))

    def _atomic_write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise ManifestError(ManifestErrorKind.UNWRITABLE, f"Cannot write manifest {path}: {e}", str(path))

    # Backups

    def backup(self, suffix: str = "") -> Optional[Path]:
        """
        Copy the current manifest into the backup directory.

        Args:
            suffix: Optional label appended to the backup name

        Returns:
            Path of the backup, or None when there is no manifest yet
        """
        with self._lock:
            if not self.path.exists():
                return None
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
            name = f"manifest-{timestamp}"
            if suffix:
                name += f"-{suffix}"
            backup_path = self.backup_dir / f"{name}.json"
            shutil.copy2(self.path, backup_path)
            self._prune_backups()
        self.logger.info(f"Backed up manifest to {backup_path}")
        return backup_path

    def _prune_backups(self) -> None:
        if self.backup_retention is None:
            return
        backups = self.list_backups()
        excess = len(backups) - max(self.backup_retention, 0)
        for name in backups[:max(excess, 0)]:
            try:
                (self.backup_dir / name).unlink()
            except OSError as e:
                self.logger.warning(f"Could not remove old backup {name}: {e}")
                continue
            self.logger.debug(f"Removed old backup {name}")

    def list_backups(self) -> List[str]:
        if not self.backup_dir.exists():
            return []
        return sorted(p.name for p in self.backup_dir.iterdir() if p.is_file() and p.suffix == ".json")

    def restore_backup(self, name: str) -> Dict[str, InstallationRecord]:
        """
        Replace the manifest with a backup after validating it.

        The current manifest is backed up first with the ``pre-restore`` suffix.

        Args:
            name: Backup file name as returned by ``list_backups``

        Returns:
            The restored records
        """
        backup_path = self.backup_dir / name
        if not backup_path.exists():
            raise ManifestError(ManifestErrorKind.UNREADABLE, f"Backup not found: {name}", str(backup_path))

        with self._lock:
            raw = backup_path.read_text()
            records, _ = self._parse(raw, backup_path)
            self.backup("pre-restore")
            self._atomic_write(self.path, raw)
            self._records = None
            restored = dict(self._loaded())
        self.logger.info(f"Restored manifest from {name} ({len(records)} records)")
        return restored

    # Reporting

    def stats(self) -> Dict[str, Any]:
        """Count records by status and by install method."""
        records = self.get_all()
        by_status: Dict[str, int] = {}
        by_method: Dict[str, int] = {}
        for record in records.values():
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
            by_method[record.method.value] = by_method.get(record.method.value, 0) + 1
        return {"total": len(records), "by_status": by_status, "by_method": by_method}
