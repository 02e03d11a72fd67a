"""Durable catalog of backup metadata records."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from ._utils import ensure_aware, logger
from .errors import NotFoundError, PreconditionError
from .models import BackupMetadata, BackupStatus, BackupType
from .utils import write_text_atomic


@dataclass(frozen=True)
class CatalogFilter:
    """Selection criteria for `MetadataCatalog.list`."""
    type: Optional[BackupType] = None
    status: Optional[BackupStatus] = None
    database: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def matches(self, metadata: BackupMetadata) -> bool:
        if self.type is not None and metadata.type != self.type:
            return False
        if self.status is not None and metadata.status != self.status:
            return False
        if self.database is not None and self.database not in metadata.databases:
            return False
        if self.since is not None and metadata.timestamp < ensure_aware(self.since):
            return False
        if self.until is not None and metadata.timestamp > ensure_aware(self.until):
            return False
        return True


class MetadataCatalog:
    """One JSON file per backup id under `<root>/metadata/`, mirrored in memory.

    Writes go to disk first and only then to the in-memory index, so a crash
    can never leave the index ahead of the durable state.
    """

    def __init__(self, root: Path):
        self.directory = Path(root) / "metadata"
        self._records: Dict[str, BackupMetadata] = {}

    def _path_for(self, backup_id: str) -> Path:
        if not backup_id or "/" in backup_id or "\\" in backup_id or backup_id.startswith("."):
            raise ValueError(f"Invalid backup id: {backup_id!r}")
        return self.directory / f"{backup_id}.json"

    def load(self) -> List[BackupMetadata]:
        """Load every record from disk, replacing the in-memory view.

        Unreadable files are logged and skipped so one corrupt record cannot
        hide the rest of the catalog.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        records: Dict[str, BackupMetadata] = {}

        for file_path in sorted(self.directory.glob("*.json")):
            try:
                metadata = BackupMetadata.model_validate_json(file_path.read_text(encoding="utf-8"))
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Failed to load backup metadata {file_path.name}: {e}")
                continue
            records[metadata.id] = metadata

        self._records = records
        logger.info(f"Loaded backup history: {len(records)} records")
        return list(records.values())

    def save(self, metadata: BackupMetadata) -> None:
        """Persist a record atomically, then update the in-memory index.

        Raises:
            PreconditionError: if the stored record is terminal and the new one
                differs from it in any field
        """
        existing = self._records.get(metadata.id)
        if existing is not None and existing.is_terminal and existing != metadata:
            raise PreconditionError(
                f"Backup {metadata.id} is already {existing.status.value}; its record cannot change"
            )

        write_text_atomic(self._path_for(metadata.id), metadata.model_dump_json(indent=2))
        self._records[metadata.id] = metadata.model_copy(deep=True)
        logger.debug(f"Saved backup metadata: {metadata.id} ({metadata.status.value})")

    def get(self, backup_id: str) -> Optional[BackupMetadata]:
        record = self._records.get(backup_id)
        return record.model_copy(deep=True) if record else None

    def require(self, backup_id: str) -> BackupMetadata:
        record = self.get(backup_id)
        if record is None:
            raise NotFoundError(f"Backup {backup_id} not found")
        return record

    def list(self, filter: Optional[CatalogFilter] = None) -> List[BackupMetadata]:
        """Return matching records, oldest first."""
        records = [r for r in self._records.values() if filter is None or filter.matches(r)]
        records.sort(key=lambda r: r.timestamp)
        return [r.model_copy(deep=True) for r in records]

    def last(self, backup_type: Optional[BackupType] = None, successful_only: bool = True) -> Optional[BackupMetadata]:
        status = BackupStatus.SUCCESS if successful_only else None
        records = self.list(CatalogFilter(type=backup_type, status=status))
        return records[-1] if records else None

    def delete(self, backup_id: str) -> bool:
        """Remove a record from disk and memory. Returns False if unknown."""
        path = self._path_for(backup_id)
        if backup_id not in self._records and not path.exists():
            return False
        path.unlink(missing_ok=True)
        self._records.pop(backup_id, None)
        logger.info(f"Deleted backup metadata: {backup_id}")
        return True

    def snapshot(self) -> List[BackupMetadata]:
        """Read-only copy for observers such as the health monitor."""
        return self.list()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, backup_id: str) -> bool:
        return backup_id in self._records
