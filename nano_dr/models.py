"""Data models for backup/restore operations."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    LOG = "log"
    DIFFERENTIAL = "differential"


class BackupStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({BackupStatus.SUCCESS, BackupStatus.FAILED})


class BackupLocation(BaseModel):
    """Where the artifacts of a backup live."""

    local: Optional[str] = None
    remote: Optional[str] = None
    redundant: List[str] = Field(default_factory=list)


class ArtifactRecord(BaseModel):
    """One store's artifact inside a backup directory."""

    store: str
    path: str = Field(..., description="Path relative to the backup directory")
    size: int = 0
    checksum: str = ""
    encrypted: bool = False
    compressed: bool = False
    incremental: bool = False


class StoreContribution(BaseModel):
    """What a store adapter adds to the backup it took part in."""

    store: str
    artifact: ArtifactRecord
    statistics: Dict[str, int] = Field(default_factory=dict)


class BackupMetadata(BaseModel):
    """Catalog record for a single backup run."""

    id: str = Field(..., description="Unique backup identifier")
    type: BackupType
    timestamp: datetime
    size: int = 0
    checksum: str = ""
    encrypted: bool = False
    compressed: bool = False
    retention_until: datetime
    databases: List[str] = Field(default_factory=list)
    status: BackupStatus = BackupStatus.IN_PROGRESS
    recovery_point: datetime
    location: BackupLocation = Field(default_factory=BackupLocation)
    artifacts: Dict[str, ArtifactRecord] = Field(default_factory=dict)
    parent_id: Optional[str] = Field(None, description="Base full backup of an incremental")
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_restorable(self) -> bool:
        return self.status == BackupStatus.SUCCESS

    def add_contribution(self, contribution: StoreContribution) -> None:
        if contribution.store not in self.databases:
            self.databases.append(contribution.store)
        self.artifacts[contribution.store] = contribution.artifact


class RecoveryPoint(BaseModel):
    """A point in time and the ordered chain of backups that reaches it."""

    timestamp: datetime
    type: BackupType
    databases: List[str] = Field(default_factory=list)
    backup_ids: List[str] = Field(..., min_length=1)
    verified: bool = False
    recovery_time_objective: int = Field(0, description="RTO estimate in minutes")
    recovery_point_objective: int = Field(0, description="RPO estimate in minutes")


class BackupStatistics(BaseModel):
    """Aggregate view over the catalog."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    in_progress: int = 0
    total_size: int = 0
    average_size: float = 0.0
    last_backup: Optional[BackupMetadata] = None
    oldest_backup: Optional[BackupMetadata] = None
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    retention_compliance: bool = True


class HealthReport(BaseModel):
    """Result of one periodic self-check."""

    checked_at: datetime
    healthy: bool
    storage_writable: bool
    free_bytes: Optional[int] = None
    last_full_backup_at: Optional[datetime] = None
    last_full_backup_age_hours: Optional[float] = None
    recent_failures: int = 0
    retention_compliance: bool = True
    issues: List[str] = Field(default_factory=list)


class NotificationKind(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ALERT = "alert"


class NotificationEvent(BaseModel):
    """Structured event emitted to the monitoring channels."""

    kind: NotificationKind
    backup_id: Optional[str] = None
    backup_type: Optional[BackupType] = None
    size: Optional[int] = None
    error: Optional[str] = None
    message: str
    created_at: datetime
