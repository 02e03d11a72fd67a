"""Retention policy: how long each backup type is kept."""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Union

from ._utils import ensure_aware, utcnow
from .config import RetentionConfig
from .models import BackupMetadata, BackupType

DAYS_PER_TIER = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "yearly": 365,
}

TIER_BY_TYPE = {
    BackupType.FULL: "monthly",
    BackupType.INCREMENTAL: "weekly",
    BackupType.LOG: "daily",
}


class RetentionPolicy:
    """Pure functions of the configured tier counts."""

    def __init__(self, config: RetentionConfig):
        self.config = config

    def tier_for(self, backup_type: Union[BackupType, str]) -> str:
        try:
            backup_type = BackupType(backup_type)
        except ValueError:
            return "daily"
        return TIER_BY_TYPE.get(backup_type, "daily")

    def tier_days(self, backup_type: Union[BackupType, str]) -> int:
        tier = self.tier_for(backup_type)
        return getattr(self.config, tier) * DAYS_PER_TIER[tier]

    def calculate_retention_date(self, backup_type: Union[BackupType, str], now: datetime) -> datetime:
        """Expiry date for a backup of `backup_type` taken at `now`.

        full -> monthly tier, incremental -> weekly tier, log -> daily tier,
        anything else -> daily tier.
        """
        return ensure_aware(now) + timedelta(days=self.tier_days(backup_type))

    @staticmethod
    def is_expired(metadata: BackupMetadata, now: Optional[datetime] = None) -> bool:
        return ensure_aware(metadata.retention_until) <= ensure_aware(now or utcnow())

    def expired(self, records: Iterable[BackupMetadata], now: Optional[datetime] = None) -> List[BackupMetadata]:
        now = now or utcnow()
        return [r for r in records if self.is_expired(r, now)]

    def is_compliant(self, records: Iterable[BackupMetadata], now: Optional[datetime] = None) -> bool:
        """True when nothing past its retention date is still kept."""
        return not self.expired(records, now)
