"""Periodic self-check of the backup engine."""

import asyncio
import os
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Callable, List, Optional

from ._utils import logger, utcnow
from .config import MonitoringConfig
from .models import BackupMetadata, BackupStatus, BackupType, HealthReport
from .notifications import NotificationDispatcher
from .retention import RetentionPolicy

RECENT_FAILURE_WINDOW = timedelta(hours=24)


class HealthMonitor:
    """Inspect a read-only catalog snapshot on a fixed interval.

    The monitor never takes the orchestrator's backup lock; it only reads
    the list returned by `snapshot`.
    """

    def __init__(
        self,
        snapshot: Callable[[], List[BackupMetadata]],
        storage_root: Path,
        retention: RetentionPolicy,
        config: MonitoringConfig,
        dispatcher: NotificationDispatcher,
    ):
        self._snapshot = snapshot
        self.storage_root = Path(storage_root)
        self.retention = retention
        self.config = config
        self.dispatcher = dispatcher
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[HealthReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _storage_writable(self) -> bool:
        marker = self.storage_root / ".health_check"
        try:
            self.storage_root.mkdir(parents=True, exist_ok=True)
            marker.write_text("ok")
            marker.unlink()
            return True
        except OSError:
            return False

    async def check(self) -> HealthReport:
        now = utcnow()
        records = self._snapshot()
        issues = []

        writable = await asyncio.to_thread(self._storage_writable)
        if not writable:
            issues.append(f"Backup storage {self.storage_root} is not writable")

        free_bytes = None
        if self.storage_root.exists():
            free_bytes = shutil.disk_usage(os.fspath(self.storage_root)).free

        fulls = [r for r in records if r.type == BackupType.FULL and r.status == BackupStatus.SUCCESS]
        last_full = max(fulls, key=lambda r: r.timestamp) if fulls else None
        age_hours = None
        if last_full is None:
            issues.append("No successful full backup in catalog")
        else:
            age_hours = (now - last_full.timestamp).total_seconds() / 3600
            if age_hours > self.config.max_backup_age_hours:
                issues.append(
                    f"Last full backup is {age_hours:.1f}h old (limit {self.config.max_backup_age_hours:.0f}h)"
                )

        recent_failures = sum(
            1 for r in records
            if r.status == BackupStatus.FAILED and now - r.timestamp <= RECENT_FAILURE_WINDOW
        )
        if recent_failures:
            issues.append(f"{recent_failures} backup(s) failed in the last 24h")

        compliant = self.retention.is_compliant(records, now)
        if not compliant:
            issues.append("Expired backups are still retained")

        report = HealthReport(
            checked_at=now,
            healthy=not issues,
            storage_writable=writable,
            free_bytes=free_bytes,
            last_full_backup_at=last_full.timestamp if last_full else None,
            last_full_backup_age_hours=age_hours,
            recent_failures=recent_failures,
            retention_compliance=compliant,
            issues=issues,
        )
        self.last_report = report
        return report

    async def run_once(self) -> HealthReport:
        report = await self.check()
        if report.healthy:
            logger.debug("Backup health check passed")
        else:
            logger.warning(f"Backup health check found issues: {'; '.join(report.issues)}")
            self.dispatcher.alert("Backup health check: " + "; ".join(report.issues))
        return report

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self.run_once()
            except Exception as e:
                # Keep monitoring alive; a failed check is itself reported
                logger.error(f"Backup health check crashed: {e}")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Backup monitoring started (every {self.config.health_check_interval:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Backup monitoring stopped")
