"""Backup and disaster-recovery orchestration across all configured stores."""

import asyncio
import os
import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from ._utils import ensure_aware, logger, utcnow, generate_backup_id
from .adapters import (
    FilesystemAdapter,
    MongoAdapter,
    PostgresAdapter,
    RedisSnapshotAdapter,
    StoreAdapter,
)
from .catalog import CatalogFilter, MetadataCatalog
from .config import BackupConfig, validate_config
from .errors import (
    ConfigurationError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    PreconditionError,
    ToolExecutionError,
)
from .executor import CommandExecutor
from .models import (
    BackupMetadata,
    BackupStatistics,
    BackupStatus,
    BackupType,
    RecoveryPoint,
)
from .monitor import HealthMonitor
from .notifications import NotificationDispatcher
from .recovery import RecoveryPointIndex
from .remote import ReplicationManager
from .retention import RetentionPolicy
from .services import ServiceController
from .utils import compute_directory_checksum, directory_size

# Fixed order in which stores are backed up and restored
STORE_ORDER = ("postgresql", "mongodb", "redis", "files")

PARTIAL_SUFFIX = ".partial"


def build_adapters(config: BackupConfig, executor: CommandExecutor) -> List[StoreAdapter]:
    """Create adapters for every enabled store, in backup order."""
    adapters: List[StoreAdapter] = []
    if config.postgres.enabled:
        adapters.append(PostgresAdapter(config.postgres, executor))
    if config.mongodb.enabled:
        adapters.append(MongoAdapter(config.mongodb, executor))
    if config.redis.enabled:
        adapters.append(RedisSnapshotAdapter(config.redis, executor))
    if config.filesystem.enabled:
        adapters.append(FilesystemAdapter(config.filesystem, executor))
    return adapters


def _order_key(adapter: StoreAdapter) -> int:
    return STORE_ORDER.index(adapter.name) if adapter.name in STORE_ORDER else len(STORE_ORDER)


class BackupOrchestrator:
    """Coordinate backups, restores and integrity tests.

    Only one backup, restore or purge runs at a time per process; a second
    caller is rejected with ConflictError instead of queueing. The lock does
    not coordinate separate processes sharing the same storage root.
    """

    def __init__(
        self,
        config: BackupConfig,
        adapters: Optional[Sequence[StoreAdapter]] = None,
        executor: Optional[CommandExecutor] = None,
        catalog: Optional[MetadataCatalog] = None,
        recovery_index: Optional[RecoveryPointIndex] = None,
        replication: Optional[ReplicationManager] = None,
        services: Optional[ServiceController] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.config = config
        self.root = Path(config.storage.local_root)
        self.executor = executor or CommandExecutor()
        self._adapters_injected = adapters is not None
        self._set_adapters(adapters if adapters is not None else build_adapters(config, self.executor))

        self.catalog = catalog or MetadataCatalog(self.root)
        self.recovery = recovery_index or RecoveryPointIndex(self.root)
        self.retention = RetentionPolicy(config.retention)
        self.replication = replication or ReplicationManager(config.storage)
        self.services = services or ServiceController(config.services, self.executor)
        self.notifier = notifier or NotificationDispatcher(config.monitoring)
        self.monitor = HealthMonitor(
            self.catalog.snapshot, self.root, self.retention, config.monitoring, self.notifier
        )

        self._lock = asyncio.Lock()
        self._started = False

    def _set_adapters(self, adapters: Iterable[StoreAdapter]) -> None:
        self.adapters: Dict[str, StoreAdapter] = {
            a.name: a for a in sorted(adapters, key=_order_key)
        }

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # Lifecycle

    async def start(self) -> None:
        """Load the catalog and recovery index and start monitoring."""
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        self.catalog.load()
        self._recover_interrupted_runs()
        self.recovery.load(self.catalog.list())

        for warning in validate_config(self.config):
            logger.warning(warning)
        schedule = self.config.schedule
        logger.info(
            f"Backup schedules configured: full='{schedule.full_backup}', "
            f"incremental='{schedule.incremental_backup}', log='{schedule.log_backup}'"
        )

        if self.config.monitoring.enabled:
            self.monitor.start()

        self._started = True
        logger.info(
            f"Backup engine started: {len(self.catalog)} backups, stores={list(self.adapters)}, root={self.root}"
        )

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.notifier.drain()
        self._started = False

    async def __aenter__(self) -> 'BackupOrchestrator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _recover_interrupted_runs(self) -> None:
        """Fail records and delete partial directories left by a crashed process."""
        for metadata in self.catalog.list(CatalogFilter(status=BackupStatus.IN_PROGRESS)):
            metadata.status = BackupStatus.FAILED
            metadata.error = "Backup interrupted before completion"
            metadata.completed_at = utcnow()
            self.catalog.save(metadata)
            logger.warning(f"Marked interrupted backup as failed: {metadata.id}")

        if self.backups_dir.exists():
            for partial in self.backups_dir.glob(f"*{PARTIAL_SUFFIX}"):
                shutil.rmtree(partial, ignore_errors=True)
                logger.warning(f"Removed partial backup directory: {partial.name}")

    async def reconfigure(self, config: BackupConfig) -> None:
        """Swap in a new configuration between runs."""
        if self.busy:
            raise ConfigurationError("Cannot reconfigure while an operation is in progress")
        if Path(config.storage.local_root) != self.root:
            raise ConfigurationError("local_root cannot change on a running engine; create a new orchestrator")

        monitor_was_running = self.monitor.running
        await self.monitor.stop()

        self.config = config
        self.retention = RetentionPolicy(config.retention)
        if not self._adapters_injected:
            self._set_adapters(build_adapters(config, self.executor))
        self.replication.config = config.storage
        self.services.config = config.services
        self.notifier.config = config.monitoring
        self.monitor = HealthMonitor(
            self.catalog.snapshot, self.root, self.retention, config.monitoring, self.notifier
        )
        if monitor_was_running and config.monitoring.enabled:
            self.monitor.start()
        logger.info("Backup engine reconfigured")

    def _acquire_or_conflict(self, operation: str) -> None:
        # No await between check and acquire, so this is atomic on the event loop
        if self._lock.locked():
            raise ConflictError(f"Cannot start {operation}: backup already in progress")

    # Backups

    async def perform_full_backup(self) -> BackupMetadata:
        """Back up every configured store in order and register a recovery point.

        Raises:
            ConflictError: if another operation is running
            ToolExecutionError, IntegrityError: if any store fails
        """
        self._acquire_or_conflict("full backup")
        async with self._lock:
            if not self.adapters:
                raise PreconditionError("No stores are configured for backup")
            return await self._run_backup(BackupType.FULL, list(self.adapters.values()))

    async def perform_incremental_backup(self) -> BackupMetadata:
        """Back up changes since the last successful full backup.

        Raises:
            ConflictError: if another operation is running
            PreconditionError: if no full backup exists
        """
        self._acquire_or_conflict("incremental backup")
        async with self._lock:
            base = self.catalog.last(BackupType.FULL)
            if base is None:
                raise PreconditionError("No full backup found. Perform full backup first.")

            adapters = [a for a in self.adapters.values() if a.supports_incremental and a.name in base.databases]
            if not adapters:
                raise PreconditionError("None of the stores in the last full backup support incremental backups")
            return await self._run_backup(BackupType.INCREMENTAL, adapters, base=base)

    async def _run_backup(
        self,
        backup_type: BackupType,
        adapters: List[StoreAdapter],
        base: Optional[BackupMetadata] = None,
    ) -> BackupMetadata:
        timestamp = utcnow()
        backup_id = generate_backup_id(timestamp)
        metadata = BackupMetadata(
            id=backup_id,
            type=backup_type,
            timestamp=timestamp,
            retention_until=self.retention.calculate_retention_date(backup_type, timestamp),
            recovery_point=timestamp,
            parent_id=base.id if base else None,
        )
        self.catalog.save(metadata)

        work_dir = self.backups_dir / f"{backup_id}{PARTIAL_SUFFIX}"
        final_dir = self.backups_dir / backup_id
        since = f" since {base.id}" if base else ""
        logger.info(f"Starting {backup_type.value} backup: {backup_id}{since}")

        try:
            work_dir.mkdir(parents=True)
            for adapter in adapters:
                if base is None:
                    contribution = await adapter.backup(backup_id, work_dir)
                else:
                    contribution = await adapter.backup_incremental(backup_id, work_dir, since=base.timestamp)
                metadata.add_contribution(contribution)
                logger.info(f"{adapter.name} contributed {contribution.artifact.size:,} bytes to {backup_id}")

            shutil.rmtree(work_dir / ".staging", ignore_errors=True)
            os.replace(work_dir, final_dir)

            metadata.location.local = str(final_dir)
            metadata.size = await asyncio.to_thread(directory_size, final_dir)
            metadata.checksum = await asyncio.to_thread(compute_directory_checksum, final_dir)
            artifacts = list(metadata.artifacts.values())
            metadata.encrypted = bool(artifacts) and all(a.encrypted for a in artifacts)
            metadata.compressed = bool(artifacts) and all(a.compressed for a in artifacts)

            if self.replication.enabled:
                copies = await self.replication.replicate(backup_id, final_dir)
                metadata.location.remote = copies.remote
                metadata.location.redundant = copies.redundant

            metadata.status = BackupStatus.SUCCESS
            metadata.completed_at = utcnow()
            self.catalog.save(metadata)

        except Exception as e:
            logger.error(f"{backup_type.value.capitalize()} backup failed: {backup_id}: {e}")
            shutil.rmtree(work_dir, ignore_errors=True)
            shutil.rmtree(final_dir, ignore_errors=True)

            failed = metadata.model_copy(deep=True)
            failed.status = BackupStatus.FAILED
            failed.error = str(e) or type(e).__name__
            failed.completed_at = utcnow()
            try:
                self.catalog.save(failed)
            except OSError as save_error:
                logger.error(f"Could not record failure of {backup_id}: {save_error}")

            self.notifier.backup_failed(backup_id, backup_type, failed.error)
            raise

        try:
            self.recovery.register(metadata, self.catalog.get)
        except PreconditionError as e:
            logger.error(f"Backup {backup_id} succeeded but no recovery point was created: {e}")

        self.notifier.backup_succeeded(metadata)
        duration = (metadata.completed_at - timestamp).total_seconds()
        logger.info(f"{backup_type.value.capitalize()} backup completed: {backup_id} ({metadata.size:,} bytes, {duration:.1f}s)")
        return metadata.model_copy(deep=True)

    # Restore

    async def _resolve_backup_dir(self, metadata: BackupMetadata) -> Path:
        candidates = [metadata.location.local, str(self.backups_dir / metadata.id), *metadata.location.redundant]
        for candidate in candidates:
            if candidate and Path(candidate).is_dir():
                return Path(candidate)

        if metadata.location.remote and self.replication.config.remote.enabled:
            target = self.backups_dir / metadata.id
            logger.warning(f"No local copy of backup {metadata.id}, fetching {metadata.location.remote}")
            try:
                await self.replication.download(metadata.id, target)
            except ToolExecutionError as e:
                raise IntegrityError(f"Backup {metadata.id} could not be fetched from {metadata.location.remote}: {e}") from e
            return target
        raise IntegrityError(f"No local copy of backup {metadata.id} is available")

    async def _verify_backup_integrity(self, metadata: BackupMetadata) -> Path:
        backup_dir = await self._resolve_backup_dir(metadata)
        actual = await asyncio.to_thread(compute_directory_checksum, backup_dir)
        if actual != metadata.checksum:
            raise IntegrityError(
                f"Checksum mismatch for backup {metadata.id}: expected {metadata.checksum}, got {actual}"
            )
        logger.info(f"Backup checksum verified: {metadata.id}")
        return backup_dir

    def _adapter_for(self, store: str) -> StoreAdapter:
        adapter = self.adapters.get(store)
        if adapter is None:
            raise PreconditionError(f"No adapter configured for store {store}")
        return adapter

    def _resolve_targets(self, metadata: BackupMetadata, target_stores: Optional[Iterable[str]]) -> List[str]:
        if target_stores is None:
            targets = list(metadata.databases)
        else:
            targets = list(dict.fromkeys(target_stores))
            missing = [s for s in targets if s not in metadata.databases]
            if missing:
                raise PreconditionError(f"Backup {metadata.id} does not include stores: {missing}")
        for store in targets:
            self._adapter_for(store)
        return sorted(targets, key=lambda s: STORE_ORDER.index(s) if s in STORE_ORDER else len(STORE_ORDER))

    def _restore_chain_for(self, metadata: BackupMetadata) -> List[BackupMetadata]:
        """A full backup restores alone; anything else needs its base full backup first."""
        if metadata.type == BackupType.FULL:
            return [metadata]

        base = self.catalog.get(metadata.parent_id) if metadata.parent_id else None
        if base is None or base.type != BackupType.FULL or not base.is_restorable:
            raise PreconditionError(f"Backup {metadata.id} has no restorable base full backup")
        return [base, metadata]

    async def restore_from_backup(self, backup_id: str, target_stores: Optional[Sequence[str]] = None) -> None:
        """Restore stores from one successful backup.

        Restoring an incremental restores its base full backup first and then
        replays the incremental on top of it.

        Raises:
            NotFoundError: unknown backup id
            PreconditionError: backup is not successful or its base full backup is gone
            ConflictError: another operation is running
        """
        metadata = self.catalog.require(backup_id)
        if not metadata.is_restorable:
            raise PreconditionError(f"Backup {backup_id} is not in success state ({metadata.status.value})")
        chain = self._restore_chain_for(metadata)

        self._acquire_or_conflict("restore")
        async with self._lock:
            await self._restore_chain(chain, target_stores=target_stores)

    async def point_in_time_recovery(self, target_time: datetime) -> RecoveryPoint:
        """Restore the latest recovery point at or before `target_time`.

        Returns:
            The recovery point that was restored
        """
        target_time = ensure_aware(target_time)
        point = self.recovery.find(target_time, self.catalog.get)
        if point is None:
            raise NotFoundError(f"No recovery point found for {target_time.isoformat()}")

        chain = [self.catalog.require(backup_id) for backup_id in point.backup_ids]
        logger.info(f"Starting point-in-time recovery to {target_time.isoformat()} via {point.backup_ids}")

        self._acquire_or_conflict("point-in-time recovery")
        async with self._lock:
            await self._restore_chain(chain, target_time=target_time)

        logger.info(f"Point-in-time recovery completed: {target_time.isoformat()}")
        return point

    async def _restore_chain(
        self,
        chain: List[BackupMetadata],
        target_time: Optional[datetime] = None,
        target_stores: Optional[Sequence[str]] = None,
    ) -> None:
        """Verify, pause services, restore each backup in order, resume and verify."""
        targets = self._resolve_targets(chain[0], target_stores)
        backup_dirs = [await self._verify_backup_integrity(member) for member in chain]

        work_root = self.root / "restore" / f"{chain[-1].id}-{secrets.token_hex(4)}"
        logger.info(f"Starting restore of {[m.id for m in chain]} for stores {targets}")

        failed = False
        try:
            await self.services.pause()
            for member, backup_dir in zip(chain, backup_dirs):
                if target_time is not None and member.timestamp > target_time:
                    logger.warning(f"Skipping {member.id}: newer than {target_time.isoformat()}")
                    continue
                for store in targets:
                    artifact = member.artifacts.get(store)
                    if artifact is None:
                        continue
                    adapter = self._adapter_for(store)
                    store_work = work_root / member.id / store
                    if artifact.incremental:
                        await adapter.apply_incremental(artifact, backup_dir, store_work, target_time)
                    else:
                        await adapter.restore(artifact, backup_dir, store_work)
        except Exception as e:
            failed = True
            logger.error(f"Restore failed for {chain[-1].id}: {e}")
            raise
        finally:
            try:
                await self.services.resume()
            except Exception as resume_error:
                logger.error(f"Failed to resume services after restore: {resume_error}")
                if not failed:
                    raise
            shutil.rmtree(work_root, ignore_errors=True)

        await self._verify_restore(targets)
        logger.info(f"Restore completed successfully: {chain[-1].id}")

    async def _verify_restore(self, stores: List[str]) -> None:
        for store in stores:
            if not await self._adapter_for(store).check_health():
                raise IntegrityError(f"Post-restore verification failed: {store} is not reachable")

    # Integrity testing

    async def test_backup_integrity(self, backup_id: str) -> bool:
        """Check the checksum and restore every artifact into a throw-away sandbox.

        Returns False for a corrupted or unusable backup; raises only for
        unknown ids, a concurrent operation and infrastructure problems.

        Raises:
            NotFoundError: unknown backup id
            ConflictError: another operation is running
        """
        metadata = self.catalog.require(backup_id)
        if not metadata.is_restorable:
            logger.error(f"Backup integrity test failed: {backup_id} is {metadata.status.value}")
            return False

        self._acquire_or_conflict("integrity test")
        async with self._lock:
            sandbox = self.root / "sandbox" / f"{backup_id}-{secrets.token_hex(4)}"
            try:
                backup_dir = await self._verify_backup_integrity(metadata)
                for store in metadata.databases:
                    artifact = metadata.artifacts.get(store)
                    if artifact is None:
                        raise IntegrityError(f"Backup {backup_id} lists {store} but has no artifact for it")
                    await self._adapter_for(store).verify_artifact(artifact, backup_dir, sandbox / store)
            except IntegrityError as e:
                logger.error(f"Backup integrity test failed: {backup_id}: {e}")
                return False
            finally:
                shutil.rmtree(sandbox, ignore_errors=True)

            newly_verified = self.recovery.mark_verified(backup_id)
        logger.info(f"Backup integrity test passed: {backup_id} ({len(newly_verified)} recovery points verified)")
        return True

    # Queries

    def get_backup(self, backup_id: str) -> BackupMetadata:
        return self.catalog.require(backup_id)

    def list_backups(self, filter: Optional[CatalogFilter] = None) -> List[BackupMetadata]:
        return self.catalog.list(filter)

    def list_recovery_points(self) -> List[RecoveryPoint]:
        return self.recovery.list()

    def get_backup_statistics(self, now: Optional[datetime] = None) -> BackupStatistics:
        """Aggregate counts and sizes over the catalog without side effects."""
        backups = self.catalog.list()
        total = len(backups)
        total_size = sum(b.size for b in backups)

        by_type = {t.value: 0 for t in BackupType}
        by_status = {s.value: 0 for s in BackupStatus}
        for b in backups:
            by_type[b.type.value] += 1
            by_status[b.status.value] += 1

        return BackupStatistics(
            total=total,
            successful=by_status[BackupStatus.SUCCESS.value],
            failed=by_status[BackupStatus.FAILED.value],
            in_progress=by_status[BackupStatus.IN_PROGRESS.value],
            total_size=total_size,
            average_size=total_size / total if total else 0,
            last_backup=max(backups, key=lambda b: b.timestamp) if backups else None,
            oldest_backup=min(backups, key=lambda b: b.timestamp) if backups else None,
            by_type=by_type,
            by_status=by_status,
            retention_compliance=self.retention.is_compliant(backups, now),
        )

    # Retention

    async def purge_expired_backups(self, now: Optional[datetime] = None) -> List[str]:
        """Delete backups past their retention date.

        A full backup stays while any unexpired successful incremental still
        builds on it.
        """
        now = now or utcnow()
        self._acquire_or_conflict("retention purge")
        async with self._lock:
            records = self.catalog.list()
            expired = self.retention.expired(records, now)
            expired_ids = {r.id for r in expired}
            live_parents = {
                r.parent_id for r in records
                if r.parent_id and r.id not in expired_ids and r.status == BackupStatus.SUCCESS
            }

            purged = []
            for metadata in expired:
                if metadata.id in live_parents:
                    logger.info(f"Keeping expired full backup {metadata.id}: incrementals still depend on it")
                    continue
                local = Path(metadata.location.local) if metadata.location.local else self.backups_dir / metadata.id
                shutil.rmtree(local, ignore_errors=True)
                await self.replication.delete(metadata.id, metadata.location)
                self.catalog.delete(metadata.id)
                purged.append(metadata.id)

            if purged:
                self.recovery.remove_backups(purged, self.catalog.list())
                logger.info(f"Purged {len(purged)} expired backups")
            return purged


def create_orchestrator(config: Optional[BackupConfig] = None, **components) -> BackupOrchestrator:
    """Build an orchestrator from `config` (or the environment) and optional collaborators."""
    return BackupOrchestrator(config or BackupConfig.from_env(), **components)
