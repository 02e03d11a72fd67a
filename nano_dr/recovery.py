"""Recovery point index: maps a point in time to the backup chain reaching it."""

import json
import math
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from ._utils import ensure_aware, logger
from .errors import PreconditionError
from .models import BackupMetadata, BackupStatus, BackupType, RecoveryPoint
from .utils import write_text_atomic

# Rough restore throughput used for RTO estimates
RESTORE_BYTES_PER_MINUTE = 100 * 1024 * 1024
PER_BACKUP_OVERHEAD_MINUTES = 5

Lookup = Callable[[str], Optional[BackupMetadata]]


class RecoveryPointIndex:
    """Recovery points persisted as `<root>/recovery/points.json`.

    A chain is always one full backup followed by the successful
    incrementals taken on top of it, in increasing timestamp order.
    """

    def __init__(self, root: Path):
        self.path = Path(root) / "recovery" / "points.json"
        self._points: List[RecoveryPoint] = []
        self._verified_backups: Set[str] = set()

    # Persistence

    def load(self, records: Iterable[BackupMetadata]) -> List[RecoveryPoint]:
        """Load persisted points, rebuilding from the catalog when missing or unreadable."""
        records = list(records)
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                self._points = [RecoveryPoint.model_validate(p) for p in data.get("points", [])]
                self._verified_backups = set(data.get("verified_backups", []))
                logger.info(f"Loaded {len(self._points)} recovery points")
                return self.list()
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Recovery index unreadable, rebuilding from catalog: {e}")

        self.rebuild(records)
        return self.list()

    def _persist(self) -> None:
        payload = {
            "points": [p.model_dump(mode="json") for p in self._points],
            "verified_backups": sorted(self._verified_backups),
        }
        write_text_atomic(self.path, json.dumps(payload, indent=2))

    def rebuild(self, records: Iterable[BackupMetadata]) -> None:
        by_id = {r.id: r for r in records}
        self._points = []
        for metadata in sorted(by_id.values(), key=lambda r: r.timestamp):
            if metadata.status != BackupStatus.SUCCESS:
                continue
            if metadata.type not in (BackupType.FULL, BackupType.INCREMENTAL):
                continue
            try:
                self._points.append(self._build_point(metadata, by_id.get))
            except PreconditionError as e:
                logger.warning(f"Skipping recovery point for {metadata.id}: {e}")
        self._refresh_verified()
        self._persist()
        logger.info(f"Rebuilt {len(self._points)} recovery points from catalog")

    # Construction

    def _chain_for(self, metadata: BackupMetadata, lookup: Lookup) -> List[BackupMetadata]:
        if metadata.type == BackupType.FULL:
            return [metadata]

        base = lookup(metadata.parent_id) if metadata.parent_id else None
        if base is None or base.type != BackupType.FULL or base.status != BackupStatus.SUCCESS:
            raise PreconditionError(f"Incremental {metadata.id} has no usable base full backup")

        chain = [base]
        siblings = [
            p.backup_ids[-1] for p in self._points
            if p.type == BackupType.INCREMENTAL and p.backup_ids[0] == base.id
        ]
        for backup_id in siblings:
            sibling = lookup(backup_id)
            if (
                sibling is not None
                and sibling.status == BackupStatus.SUCCESS
                and sibling.timestamp < metadata.timestamp
            ):
                chain.append(sibling)
        chain[1:] = sorted(chain[1:], key=lambda r: r.timestamp)
        chain.append(metadata)
        return chain

    def _build_point(self, metadata: BackupMetadata, lookup: Lookup) -> RecoveryPoint:
        chain = self._chain_for(metadata, lookup)
        self._check_chain(chain, metadata.recovery_point)

        previous = [p for p in self._points if p.timestamp < metadata.recovery_point]
        rpo = 0
        if previous:
            gap = metadata.recovery_point - max(p.timestamp for p in previous)
            rpo = int(gap.total_seconds() // 60)

        total_bytes = sum(b.size for b in chain)
        rto = math.ceil(total_bytes / RESTORE_BYTES_PER_MINUTE) + PER_BACKUP_OVERHEAD_MINUTES * len(chain)

        return RecoveryPoint(
            timestamp=metadata.recovery_point,
            type=metadata.type,
            databases=list(chain[0].databases),
            backup_ids=[b.id for b in chain],
            verified=False,
            recovery_time_objective=rto,
            recovery_point_objective=rpo,
        )

    @staticmethod
    def _check_chain(chain: List[BackupMetadata], point_time: datetime) -> None:
        point_time = ensure_aware(point_time)
        if not chain or chain[0].type != BackupType.FULL:
            raise PreconditionError("Recovery chain must start with a full backup")
        previous = None
        for member in chain:
            timestamp = ensure_aware(member.timestamp)
            if timestamp > point_time:
                raise PreconditionError(f"Backup {member.id} is newer than its recovery point")
            if previous is not None and timestamp <= previous:
                raise PreconditionError(f"Backup {member.id} breaks chain ordering")
            previous = timestamp

    def register(self, metadata: BackupMetadata, lookup: Lookup) -> RecoveryPoint:
        """Create the recovery point for a successful full or incremental backup."""
        if metadata.status != BackupStatus.SUCCESS:
            raise PreconditionError(f"Backup {metadata.id} is not successful; no recovery point created")

        point = self._build_point(metadata, lookup)
        point.verified = all(backup_id in self._verified_backups for backup_id in point.backup_ids)
        self._points.append(point)
        self._points.sort(key=lambda p: p.timestamp)
        self._persist()
        logger.info(f"Recovery point registered at {point.timestamp.isoformat()} ({len(point.backup_ids)} backups)")
        return point.model_copy(deep=True)

    # Queries

    def find(self, target_time: datetime, lookup: Lookup) -> Optional[RecoveryPoint]:
        """Latest point at or before `target_time` whose whole chain is restorable."""
        target_time = ensure_aware(target_time)
        for point in sorted(self._points, key=lambda p: p.timestamp, reverse=True):
            if ensure_aware(point.timestamp) > target_time:
                continue
            chain = [lookup(backup_id) for backup_id in point.backup_ids]
            if any(member is None or member.status != BackupStatus.SUCCESS for member in chain):
                continue
            try:
                self._check_chain(chain, point.timestamp)
            except PreconditionError:
                continue
            return point.model_copy(deep=True)
        return None

    def list(self) -> List[RecoveryPoint]:
        return [p.model_copy(deep=True) for p in self._points]

    # Mutation

    def _refresh_verified(self) -> None:
        for point in self._points:
            if not point.verified and all(b in self._verified_backups for b in point.backup_ids):
                point.verified = True

    def mark_verified(self, backup_id: str) -> List[RecoveryPoint]:
        """Record a passed integrity test; returns the points that became verified."""
        self._verified_backups.add(backup_id)
        before = {id(p) for p in self._points if p.verified}
        self._refresh_verified()
        newly = [p.model_copy(deep=True) for p in self._points if p.verified and id(p) not in before]
        self._persist()
        return newly

    def remove_backups(self, backup_ids: Iterable[str], records: Iterable[BackupMetadata]) -> int:
        """Forget purged backups and rebuild the chains of what remains.

        Incrementals are cumulative since their base full backup, so a later
        incremental keeps its point with the purged members left out.

        Args:
            backup_ids: Ids that were purged
            records: Catalog records still retained

        Returns:
            Number of recovery points that disappeared
        """
        removed_ids = set(backup_ids)
        before = len(self._points)
        self._verified_backups -= removed_ids
        self.rebuild(r for r in records if r.id not in removed_ids)
        return before - len(self._points)
