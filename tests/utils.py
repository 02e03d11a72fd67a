"""Test utilities for nano-dr tests."""
import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

from nano_dr._utils import utcnow
from nano_dr.adapters import StoreAdapter
from nano_dr.config import (
    BackupConfig,
    MonitoringConfig,
    RetentionConfig,
    StorageConfig,
)
from nano_dr.errors import IntegrityError, ToolExecutionError
from nano_dr.models import BackupMetadata, BackupStatus, BackupType

PAYLOAD = b"FAKEDUMP"


def make_config(root: Path, **sections) -> BackupConfig:
    """Create test config with sensible defaults."""
    config = BackupConfig(
        storage=StorageConfig(local_root=str(root)),
        monitoring=MonitoringConfig(enabled=False),
        retention=RetentionConfig(),
    )
    return config.replace(**sections) if sections else config


def make_metadata(
    backup_id: str,
    backup_type: BackupType = BackupType.FULL,
    status: BackupStatus = BackupStatus.SUCCESS,
    timestamp: Optional[datetime] = None,
    size: int = 1024,
    retention_days: int = 30,
    parent_id: Optional[str] = None,
    databases: Optional[List[str]] = None,
) -> BackupMetadata:
    timestamp = timestamp or utcnow()
    return BackupMetadata(
        id=backup_id,
        type=backup_type,
        timestamp=timestamp,
        size=size,
        checksum="sha256:abc",
        retention_until=timestamp + timedelta(days=retention_days),
        databases=databases if databases is not None else ["postgresql"],
        status=status,
        recovery_point=timestamp,
        parent_id=parent_id,
    )


class FakeAdapter(StoreAdapter):
    """In-memory store that writes a small artifact and records every call."""

    def __init__(
        self,
        name: str,
        events: Optional[list] = None,
        supports_incremental: bool = True,
        fail_backup: bool = False,
        fail_restore: bool = False,
        healthy: bool = True,
        encryption_key: Optional[str] = None,
    ):
        super().__init__(executor=MagicMock(), encryption_key=encryption_key)
        self.name = name
        self.supports_incremental = supports_incremental
        self.events = events if events is not None else []
        self.fail_backup = fail_backup
        self.fail_restore = fail_restore
        self.healthy = healthy
        self.gate: Optional[asyncio.Event] = None

    async def _write(self, backup_id: str, output_dir: Path, suffix: str) -> Path:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_backup:
            raise ToolExecutionError(f"{self.name}-dump", [], returncode=1, stderr="connection refused")
        path = output_dir / self.name / f"{backup_id}-{self.name}{suffix}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(PAYLOAD + backup_id.encode())
        return path

    async def backup(self, backup_id, output_dir):
        self.events.append(("backup", self.name, backup_id))
        path = await self._write(backup_id, output_dir, ".dump")
        return await self._finalize_artifact(path, output_dir, compressed=False)

    async def backup_incremental(self, backup_id, output_dir, since):
        self.events.append(("backup_incremental", self.name, backup_id))
        path = await self._write(backup_id, output_dir, ".inc")
        return await self._finalize_artifact(path, output_dir, compressed=False, incremental=True)

    async def restore(self, artifact, backup_dir, work_dir):
        self.events.append(("restore", self.name, artifact.path))
        if self.fail_restore:
            raise ToolExecutionError(f"{self.name}-restore", [], returncode=1, stderr="restore failed")
        await self._materialize(artifact, backup_dir, work_dir)

    async def apply_incremental(self, artifact, backup_dir, work_dir, target_time=None):
        self.events.append(("apply_incremental", self.name, artifact.path, target_time))
        await self._materialize(artifact, backup_dir, work_dir)

    async def verify_artifact(self, artifact, backup_dir, sandbox_dir):
        self.events.append(("verify", self.name, artifact.path))
        plain = await self._materialize(artifact, backup_dir, sandbox_dir)
        if not plain.read_bytes().startswith(PAYLOAD):
            raise IntegrityError(f"{artifact.path} is not a valid dump")

    async def check_health(self):
        return self.healthy


def make_services():
    """ServiceController stand-in with awaitable pause/resume."""
    services = MagicMock()
    services.pause = AsyncMock()
    services.resume = AsyncMock()
    return services
