"""Common behaviour for store adapters."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from .._utils import logger
from ..errors import IntegrityError, PreconditionError
from ..executor import CommandExecutor
from ..models import ArtifactRecord, StoreContribution
from ..utils import compute_checksum, decrypt_file, encrypt_file, is_encrypted, verify_checksum


class StoreAdapter(ABC):
    """Produce point-in-time artifacts for one store and restore from them.

    Adapters write only below the directories they are handed, which are
    keyed by backup id, so they never need locking between each other.
    """

    name: str = ""
    supports_incremental: bool = False

    def __init__(self, executor: CommandExecutor, encryption_key: Optional[str] = None):
        self.executor = executor
        self.encryption_key = encryption_key

    @abstractmethod
    async def backup(self, backup_id: str, output_dir: Path) -> StoreContribution:
        """Write a full artifact for this store below `output_dir`."""

    async def backup_incremental(self, backup_id: str, output_dir: Path, since: datetime) -> StoreContribution:
        """Write an artifact with the changes made after `since`."""
        raise NotImplementedError(f"{self.name} does not support incremental backups")

    @abstractmethod
    async def restore(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> None:
        """Restore the production store from a full artifact."""

    async def apply_incremental(
        self,
        artifact: ArtifactRecord,
        backup_dir: Path,
        work_dir: Path,
        target_time: Optional[datetime] = None,
    ) -> None:
        """Replay an incremental artifact, never past `target_time`."""
        raise NotImplementedError(f"{self.name} does not support incremental backups")

    @abstractmethod
    async def verify_artifact(self, artifact: ArtifactRecord, backup_dir: Path, sandbox_dir: Path) -> None:
        """Restore into `sandbox_dir` only, raising IntegrityError on a bad artifact."""

    @abstractmethod
    async def check_health(self) -> bool:
        """Return True if the live store is reachable."""

    async def _finalize_artifact(
        self,
        artifact_path: Path,
        output_dir: Path,
        compressed: bool,
        incremental: bool = False,
        statistics: Optional[Dict[str, int]] = None,
    ) -> StoreContribution:
        """Encrypt (if a key is configured) and describe a finished artifact."""
        encrypted = False
        if self.encryption_key:
            await encrypt_file(artifact_path, self.encryption_key)
            encrypted = True

        artifact = ArtifactRecord(
            store=self.name,
            path=artifact_path.relative_to(output_dir).as_posix(),
            size=artifact_path.stat().st_size,
            checksum=compute_checksum(artifact_path),
            encrypted=encrypted,
            compressed=compressed,
            incremental=incremental,
        )
        logger.debug(f"{self.name} artifact ready: {artifact.path} ({artifact.size:,} bytes)")
        return StoreContribution(store=self.name, artifact=artifact, statistics=statistics or {})

    async def _materialize(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> Path:
        """Return a readable plaintext copy of the artifact, decrypting into `work_dir` if needed."""
        source = backup_dir / artifact.path
        if not source.exists():
            raise IntegrityError(f"Artifact not found: {source}")
        if not await asyncio.to_thread(verify_checksum, source, artifact.checksum):
            raise IntegrityError(f"Artifact checksum mismatch: {artifact.path}")
        if artifact.encrypted and not is_encrypted(source):
            raise IntegrityError(f"Artifact {artifact.path} is recorded as encrypted but has no encryption header")
        if not artifact.encrypted:
            return source

        if not self.encryption_key:
            raise PreconditionError(f"{self.name} artifact {artifact.path} is encrypted but no key is configured")

        work_dir.mkdir(parents=True, exist_ok=True)
        target = work_dir / Path(artifact.path).name
        await decrypt_file(source, target, self.encryption_key)
        return target
