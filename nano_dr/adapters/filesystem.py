"""Application file backup/restore adapter."""

import asyncio
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from .._utils import ensure_aware, logger
from ..config import FilesystemConfig
from ..errors import ToolExecutionError
from ..executor import CommandExecutor
from ..models import ArtifactRecord, StoreContribution
from ..utils import create_archive, extract_archive
from .base import StoreAdapter


def _copy_tree(source: Path, target: Path, newer_than: Optional[float]) -> int:
    """Copy `source` into `target` keeping mtimes; returns number of files copied."""
    files = [source] if source.is_file() else [p for p in source.rglob("*") if p.is_file()]
    copied = 0
    for file_path in files:
        if newer_than is not None and file_path.stat().st_mtime <= newer_than:
            continue
        relative = file_path.relative_to(source) if source.is_dir() else Path(file_path.name)
        destination = target / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(file_path, destination)
        copied += 1
    return copied


class FilesystemAdapter(StoreAdapter):
    """Copy an allow-list of critical directories into staging and archive it."""

    name = "files"
    supports_incremental = True

    def __init__(self, config: FilesystemConfig, executor: CommandExecutor):
        super().__init__(executor, config.encryption_key)
        self.config = config

    @property
    def base_dir(self) -> Path:
        return Path(self.config.base_dir)

    @property
    def restore_root(self) -> Path:
        return Path(self.config.restore_root or self.config.base_dir)

    async def _stage(self, staging: Path, newer_than: Optional[float]) -> int:
        if not self.base_dir.is_dir():
            raise ToolExecutionError(
                "copy", [str(self.base_dir)], message=f"Base directory not found: {self.base_dir}"
            )
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)

        copied = 0
        for critical_path in self.config.critical_paths:
            source = self.base_dir / critical_path
            if not source.exists():
                logger.debug(f"Skipping missing critical path: {source}")
                continue
            copied += await asyncio.to_thread(_copy_tree, source, staging / critical_path, newer_than)
        return copied

    async def backup(self, backup_id: str, output_dir: Path) -> StoreContribution:
        """Archive the critical application directories.

        Args:
            backup_id: Backup the artifact belongs to
            output_dir: Backup working directory

        Returns:
            StoreContribution describing the archive
        """
        staging = output_dir / ".staging" / self.name
        copied = await self._stage(staging, newer_than=None)

        archive_file = output_dir / self.name / f"{backup_id}-files.tar.gz"
        await create_archive(staging, archive_file)
        shutil.rmtree(staging)

        logger.info(f"Application files backup completed: {archive_file} ({copied} files)")
        return await self._finalize_artifact(
            archive_file, output_dir, compressed=True, statistics={"files": copied}
        )

    async def backup_incremental(self, backup_id: str, output_dir: Path, since: datetime) -> StoreContribution:
        """Archive files modified after `since`."""
        staging = output_dir / ".staging" / self.name
        copied = await self._stage(staging, newer_than=ensure_aware(since).timestamp())

        archive_file = output_dir / self.name / f"{backup_id}-files-incremental.tar.gz"
        await create_archive(staging, archive_file)
        shutil.rmtree(staging)

        logger.info(f"Application files incremental backup completed: {copied} changed files")
        return await self._finalize_artifact(
            archive_file, output_dir, compressed=True, incremental=True, statistics={"files": copied}
        )

    async def restore(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> None:
        archive_file = await self._materialize(artifact, backup_dir, work_dir)
        extracted = await extract_archive(archive_file, self.restore_root)
        logger.info(f"Application files restored to {self.restore_root} ({extracted} entries)")

    async def apply_incremental(
        self,
        artifact: ArtifactRecord,
        backup_dir: Path,
        work_dir: Path,
        target_time: Optional[datetime] = None,
    ) -> None:
        """Overlay changed files, skipping any modified after `target_time`."""
        archive_file = await self._materialize(artifact, backup_dir, work_dir)
        limit = ensure_aware(target_time).timestamp() if target_time else None
        extracted = await extract_archive(
            archive_file,
            self.restore_root,
            member_filter=(lambda member: member.mtime <= limit) if limit is not None else None,
        )
        logger.info(f"Applied {extracted} incremental file entries to {self.restore_root}")

    async def verify_artifact(self, artifact: ArtifactRecord, backup_dir: Path, sandbox_dir: Path) -> None:
        archive_file = await self._materialize(artifact, backup_dir, sandbox_dir)
        await extract_archive(archive_file, sandbox_dir / "files")

    async def check_health(self) -> bool:
        return self.base_dir.is_dir()
