"""PostgreSQL backup/restore adapter using pg_dump, pg_restore and pg_basebackup."""

import asyncio
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .._utils import ensure_aware, logger, utcnow
from ..config import PostgresConfig
from ..errors import ConfigurationError, IntegrityError, PreconditionError, ToolExecutionError
from ..executor import CommandExecutor
from ..models import ArtifactRecord, StoreContribution
from ..utils import create_archive, extract_archive
from .base import StoreAdapter

BASE_BACKUP_SUFFIX = "-postgresql-base.tar.gz"
RECOVERY_BEGIN = "# nano-dr recovery begin"
RECOVERY_END = "# nano-dr recovery end"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresAdapter(StoreAdapter):
    """PostgreSQL in one of two modes.

    Logical (default): full backups are pg_dump custom-format dumps restored
    with pg_restore. No incrementals.

    Physical (`wal_archive_dir` and `data_dir` set): full backups are
    pg_basebackup tar images of the cluster and incrementals are the WAL
    segments archived by the server after the base backup. Restoring unpacks
    the image into `data_dir`; applying an incremental stages WAL into
    `wal_restore_dir` and writes the recovery settings, so the server replays
    the WAL (up to the target time) when dependent services are resumed.
    """

    name = "postgresql"

    def __init__(self, config: PostgresConfig, executor: CommandExecutor):
        super().__init__(executor, config.encryption_key)
        self.config = config
        self.physical = bool(config.wal_archive_dir and config.data_dir)
        self.supports_incremental = self.physical

    @property
    def _env(self) -> dict:
        return {"PGPASSWORD": self.config.password} if self.config.password else {}

    def _connection_args(self) -> List[str]:
        return [
            f"--host={self.config.host}",
            f"--port={self.config.port}",
            f"--username={self.config.username}",
        ]

    @staticmethod
    def _is_base_backup(artifact: ArtifactRecord) -> bool:
        return artifact.path.endswith(BASE_BACKUP_SUFFIX)

    async def backup(self, backup_id: str, output_dir: Path) -> StoreContribution:
        """Back up the database: a logical dump, or a base backup in physical mode.

        Args:
            backup_id: Backup the artifact belongs to
            output_dir: Backup working directory

        Returns:
            StoreContribution describing the artifact
        """
        if self.physical:
            return await self._base_backup(backup_id, output_dir)

        store_dir = output_dir / self.name
        store_dir.mkdir(parents=True, exist_ok=True)
        dump_file = store_dir / f"{backup_id}-postgresql.dump"

        args = [
            *self._connection_args(),
            f"--dbname={self.config.database}",
            "--format=custom",
            "--no-password",
            f"--file={dump_file}",
            f"--compress={self.config.compression_level if self.config.compression else 0}",
        ]
        await self.executor.run(self.config.dump_tool, args, env=self._env)

        if not dump_file.exists() or dump_file.stat().st_size == 0:
            raise ToolExecutionError(
                self.config.dump_tool, [], message=f"{self.config.dump_tool} produced no output"
            )

        logger.info(f"PostgreSQL backup completed: {dump_file}")
        return await self._finalize_artifact(dump_file, output_dir, compressed=self.config.compression)

    async def _base_backup(self, backup_id: str, output_dir: Path) -> StoreContribution:
        staging = output_dir / ".staging" / self.name
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)

        args = [
            *self._connection_args(),
            f"--pgdata={staging}",
            "--format=tar",
            "--wal-method=fetch",
            "--checkpoint=fast",
            "--no-password",
        ]
        await self.executor.run(self.config.basebackup_tool, args, env=self._env)

        base_tar = staging / "base.tar"
        if not base_tar.exists() or base_tar.stat().st_size == 0:
            raise ToolExecutionError(
                self.config.basebackup_tool, [], message=f"{self.config.basebackup_tool} produced no output"
            )

        archive_file = output_dir / self.name / f"{backup_id}{BASE_BACKUP_SUFFIX}"
        await create_archive(staging, archive_file)
        shutil.rmtree(staging)

        logger.info(f"PostgreSQL base backup completed: {archive_file}")
        return await self._finalize_artifact(archive_file, output_dir, compressed=True)

    async def backup_incremental(self, backup_id: str, output_dir: Path, since: datetime) -> StoreContribution:
        """Archive the WAL segments written after `since`."""
        if not self.physical:
            raise ConfigurationError(
                "wal_archive_dir and data_dir are required for incremental PostgreSQL backups"
            )

        wal_dir = Path(self.config.wal_archive_dir)
        if not wal_dir.is_dir():
            raise ToolExecutionError(
                "wal-archive", [str(wal_dir)], message=f"WAL archive directory not found: {wal_dir}"
            )

        since_ts = ensure_aware(since).timestamp()
        staging = output_dir / ".staging" / self.name
        staging.mkdir(parents=True, exist_ok=True)

        segments = 0
        for segment in sorted(wal_dir.iterdir()):
            if segment.is_file() and segment.stat().st_mtime > since_ts:
                await asyncio.to_thread(shutil.copy2, segment, staging / segment.name)
                segments += 1

        store_dir = output_dir / self.name
        archive_file = store_dir / f"{backup_id}-postgresql-wal.tar.gz"
        await create_archive(staging, archive_file)
        shutil.rmtree(staging)

        logger.info(f"PostgreSQL incremental backup completed: {segments} WAL segments")
        return await self._finalize_artifact(
            archive_file, output_dir, compressed=True, incremental=True,
            statistics={"wal_segments": segments},
        )

    async def restore(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> None:
        if self._is_base_backup(artifact):
            await self._restore_base_backup(artifact, backup_dir, work_dir)
            return

        dump_file = await self._materialize(artifact, backup_dir, work_dir)
        args = [
            *self._connection_args(),
            f"--dbname={self.config.database}",
            "--clean",
            "--if-exists",
            "--no-owner",
            "--no-password",
            str(dump_file),
        ]
        await self.executor.run(self.config.restore_tool, args, env=self._env)
        logger.info(f"PostgreSQL restore complete from: {artifact.path}")

    async def _restore_base_backup(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> None:
        """Replace `data_dir` with the base image; the server must be stopped."""
        if not self.config.data_dir:
            raise ConfigurationError("data_dir is required to restore a PostgreSQL base backup")

        archive_file = await self._materialize(artifact, backup_dir, work_dir)
        unpacked = work_dir / "base"
        await extract_archive(archive_file, unpacked)
        base_tar = unpacked / "base.tar"
        if not base_tar.exists():
            raise IntegrityError(f"PostgreSQL base backup {artifact.path} has no base.tar")

        data_dir = Path(self.config.data_dir)
        if data_dir.exists():
            previous = data_dir.with_name(f"{data_dir.name}.pre-restore-{utcnow():%Y%m%dT%H%M%S}")
            os.replace(data_dir, previous)
            logger.warning(f"Moved existing PostgreSQL data directory to {previous}")

        await extract_archive(base_tar, data_dir)
        data_dir.chmod(0o700)
        logger.info(f"PostgreSQL base backup restored into {data_dir} from: {artifact.path}")

    async def apply_incremental(
        self,
        artifact: ArtifactRecord,
        backup_dir: Path,
        work_dir: Path,
        target_time: Optional[datetime] = None,
    ) -> None:
        """Stage WAL no newer than `target_time` and configure the server to replay it."""
        if not self.config.wal_restore_dir or not self.config.data_dir:
            raise ConfigurationError("wal_restore_dir and data_dir are required to apply PostgreSQL incrementals")

        data_dir = Path(self.config.data_dir)
        if not (data_dir / "PG_VERSION").exists():
            raise PreconditionError(
                f"WAL from {artifact.path} can only be replayed on a restored base backup in {data_dir}"
            )

        archive_file = await self._materialize(artifact, backup_dir, work_dir)
        limit = ensure_aware(target_time).timestamp() if target_time else None

        staged = await extract_archive(
            archive_file,
            Path(self.config.wal_restore_dir),
            member_filter=(lambda member: member.mtime <= limit) if limit is not None else None,
        )
        await asyncio.to_thread(self._write_recovery_settings, data_dir, target_time)
        logger.info(f"Staged {staged} WAL entries into {self.config.wal_restore_dir}; replay starts with the server")

    def _write_recovery_settings(self, data_dir: Path, target_time: Optional[datetime]) -> None:
        """Write restore_command (and the target) into postgresql.auto.conf plus recovery.signal."""
        auto_conf = data_dir / "postgresql.auto.conf"
        lines = auto_conf.read_text(encoding="utf-8").splitlines() if auto_conf.exists() else []

        kept, inside = [], False
        for line in lines:
            if line == RECOVERY_BEGIN:
                inside = True
            elif line == RECOVERY_END:
                inside = False
            elif not inside:
                kept.append(line)

        wal_source = os.path.join(self.config.wal_restore_dir, "%f")
        kept.append(RECOVERY_BEGIN)
        restore_command = f'cp "{wal_source}" "%p"'
        kept.append(f"restore_command = {_quote(restore_command)}")
        if target_time is not None:
            kept.append(f"recovery_target_time = {_quote(ensure_aware(target_time).isoformat())}")
            kept.append("recovery_target_action = 'promote'")
        kept.append(RECOVERY_END)

        auto_conf.write_text("\n".join(kept) + "\n", encoding="utf-8")
        (data_dir / "recovery.signal").touch()

    async def verify_artifact(self, artifact: ArtifactRecord, backup_dir: Path, sandbox_dir: Path) -> None:
        """Check the artifact without touching any database or the live data directory."""
        plain = await self._materialize(artifact, backup_dir, sandbox_dir)
        if artifact.incremental:
            await extract_archive(plain, sandbox_dir / "wal")
            return

        if self._is_base_backup(artifact):
            unpacked = sandbox_dir / "base"
            await extract_archive(plain, unpacked)
            if not (unpacked / "base.tar").exists():
                raise IntegrityError(f"PostgreSQL base backup {artifact.path} has no base.tar")
            await extract_archive(unpacked / "base.tar", sandbox_dir / "data")
            if not (sandbox_dir / "data" / "PG_VERSION").exists():
                raise IntegrityError(f"PostgreSQL base backup {artifact.path} has no PG_VERSION")
            return

        try:
            result = await self.executor.run(self.config.restore_tool, ["--list", str(plain)])
        except ToolExecutionError as e:
            raise IntegrityError(f"pg_restore rejected {artifact.path}: {e}") from e
        if not result.stdout.strip():
            raise IntegrityError(f"PostgreSQL dump {artifact.path} has an empty table of contents")

    async def check_health(self) -> bool:
        try:
            await self.executor.run(
                "pg_isready",
                [f"--host={self.config.host}", f"--port={self.config.port}", f"--dbname={self.config.database}"],
            )
            return True
        except ToolExecutionError:
            return False
