"""MongoDB backup/restore adapter using mongodump and mongorestore."""

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .._utils import ensure_aware, logger
from ..config import MongoConfig
from ..errors import IntegrityError, ToolExecutionError
from ..executor import CommandExecutor
from ..models import ArtifactRecord, StoreContribution
from ..utils import create_archive, extract_archive
from .base import StoreAdapter


class MongoAdapter(StoreAdapter):
    """Per-collection dumps archived into one tar.gz.

    Incremental artifacts are dumps of `local.oplog.rs` after the base
    backup, replayed with `mongorestore --oplogReplay --oplogLimit`.
    """

    name = "mongodb"
    supports_incremental = True

    def __init__(self, config: MongoConfig, executor: CommandExecutor):
        super().__init__(executor, config.encryption_key)
        self.config = config

    def _compression_args(self) -> List[str]:
        return ["--gzip"] if self.config.compression else []

    async def _dump_and_archive(
        self,
        args: List[str],
        staging: Path,
        archive_file: Path,
    ) -> int:
        """Run mongodump into `staging` and archive the result."""
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)

        await self.executor.run(self.config.dump_tool, [*args, f"--out={staging}"])

        dumped_files = sum(1 for p in staging.rglob("*") if p.is_file())
        await create_archive(staging, archive_file)
        shutil.rmtree(staging)
        return dumped_files

    async def backup(self, backup_id: str, output_dir: Path) -> StoreContribution:
        """Dump every collection of the configured database and archive the dump directory.

        Args:
            backup_id: Backup the artifact belongs to
            output_dir: Backup working directory

        Returns:
            StoreContribution describing the archive
        """
        staging = output_dir / ".staging" / self.name
        archive_file = output_dir / self.name / f"{backup_id}-mongodb.tar.gz"

        args = [f"--uri={self.config.uri}", f"--db={self.config.database}", *self._compression_args()]
        dumped_files = await self._dump_and_archive(args, staging, archive_file)

        logger.info(f"MongoDB backup completed: {archive_file}")
        return await self._finalize_artifact(
            archive_file, output_dir, compressed=True, statistics={"files": dumped_files}
        )

    async def backup_incremental(self, backup_id: str, output_dir: Path, since: datetime) -> StoreContribution:
        """Dump oplog entries newer than `since`."""
        since_seconds = int(ensure_aware(since).timestamp())
        query = json.dumps({"ts": {"$gt": {"$timestamp": {"t": since_seconds, "i": 0}}}})

        staging = output_dir / ".staging" / self.name
        archive_file = output_dir / self.name / f"{backup_id}-mongodb-oplog.tar.gz"

        args = [
            f"--uri={self.config.uri}",
            "--db=local",
            "--collection=oplog.rs",
            f"--query={query}",
            *self._compression_args(),
        ]
        dumped_files = await self._dump_and_archive(args, staging, archive_file)

        logger.info(f"MongoDB incremental backup completed: oplog since {since.isoformat()}")
        return await self._finalize_artifact(
            archive_file, output_dir, compressed=True, incremental=True, statistics={"files": dumped_files}
        )

    async def restore(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> None:
        archive_file = await self._materialize(artifact, backup_dir, work_dir)
        dump_dir = work_dir / "dump"
        await extract_archive(archive_file, dump_dir)

        args = [
            f"--uri={self.config.uri}",
            f"--nsInclude={self.config.database}.*",
            "--drop",
            *self._compression_args(),
            f"--dir={dump_dir}",
        ]
        await self.executor.run(self.config.restore_tool, args)
        logger.info(f"MongoDB restore complete from: {artifact.path}")

    async def apply_incremental(
        self,
        artifact: ArtifactRecord,
        backup_dir: Path,
        work_dir: Path,
        target_time: Optional[datetime] = None,
    ) -> None:
        """Replay oplog entries, stopping at `target_time` when given."""
        archive_file = await self._materialize(artifact, backup_dir, work_dir)
        extracted = work_dir / "oplog_extract"
        await extract_archive(archive_file, extracted)

        oplog_file = self._find_oplog(extracted)
        replay_dir = work_dir / "oplog_replay"
        replay_dir.mkdir(parents=True, exist_ok=True)
        suffix = ".bson.gz" if oplog_file.name.endswith(".gz") else ".bson"
        shutil.move(str(oplog_file), replay_dir / f"oplog{suffix}")

        args = [f"--uri={self.config.uri}", "--oplogReplay", *self._compression_args()]
        if target_time is not None:
            args.append(f"--oplogLimit={int(ensure_aware(target_time).timestamp())}:0")
        args.append(f"--dir={replay_dir}")

        await self.executor.run(self.config.restore_tool, args)
        logger.info(f"MongoDB oplog replayed from: {artifact.path}")

    @staticmethod
    def _find_oplog(directory: Path) -> Path:
        for candidate in directory.rglob("oplog.rs.bson*"):
            if candidate.is_file():
                return candidate
        raise IntegrityError(f"No oplog dump found in {directory}")

    async def verify_artifact(self, artifact: ArtifactRecord, backup_dir: Path, sandbox_dir: Path) -> None:
        archive_file = await self._materialize(artifact, backup_dir, sandbox_dir)
        extracted = sandbox_dir / "dump"
        await extract_archive(archive_file, extracted)

        if artifact.incremental:
            self._find_oplog(extracted)
            return

        bson_files = [p for p in extracted.rglob("*") if p.is_file() and ".bson" in p.name]
        if not bson_files:
            raise IntegrityError(f"MongoDB archive {artifact.path} contains no collection dumps")

    async def check_health(self) -> bool:
        try:
            await self.executor.run(
                "mongosh", [self.config.uri, "--quiet", "--eval", "db.runCommand({ping: 1}).ok"]
            )
            return True
        except ToolExecutionError:
            return False
