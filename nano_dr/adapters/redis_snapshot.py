"""Redis backup/restore adapter based on BGSAVE snapshots."""

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .._utils import logger
from ..config import RedisConfig
from ..errors import IntegrityError, ToolExecutionError
from ..executor import CommandExecutor
from ..models import ArtifactRecord, StoreContribution
from .base import StoreAdapter

RDB_MAGIC = b"REDIS"


class RedisSnapshotAdapter(StoreAdapter):
    """Trigger a background snapshot, wait for it (bounded) and copy the RDB file.

    Restoring places the RDB file in the server's data directory; the server
    loads it when dependent services are resumed.
    """

    name = "redis"

    def __init__(
        self,
        config: RedisConfig,
        executor: CommandExecutor,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        super().__init__(executor)
        self.config = config
        self._client_factory = client_factory or self._default_client

    def _default_client(self):
        return aioredis.from_url(
            self.config.url,
            password=self.config.password,
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_timeout,
        )

    async def backup(self, backup_id: str, output_dir: Path) -> StoreContribution:
        """Snapshot the live store and copy the resulting RDB file.

        Args:
            backup_id: Backup the artifact belongs to
            output_dir: Backup working directory

        Returns:
            StoreContribution describing the snapshot copy
        """
        client = self._client_factory()
        try:
            try:
                await client.ping()
                previous = await self._save_marker(client)
                await self._trigger_snapshot(client)
                await asyncio.wait_for(
                    self._wait_for_snapshot(client, previous),
                    timeout=self.config.snapshot_timeout,
                )
                rdb_path = await self._locate_rdb(client)
            except asyncio.TimeoutError as e:
                raise ToolExecutionError(
                    "redis", ["BGSAVE"],
                    message=f"Redis snapshot did not complete within {self.config.snapshot_timeout}s",
                ) from e
            except RedisError as e:
                raise ToolExecutionError("redis", ["BGSAVE"], message=f"Redis snapshot failed: {e}") from e
        finally:
            await client.aclose()

        if not rdb_path.exists():
            raise ToolExecutionError("redis", ["BGSAVE"], message=f"Snapshot file not found: {rdb_path}")

        output_file = output_dir / self.name / f"{backup_id}-redis.rdb"
        output_file.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, rdb_path, output_file)

        logger.info(f"Redis backup completed: {output_file}")
        return await self._finalize_artifact(output_file, output_dir, compressed=False)

    async def _trigger_snapshot(self, client) -> None:
        try:
            await client.bgsave()
        except ResponseError as e:
            # A save started by someone else still produces a fresh snapshot
            if "already in progress" not in str(e).lower():
                raise
            logger.info("Redis background save already in progress; waiting for it")

    async def _save_marker(self, client) -> Tuple[Optional[int], Any]:
        """Completed-save counter (`rdb_saves`, Redis 7+) and LASTSAVE before the snapshot."""
        info = await client.info("persistence")
        saves = info.get("rdb_saves")
        return (int(saves) if saves is not None else None), await client.lastsave()

    async def _snapshot_finished(self, client, info: dict, previous: Tuple[Optional[int], Any]) -> bool:
        previous_saves, previous_lastsave = previous
        saves = info.get("rdb_saves")
        # LASTSAVE has one-second resolution, the counter does not
        if saves is not None and previous_saves is not None and int(saves) > previous_saves:
            return True
        return await client.lastsave() != previous_lastsave

    async def _wait_for_snapshot(self, client, previous: Tuple[Optional[int], Any]) -> None:
        seen_running = False
        while True:
            info = await client.info("persistence")
            if int(info.get("rdb_bgsave_in_progress", 0)):
                seen_running = True
            elif seen_running or await self._snapshot_finished(client, info, previous):
                status = info.get("rdb_last_bgsave_status", "ok")
                if isinstance(status, bytes):
                    status = status.decode()
                if status != "ok":
                    raise ToolExecutionError("redis", ["BGSAVE"], message=f"Redis BGSAVE reported status {status}")
                return
            await asyncio.sleep(self.config.poll_interval)

    async def _locate_rdb(self, client) -> Path:
        """Resolve the RDB path from the server, falling back to configuration."""
        try:
            directory = (await client.config_get("dir")).get("dir")
            filename = (await client.config_get("dbfilename")).get("dbfilename")
        except ResponseError:
            # CONFIG is commonly renamed or disabled on managed servers
            directory, filename = None, None
        if isinstance(directory, bytes):
            directory = directory.decode()
        if isinstance(filename, bytes):
            filename = filename.decode()
        return Path(directory or self.config.data_dir) / (filename or self.config.dbfilename)

    async def restore(self, artifact: ArtifactRecord, backup_dir: Path, work_dir: Path) -> None:
        snapshot = await self._materialize(artifact, backup_dir, work_dir)
        self._check_rdb_header(snapshot, artifact)

        target = Path(self.config.data_dir) / self.config.dbfilename
        target.parent.mkdir(parents=True, exist_ok=True)
        staged = target.with_name(f".{target.name}.restore")
        await asyncio.to_thread(shutil.copy2, snapshot, staged)
        os.replace(staged, target)

        logger.info(f"Redis snapshot restored to {target}; it is loaded when the server restarts")

    async def verify_artifact(self, artifact: ArtifactRecord, backup_dir: Path, sandbox_dir: Path) -> None:
        snapshot = await self._materialize(artifact, backup_dir, sandbox_dir)
        self._check_rdb_header(snapshot, artifact)

    @staticmethod
    def _check_rdb_header(snapshot: Path, artifact: ArtifactRecord) -> None:
        with open(snapshot, "rb") as f:
            header = f.read(9)
        if not header.startswith(RDB_MAGIC) or not header[5:].isdigit():
            raise IntegrityError(f"Redis snapshot {artifact.path} has no valid RDB header")

    async def check_health(self) -> bool:
        client = self._client_factory()
        try:
            return bool(await client.ping())
        except RedisError:
            return False
        finally:
            await client.aclose()
