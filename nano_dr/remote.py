"""Off-site upload and redundant local copies of finished backups."""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Callable, List, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ._utils import logger
from .config import StorageConfig
from .errors import ToolExecutionError
from .models import BackupLocation


class ReplicationManager:
    """Copy a finished backup directory to mirrors and to S3."""

    def __init__(self, config: StorageConfig, session_factory: Optional[Callable[[], Any]] = None):
        self.config = config
        self._session_factory = session_factory or self._default_session

    def _default_session(self):
        remote = self.config.remote
        return aioboto3.Session(
            aws_access_key_id=remote.access_key,
            aws_secret_access_key=remote.secret_key,
            region_name=remote.region,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.config.redundant_paths) or self.config.remote.enabled

    def _remote_prefix(self, backup_id: str) -> str:
        prefix = self.config.remote.prefix.strip("/")
        return f"{prefix}/{backup_id}" if prefix else backup_id

    async def replicate(self, backup_id: str, backup_dir: Path) -> BackupLocation:
        """Mirror and upload `backup_dir`; returns the remote/redundant locations.

        Raises:
            ToolExecutionError: if any copy fails
        """
        location = BackupLocation(local=str(backup_dir))
        location.redundant = await self.mirror(backup_id, backup_dir)
        if self.config.remote.enabled:
            location.remote = await self.upload(backup_id, backup_dir)
        return location

    async def mirror(self, backup_id: str, backup_dir: Path) -> List[str]:
        copies = []
        for mirror_root in self.config.redundant_paths:
            target = Path(mirror_root) / backup_id
            try:
                if target.exists():
                    await asyncio.to_thread(shutil.rmtree, target)
                await asyncio.to_thread(shutil.copytree, backup_dir, target)
            except OSError as e:
                raise ToolExecutionError("copy", [str(target)], message=f"Redundant copy to {target} failed: {e}") from e
            copies.append(str(target))
            logger.info(f"Redundant copy written: {target}")
        return copies

    async def upload(self, backup_id: str, backup_dir: Path) -> str:
        remote = self.config.remote
        prefix = self._remote_prefix(backup_id)
        files = sorted(p for p in backup_dir.rglob("*") if p.is_file())

        try:
            async with self._session_factory().client("s3", endpoint_url=remote.endpoint_url) as s3:
                for file_path in files:
                    key = f"{prefix}/{file_path.relative_to(backup_dir).as_posix()}"
                    await self._upload_file(s3, file_path, key)
        except (BotoCoreError, ClientError) as e:
            raise ToolExecutionError(
                "s3", [f"s3://{remote.bucket}/{prefix}"], message=f"Upload to s3://{remote.bucket}/{prefix} failed: {e}"
            ) from e

        uri = f"s3://{remote.bucket}/{prefix}"
        logger.info(f"Uploaded {len(files)} files to {uri}")
        return uri

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((BotoCoreError, ClientError)),
        reraise=True,
    )
    async def _upload_file(self, s3, file_path: Path, key: str) -> None:
        await s3.upload_file(str(file_path), self.config.remote.bucket, key)
        logger.debug(f"Uploaded {file_path.name} -> {key}")

    async def download(self, backup_id: str, target_dir: Path) -> int:
        """Fetch the remote copy of a backup into `target_dir`.

        Returns:
            Number of files downloaded

        Raises:
            ToolExecutionError: if the remote copy is missing or cannot be read
        """
        remote = self.config.remote
        prefix = self._remote_prefix(backup_id)
        staging = target_dir.with_name(f"{target_dir.name}.download")
        downloaded = 0

        try:
            async with self._session_factory().client("s3", endpoint_url=remote.endpoint_url) as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=remote.bucket, Prefix=f"{prefix}/"):
                    for obj in page.get("Contents", []):
                        relative = obj["Key"][len(prefix) + 1:]
                        destination = staging / relative
                        if not relative or staging.resolve() not in destination.resolve().parents:
                            raise ToolExecutionError("s3", [obj["Key"]], message=f"Unsafe object key {obj['Key']}")
                        destination.parent.mkdir(parents=True, exist_ok=True)
                        await s3.download_file(remote.bucket, obj["Key"], str(destination))
                        downloaded += 1
        except (BotoCoreError, ClientError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise ToolExecutionError(
                "s3", [f"s3://{remote.bucket}/{prefix}"], message=f"Download of s3://{remote.bucket}/{prefix} failed: {e}"
            ) from e
        except ToolExecutionError:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        if not downloaded:
            shutil.rmtree(staging, ignore_errors=True)
            raise ToolExecutionError("s3", [f"s3://{remote.bucket}/{prefix}"], message=f"No remote copy of {backup_id}")

        staging.rename(target_dir)
        logger.info(f"Downloaded {downloaded} files from s3://{remote.bucket}/{prefix}")
        return downloaded

    async def delete(self, backup_id: str, location: BackupLocation) -> None:
        """Remove mirrors and remote objects of a purged backup (best effort per copy)."""
        for copy in location.redundant:
            path = Path(copy)
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path, True)

        if not (location.remote and self.config.remote.enabled):
            return

        prefix = self._remote_prefix(backup_id)
        try:
            async with self._session_factory().client("s3", endpoint_url=self.config.remote.endpoint_url) as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.config.remote.bucket, Prefix=f"{prefix}/"):
                    objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                    if objects:
                        await s3.delete_objects(Bucket=self.config.remote.bucket, Delete={"Objects": objects})
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to delete remote copy {location.remote}: {e}")
