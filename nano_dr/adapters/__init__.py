"""Store adapters for backup/restore operations."""

from .base import StoreAdapter
from .postgres import PostgresAdapter
from .mongodb import MongoAdapter
from .redis_snapshot import RedisSnapshotAdapter
from .filesystem import FilesystemAdapter

__all__ = ["StoreAdapter", "PostgresAdapter", "MongoAdapter", "RedisSnapshotAdapter", "FilesystemAdapter"]
