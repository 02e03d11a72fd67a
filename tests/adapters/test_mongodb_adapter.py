"""Tests for MongoAdapter."""

import json
import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from nano_dr.adapters import MongoAdapter
from nano_dr.config import MongoConfig
from nano_dr.errors import IntegrityError, ToolExecutionError
from nano_dr.executor import CommandResult


def make_executor(dump_files=("app/users.bson.gz", "app/users.metadata.json.gz")):
    """Executor whose mongodump writes `dump_files` below --out= and records restore dirs."""
    executor = MagicMock()
    executor.seen_dirs = []

    async def run(tool, args, env=None, cwd=None, secrets=()):
        for arg in args:
            if arg.startswith("--out="):
                out = Path(arg.split("=", 1)[1])
                for name in dump_files:
                    target = out / name
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(b"bson")
            if arg.startswith("--dir="):
                directory = Path(arg.split("=", 1)[1])
                executor.seen_dirs.append(sorted(p.name for p in directory.rglob("*") if p.is_file()))
        return CommandResult(0, b"", b"")

    executor.run = AsyncMock(side_effect=run)
    return executor


@pytest.mark.asyncio
async def test_backup_archives_dump(temp_root):
    executor = make_executor()
    adapter = MongoAdapter(MongoConfig(database="app"), executor)

    contribution = await adapter.backup("backup_1", temp_root)

    tool, args = executor.run.call_args.args
    assert tool == "mongodump"
    assert "--db=app" in args
    assert "--gzip" in args
    assert contribution.artifact.path == "mongodb/backup_1-mongodb.tar.gz"
    assert contribution.statistics == {"files": 2}
    assert not (temp_root / ".staging" / "mongodb").exists()


@pytest.mark.asyncio
async def test_restore_drops_and_restores_database(temp_root):
    executor = make_executor()
    adapter = MongoAdapter(MongoConfig(database="app"), executor)
    contribution = await adapter.backup("backup_1", temp_root)

    await adapter.restore(contribution.artifact, temp_root, temp_root / "work")

    tool, args = executor.run.call_args.args
    assert tool == "mongorestore"
    assert "--drop" in args
    assert "--nsInclude=app.*" in args
    assert executor.seen_dirs[-1] == ["users.bson.gz", "users.metadata.json.gz"]


@pytest.mark.asyncio
async def test_incremental_dumps_oplog_since(temp_root):
    executor = make_executor(dump_files=("local/oplog.rs.bson.gz",))
    adapter = MongoAdapter(MongoConfig(), executor)
    since = datetime(2025, 6, 1, tzinfo=timezone.utc)

    contribution = await adapter.backup_incremental("backup_2", temp_root, since)

    args = executor.run.call_args.args[1]
    assert "--collection=oplog.rs" in args
    query = json.loads(next(a for a in args if a.startswith("--query=")).split("=", 1)[1])
    assert query["ts"]["$gt"]["$timestamp"]["t"] == int(since.timestamp())
    assert contribution.artifact.incremental is True
    assert contribution.artifact.path == "mongodb/backup_2-mongodb-oplog.tar.gz"


@pytest.mark.asyncio
async def test_apply_incremental_replays_oplog_until_target(temp_root):
    executor = make_executor(dump_files=("local/oplog.rs.bson.gz",))
    adapter = MongoAdapter(MongoConfig(), executor)
    contribution = await adapter.backup_incremental(
        "backup_2", temp_root, datetime(2025, 6, 1, tzinfo=timezone.utc)
    )
    target = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)

    await adapter.apply_incremental(contribution.artifact, temp_root, temp_root / "work", target)

    args = executor.run.call_args.args[1]
    assert "--oplogReplay" in args
    assert f"--oplogLimit={int(target.timestamp())}:0" in args
    assert executor.seen_dirs[-1] == ["oplog.bson.gz"]


@pytest.mark.asyncio
async def test_verify_rejects_archive_without_collections(temp_root):
    adapter = MongoAdapter(MongoConfig(), make_executor(dump_files=("app/readme.txt",)))
    contribution = await adapter.backup("backup_1", temp_root)

    with pytest.raises(IntegrityError, match="no collection"):
        await adapter.verify_artifact(contribution.artifact, temp_root, temp_root / "sandbox")


@pytest.mark.asyncio
async def test_verify_valid_archive(temp_root):
    adapter = MongoAdapter(MongoConfig(encryption_key="k"), make_executor())
    contribution = await adapter.backup("backup_1", temp_root)

    await adapter.verify_artifact(contribution.artifact, temp_root, temp_root / "sandbox")


@pytest.mark.asyncio
async def test_check_health():
    executor = make_executor()
    adapter = MongoAdapter(MongoConfig(), executor)
    assert await adapter.check_health() is True
    assert executor.run.call_args.args[0] == "mongosh"

    executor.run = AsyncMock(side_effect=ToolExecutionError("mongosh", [], 1))
    assert await adapter.check_health() is False
