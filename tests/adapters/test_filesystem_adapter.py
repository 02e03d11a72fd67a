"""Tests for FilesystemAdapter."""

import os
import pytest
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

from nano_dr.adapters import FilesystemAdapter
from nano_dr.config import FilesystemConfig
from nano_dr.errors import ToolExecutionError


@pytest.fixture
def app_dir(temp_root):
    base = temp_root / "app"
    (base / "uploads" / "avatars").mkdir(parents=True)
    (base / "config").mkdir()
    (base / "uploads" / "avatars" / "a.png").write_bytes(b"png")
    (base / "config" / "app.yml").write_text("debug: false")
    (base / "tmp").mkdir()
    (base / "tmp" / "cache.bin").write_bytes(b"ignored")
    return base


def make_adapter(base, restore_root=None, **overrides):
    config = FilesystemConfig(
        critical_paths=["uploads", "config", "certificates"],
        base_dir=str(base),
        restore_root=str(restore_root) if restore_root else None,
        **overrides,
    )
    return FilesystemAdapter(config, MagicMock())


@pytest.mark.asyncio
async def test_backup_and_restore_critical_paths(temp_root, app_dir):
    restore_root = temp_root / "restored"
    adapter = make_adapter(app_dir, restore_root)
    output_dir = temp_root / "out"

    contribution = await adapter.backup("backup_1", output_dir)

    assert contribution.artifact.path == "files/backup_1-files.tar.gz"
    assert contribution.statistics == {"files": 2}

    await adapter.restore(contribution.artifact, output_dir, temp_root / "work")

    assert (restore_root / "uploads" / "avatars" / "a.png").read_bytes() == b"png"
    assert (restore_root / "config" / "app.yml").read_text() == "debug: false"
    assert not (restore_root / "tmp").exists()


@pytest.mark.asyncio
async def test_backup_missing_base_dir(temp_root):
    adapter = make_adapter(temp_root / "does-not-exist")

    with pytest.raises(ToolExecutionError, match="Base directory not found"):
        await adapter.backup("backup_1", temp_root / "out")


@pytest.mark.asyncio
async def test_incremental_contains_only_changed_files(temp_root, app_dir):
    old = time.time() - 3600
    for path in app_dir.rglob("*"):
        if path.is_file():
            os.utime(path, (old, old))
    since = datetime.fromtimestamp(old + 60, tz=timezone.utc)
    (app_dir / "uploads" / "new.txt").write_text("fresh")

    restore_root = temp_root / "restored"
    adapter = make_adapter(app_dir, restore_root)
    output_dir = temp_root / "out"

    contribution = await adapter.backup_incremental("backup_2", output_dir, since)

    assert contribution.statistics == {"files": 1}
    assert contribution.artifact.incremental is True

    await adapter.apply_incremental(contribution.artifact, output_dir, temp_root / "work")
    assert (restore_root / "uploads" / "new.txt").read_text() == "fresh"
    assert not (restore_root / "config" / "app.yml").exists()


@pytest.mark.asyncio
async def test_encrypted_backup_verifies_in_sandbox(temp_root, app_dir):
    adapter = make_adapter(app_dir, encryption_key="files-key")
    output_dir = temp_root / "out"
    contribution = await adapter.backup("backup_1", output_dir)
    sandbox = temp_root / "sandbox"

    await adapter.verify_artifact(contribution.artifact, output_dir, sandbox)

    assert contribution.artifact.encrypted is True
    assert (sandbox / "files" / "config" / "app.yml").exists()


@pytest.mark.asyncio
async def test_check_health(temp_root, app_dir):
    assert await make_adapter(app_dir).check_health() is True
    assert await make_adapter(temp_root / "missing").check_health() is False
