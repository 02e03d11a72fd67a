"""Tests for RecoveryPointIndex."""

import pytest
from datetime import datetime, timedelta, timezone

from nano_dr.errors import PreconditionError
from nano_dr.models import BackupStatus, BackupType
from nano_dr.recovery import RecoveryPointIndex

from tests.utils import make_metadata

T0 = datetime(2025, 6, 1, 2, 0, tzinfo=timezone.utc)


@pytest.fixture
def chain():
    full = make_metadata("backup_full", timestamp=T0, size=300 * 1024 * 1024)
    inc1 = make_metadata(
        "backup_inc1", BackupType.INCREMENTAL, timestamp=T0 + timedelta(hours=24),
        parent_id="backup_full", size=1024,
    )
    inc2 = make_metadata(
        "backup_inc2", BackupType.INCREMENTAL, timestamp=T0 + timedelta(hours=48),
        parent_id="backup_full", size=1024,
    )
    return {r.id: r for r in (full, inc1, inc2)}


def register_all(index, records):
    for record in sorted(records.values(), key=lambda r: r.timestamp):
        index.register(record, records.get)


def test_register_builds_chains(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)
    points = index.list()

    assert [p.backup_ids for p in points] == [
        ["backup_full"],
        ["backup_full", "backup_inc1"],
        ["backup_full", "backup_inc1", "backup_inc2"],
    ]
    assert points[0].type == BackupType.FULL
    assert points[2].type == BackupType.INCREMENTAL
    assert points[1].recovery_point_objective == 24 * 60
    assert points[0].recovery_point_objective == 0
    assert points[0].recovery_time_objective == 3 + 5
    assert points[2].recovery_time_objective > points[0].recovery_time_objective


def test_register_rejects_unsuccessful_backup(temp_root):
    index = RecoveryPointIndex(temp_root)
    failed = make_metadata("backup_failed", status=BackupStatus.FAILED)

    with pytest.raises(PreconditionError):
        index.register(failed, lambda _: None)
    assert index.list() == []


def test_register_rejects_orphan_incremental(temp_root):
    index = RecoveryPointIndex(temp_root)
    orphan = make_metadata("backup_orphan", BackupType.INCREMENTAL, parent_id="backup_gone")

    with pytest.raises(PreconditionError):
        index.register(orphan, lambda _: None)


def test_find_latest_point_before_target(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)

    assert index.find(T0 - timedelta(seconds=1), chain.get) is None
    assert index.find(T0, chain.get).backup_ids == ["backup_full"]
    assert index.find(T0 + timedelta(hours=30), chain.get).backup_ids == ["backup_full", "backup_inc1"]
    assert index.find(T0 + timedelta(days=30), chain.get).backup_ids[-1] == "backup_inc2"


def test_find_skips_chains_with_missing_members(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)
    without_inc1 = {k: v for k, v in chain.items() if k != "backup_inc1"}

    point = index.find(T0 + timedelta(days=30), without_inc1.get)

    assert point.backup_ids == ["backup_full"]


def test_points_persist_and_reload(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)
    index.mark_verified("backup_full")

    reloaded = RecoveryPointIndex(temp_root)
    reloaded.load(chain.values())

    assert [p.backup_ids for p in reloaded.list()] == [p.backup_ids for p in index.list()]
    assert reloaded.list()[0].verified is True


def test_rebuild_when_index_missing(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    index.load(chain.values())

    assert len(index.list()) == 3
    assert (temp_root / "recovery" / "points.json").exists()


def test_rebuild_when_index_corrupt(temp_root, chain):
    (temp_root / "recovery").mkdir()
    (temp_root / "recovery" / "points.json").write_text("garbage")

    index = RecoveryPointIndex(temp_root)
    index.load(chain.values())

    assert len(index.list()) == 3


def test_mark_verified_needs_whole_chain(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)

    newly = index.mark_verified("backup_full")
    assert [p.backup_ids for p in newly] == [["backup_full"]]

    newly = index.mark_verified("backup_inc1")
    assert [p.backup_ids for p in newly] == [["backup_full", "backup_inc1"]]
    assert index.list()[2].verified is False


def test_remove_backups_keeps_later_incrementals(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)
    index.mark_verified("backup_full")
    index.mark_verified("backup_inc2")

    remaining = [r for r in chain.values() if r.id != "backup_inc1"]
    dropped = index.remove_backups(["backup_inc1"], remaining)

    assert dropped == 1
    points = index.list()
    assert [p.backup_ids for p in points] == [["backup_full"], ["backup_full", "backup_inc2"]]
    assert points[1].verified is True

    point = index.find(T0 + timedelta(hours=50), {r.id: r for r in remaining}.get)
    assert point.backup_ids == ["backup_full", "backup_inc2"]


def test_remove_backups_drops_whole_chain(temp_root, chain):
    index = RecoveryPointIndex(temp_root)
    register_all(index, chain)

    dropped = index.remove_backups(list(chain), [])

    assert dropped == 3
    assert index.list() == []
