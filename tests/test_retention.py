"""Tests for zpm.retention module."""
from __future__ import annotations

import os
from datetime import datetime, timedelta

import pytest

from zpm.executor import ExternalCommandError
from zpm.models import Snapshot
from zpm.retention import expired_directories, expired_snapshots, prune_expired
from tests.conftest import MockExecutor

NOW = datetime(2026, 10, 15, 12, 0, 0)
DS = "tank/incus-backup"
AGES = [3, 6, 7, 8, 100]
LIST_SNAPS = ("zfs", "list", "-H", "-o", "name", "-t", "snapshot", "-s", "creation", DS)


def _ts(age_days: int) -> str:
    return (NOW - timedelta(days=age_days)).strftime("%Y%m%d-%H%M%S")


@pytest.fixture
def backup_root(tmp_path):
    """incus-backups/ with one directory per age in AGES, mtime set to match."""
    root = tmp_path / "incus-backups"
    root.mkdir()
    for age in AGES:
        d = root / _ts(age)
        d.mkdir()
        (d / f"incus-full-{_ts(age)}.tar.gz").write_bytes(b"")
        stamp = (NOW - timedelta(days=age)).timestamp()
        os.utime(d, (stamp, stamp))
    # Not a backup directory: never touched
    other = root / "lost+found"
    other.mkdir()
    os.utime(other, (0, 0))
    return root


def _snap_output() -> str:
    names = [f"{DS}@incus-backup-{_ts(age)}" for age in AGES]
    names += [
        f"{DS}@incus-backup-2026AB01-000000",  # malformed
        f"{DS}@manual-before-upgrade",          # not ours
    ]
    return "\n".join(names) + "\n"


def test_expired_directories_strictly_older(backup_root):
    expired = expired_directories(str(backup_root), 7, NOW)
    assert [os.path.basename(p) for p in expired] == sorted([_ts(8), _ts(100)])


def test_expired_directories_missing_root(tmp_path):
    assert expired_directories(str(tmp_path / "nope"), 7, NOW) == []


def test_expired_snapshots_boundary_and_malformed(capsys):
    snaps = [Snapshot.parse(line) for line in _snap_output().split()]
    expired = expired_snapshots(snaps, 7, NOW)
    assert {s.name for s in expired} == {
        f"incus-backup-{_ts(8)}",
        f"incus-backup-{_ts(100)}",
    }
    err = capsys.readouterr().err
    assert "incus-backup-2026AB01-000000" in err
    assert "manual-before-upgrade" not in err


def test_prune_removes_exactly_expired(backup_root):
    responses = {LIST_SNAPS: _snap_output()}
    for age in (8, 100):
        responses[("zfs", "destroy", f"{DS}@incus-backup-{_ts(age)}")] = ""
    exec_ = MockExecutor(responses)

    result = prune_expired(str(backup_root), DS, exec_, retention_days=7, now=NOW)

    remaining = sorted(p.name for p in backup_root.iterdir())
    assert remaining == sorted([_ts(3), _ts(6), _ts(7), "lost+found"])
    assert sorted(result.destroyed_snapshots) == sorted(
        f"{DS}@incus-backup-{_ts(age)}" for age in (8, 100)
    )
    assert result.skipped == [f"{DS}@incus-backup-2026AB01-000000"]
    assert result.errors == []


def test_prune_dry_run_changes_nothing(backup_root):
    exec_ = MockExecutor({LIST_SNAPS: _snap_output()})
    result = prune_expired(str(backup_root), DS, exec_, now=NOW, dry_run=True)
    assert len(list(backup_root.iterdir())) == len(AGES) + 1
    assert len(result.removed_dirs) == 2
    assert len(result.destroyed_snapshots) == 2
    assert not any(c[:2] == ["zfs", "destroy"] for c in exec_.calls)


def test_prune_passes_are_independent(tmp_path):
    """A missing backup directory does not stop snapshot pruning."""
    exec_ = MockExecutor({
        LIST_SNAPS: f"{DS}@incus-backup-{_ts(30)}\n",
        ("zfs", "destroy", f"{DS}@incus-backup-{_ts(30)}"): "",
    })
    result = prune_expired(str(tmp_path / "gone"), DS, exec_, now=NOW)
    assert result.destroyed_snapshots == [f"{DS}@incus-backup-{_ts(30)}"]


def test_prune_snapshot_listing_failure_keeps_dir_pass(backup_root, capsys):
    exec_ = MockExecutor({
        LIST_SNAPS: ExternalCommandError(list(LIST_SNAPS), 1, "dataset does not exist"),
    })
    result = prune_expired(str(backup_root), DS, exec_, now=NOW)
    assert len(result.removed_dirs) == 2
    assert len(result.errors) == 1
    assert DS in result.errors[0]


def test_prune_destroy_failure_continues(backup_root):
    first, second = (f"{DS}@incus-backup-{_ts(age)}" for age in (100, 8))
    exec_ = MockExecutor({
        LIST_SNAPS: f"{first}\n{second}\n",
        ("zfs", "destroy", first): ExternalCommandError(["zfs", "destroy", first], 1, "busy"),
        ("zfs", "destroy", second): "",
    })
    result = prune_expired(str(backup_root), DS, exec_, now=NOW)
    assert result.destroyed_snapshots == [second]
    assert first in result.errors[0]
