"""Tests for zpm.cli command wiring."""
from __future__ import annotations

import builtins
import os
import textwrap
from dataclasses import replace
from types import SimpleNamespace

import pytest

from zpm import backup, cli
from zpm.backup import SnapshotFailedError
from zpm.executor import ExternalCommandError
from zpm.models import HAS_FILESYSTEM, IN_LVM, MOUNTED, BackupRecord
from zpm.retention import PruneResult
from tests.conftest import MockExecutor

LIST_POOLS = ("zpool", "list", "-H", "-o", "name")
DS = "tank/incus-backup"
STOP = ("systemctl", "stop", "incus.socket", "incus.service")
START = ("systemctl", "start", "incus.socket", "incus.service")


@pytest.fixture
def wired(monkeypatch, disks):
    """Point the CLI at a MockExecutor and the fake disk inventory."""
    exec_ = MockExecutor({LIST_POOLS: "rpool\n"})
    monkeypatch.setattr(cli, "_executor", lambda args: exec_)
    monkeypatch.setattr(cli, "enumerate_devices", lambda executor: disks)
    monkeypatch.setattr(cli, "classify_usage", lambda device, executor: frozenset())
    return exec_


@pytest.fixture
def job(tmp_path) -> str:
    """Backup job file with mountpoint and lock dir under tmp_path."""
    path = tmp_path / "job.yaml"
    path.write_text(textwrap.dedent(f"""\
        pool: tank
        dataset: incus-backup
        mountpoint: {tmp_path / "mnt"}
        lock_dir: {tmp_path / "lock"}
    """))
    return str(path)


def _run(argv) -> int:
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return exc.value.code


# ---------------------------------------------------------------------------
# pool devices / create
# ---------------------------------------------------------------------------

def test_pool_devices_usage_column_order(wired, disks, monkeypatch, capsys):
    flagged = [replace(disks[0], usage=frozenset({HAS_FILESYSTEM, IN_LVM, MOUNTED}))]
    monkeypatch.setattr(cli, "with_usage", lambda devices, executor: flagged)
    assert _run(["pool", "devices"]) == 0
    assert "mounted,inLvm,hasFilesystem" in capsys.readouterr().out


def test_pool_create_dry_run_prints_command(wired, capsys):
    code = _run(["pool", "create", "tank", "--devices", "sda", "sdb", "sdc", "sdd",
                 "--group-size", "2", "--cache", "sde", "--dry-run"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Data vdev #2 (mirror)" in out
    assert "zpool create -o ashift=12" in out
    assert "mirror /dev/disk/by-id/ata-WDC_WD40EFRX_A" in out
    # Nothing beyond the pool listing reached the executor
    assert wired.calls == [list(LIST_POOLS)]


def test_pool_create_rejects_reused_disk(wired, capsys):
    code = _run(["pool", "create", "tank", "--kind", "mirror", "--devices", "sda", "sdb",
                 "--spare", "/dev/sdb", "--dry-run"])
    assert code == 1
    assert "already used" in capsys.readouterr().err


def test_pool_create_rejects_existing_name(wired, capsys):
    code = _run(["pool", "create", "rpool", "--devices", "sda", "--dry-run"])
    assert code == 1
    assert "A pool named 'rpool' already exists" in capsys.readouterr().err


@pytest.mark.parametrize("command", [
    ["pool", "create", "tank", "--kind", "raid5", "--devices", "sda"],
    ["pool", "add-device", "rpool", "sda", "--kind", "raid5"],
])
def test_unknown_vdev_kind_rejected_by_parser(wired, command, capsys):
    assert _run(command) == 2
    assert "invalid choice: 'raid5'" in capsys.readouterr().err
    assert wired.calls == []


def test_pool_create_group_size_conflicts_with_kind(wired, capsys):
    code = _run(["pool", "create", "tank", "--kind", "raidz", "--group-size", "2",
                 "--devices", "sda", "sdb", "sdc", "sdd", "--dry-run"])
    assert code == 1
    assert "--kind raidz" in capsys.readouterr().err
    assert wired.calls == []


# ---------------------------------------------------------------------------
# pool destroy / add-device / remove-device
# ---------------------------------------------------------------------------

def test_pool_destroy_cancelled_on_name_mismatch(wired, monkeypatch, capsys):
    monkeypatch.setattr(builtins, "input", lambda prompt="": "rpool2")
    code = _run(["pool", "destroy", "rpool"])
    assert code == 1
    assert "do not match" in capsys.readouterr().out
    assert wired.calls == [list(LIST_POOLS)]


def test_pool_destroy_confirmed(wired, monkeypatch):
    monkeypatch.setattr(builtins, "input", lambda prompt="": "rpool")
    wired.responses[("zpool", "destroy", "rpool")] = ""
    assert _run(["pool", "destroy", "rpool"]) == 0
    assert wired.calls[-1] == ["zpool", "destroy", "rpool"]


def test_pool_remove_vdev_name_passes_through(wired):
    wired.responses[("zpool", "remove", "rpool", "mirror-1")] = ""
    assert _run(["pool", "remove-device", "rpool", "mirror-1"]) == 0
    assert wired.calls[-1] == ["zpool", "remove", "rpool", "mirror-1"]


def test_pool_remove_disk_resolves_to_by_id_path(wired):
    path = "/dev/disk/by-id/ata-WDC_WD40EFRX_C"
    wired.responses[("zpool", "remove", "rpool", path)] = ""
    assert _run(["pool", "remove-device", "rpool", "sdc"]) == 0
    assert wired.calls[-1] == ["zpool", "remove", "rpool", path]


def test_pool_add_mirrored_log(wired):
    cmd = ("zpool", "add", "rpool", "log", "mirror",
           "/dev/disk/by-id/ata-WDC_WD40EFRX_G", "/dev/disk/by-id/ata-WDC_WD40EFRX_H")
    wired.responses[cmd] = ""
    code = _run(["pool", "add-device", "rpool", "sdg", "sdh", "--role", "log", "--no-confirm"])
    assert code == 0
    assert wired.calls[-1] == list(cmd)


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------

def test_backup_list_missing_config(tmp_path, capsys):
    code = _run(["backup", "list", str(tmp_path / "missing.yaml")])
    assert code == 1
    assert "Config error" in capsys.readouterr().err


def test_backup_run_snapshot_failure_exits_1(wired, job, monkeypatch, capsys):
    record = BackupRecord(
        timestamp="20261015-020000",
        archive_path="/mnt/x/incus-full-20261015-020000.tar.gz",
        snapshot_name=f"{DS}@incus-backup-20261015-020000",
    )

    def fail(config, executor, verbose=False):
        raise SnapshotFailedError(record, ExternalCommandError(["zfs", "snapshot"], 1, "out of space"))

    monkeypatch.setattr(backup, "perform_backup", fail)
    assert _run(["backup", "run", job]) == 1
    assert "archive kept" in capsys.readouterr().err


def test_backup_run_prune_errors_exit_1(wired, job, monkeypatch):
    result = PruneResult()
    result.errors.append(f"{DS}@incus-backup-20260101-000000: dataset is busy")
    monkeypatch.setattr(
        backup, "perform_backup",
        lambda config, executor, verbose=False: SimpleNamespace(prune_result=result),
    )
    assert _run(["backup", "run", job]) == 1


def test_backup_restore_latest(wired, job, tmp_path):
    mountpoint = str(tmp_path / "mnt")
    for ts in ("20261001-020000", "20261014-020000"):
        directory = os.path.join(mountpoint, "incus-backups", ts)
        os.makedirs(directory)
        with open(os.path.join(directory, f"incus-full-{ts}.tar.gz"), "wb"):
            pass
    archive = os.path.join(mountpoint, "incus-backups", "20261014-020000",
                           "incus-full-20261014-020000.tar.gz")
    untar = ("tar", "xzpf", archive, "-C", "/")
    wired.responses.update({
        ("zfs", "list", "-H", "-o", "name", DS): DS + "\n",
        ("zfs", "get", "-H", "-o", "value", "mountpoint", DS): mountpoint + "\n",
        ("zfs", "get", "-H", "-o", "value", "mounted", DS): "yes\n",
        STOP: "",
        untar: "",
        START: "",
    })

    assert _run(["backup", "restore", job, "latest", "--no-confirm"]) == 0
    cmds = [tuple(c) for c in wired.calls]
    assert cmds[-3:] == [STOP, untar, START]
