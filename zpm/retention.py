"""Retention: remove backup directories and snapshots past the age limit."""
from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from zpm import zfs
from zpm.executor import ExternalCommandError
from zpm.models import SNAPSHOT_PREFIX, TIMESTAMP_FORMAT, Snapshot

if TYPE_CHECKING:
    from zpm.executor import Executor


@dataclass
class PruneResult:
    removed_dirs: list[str] = field(default_factory=list)
    destroyed_snapshots: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _is_backup_dir_name(name: str) -> bool:
    return name[:1].isdigit()


def expired_directories(
    backup_root: str,
    retention_days: int,
    now: datetime,
) -> list[str]:
    """
    Return backup directories whose modification age exceeds retention_days.

    Strictly greater: a directory exactly retention_days old is kept.
    """
    if not os.path.isdir(backup_root):
        return []
    limit = timedelta(days=retention_days)
    expired = []
    for name in sorted(os.listdir(backup_root)):
        path = os.path.join(backup_root, name)
        if not _is_backup_dir_name(name) or not os.path.isdir(path):
            continue
        age = now - datetime.fromtimestamp(os.path.getmtime(path))
        if age > limit:
            expired.append(path)
    return expired


def snapshot_timestamp(snapshot: Snapshot) -> datetime | None:
    """Parse the timestamp embedded in a backup snapshot name, or None."""
    if not snapshot.name.startswith(SNAPSHOT_PREFIX):
        return None
    try:
        return datetime.strptime(snapshot.name[len(SNAPSHOT_PREFIX):], TIMESTAMP_FORMAT)
    except ValueError:
        return None


def expired_snapshots(
    snapshots: list[Snapshot],
    retention_days: int,
    now: datetime,
    result: PruneResult | None = None,
) -> list[Snapshot]:
    """
    Return backup snapshots older than retention_days.

    Snapshots not named incus-backup-* are ignored. Backup snapshots with an
    unparseable timestamp are skipped (recorded in result.skipped).
    """
    limit = timedelta(days=retention_days)
    expired = []
    for snap in snapshots:
        if not snap.name.startswith(SNAPSHOT_PREFIX):
            continue
        taken = snapshot_timestamp(snap)
        if taken is None:
            print(
                f"  Warning: skipping {snap.full_name}: malformed timestamp",
                file=sys.stderr,
            )
            if result is not None:
                result.skipped.append(snap.full_name)
            continue
        if now - taken > limit:
            expired.append(snap)
    return expired


def prune_expired(
    backup_root: str,
    dataset: str,
    executor: "Executor",
    retention_days: int = 7,
    now: datetime | None = None,
    dry_run: bool = False,
    verbose: bool = False,
) -> PruneResult:
    """
    Run both retention passes and return what was (or would be) removed.

    The directory pass and the snapshot pass are independent: a failure in
    one is recorded and the other still runs.
    """
    now = now or datetime.now()
    result = PruneResult()
    prefix = "[dry-run] " if dry_run else ""

    # --- Pass 1: archive directories ---
    print(f"Cleaning old raw backups (>{retention_days}d) in {backup_root}")
    try:
        old_dirs = expired_directories(backup_root, retention_days, now)
    except OSError as e:
        result.errors.append(f"Cannot scan {backup_root}: {e}")
        print(f"  ERROR: cannot scan {backup_root}: {e}", file=sys.stderr)
        old_dirs = []
    for path in old_dirs:
        print(f"  {prefix}removing {path}")
        if dry_run:
            result.removed_dirs.append(path)
            continue
        try:
            shutil.rmtree(path)
            result.removed_dirs.append(path)
        except FileNotFoundError:
            # Already gone, nothing left to expire
            continue
        except OSError as e:
            result.errors.append(f"Cannot remove {path}: {e}")
            print(f"  ERROR removing {path}: {e}", file=sys.stderr)

    # --- Pass 2: snapshots ---
    print(f"Cleaning old snapshots (>{retention_days}d) on {dataset}")
    try:
        snaps = zfs.list_snapshots(dataset, executor)
    except ExternalCommandError as e:
        result.errors.append(f"Cannot list snapshots of {dataset}: {e}")
        print(f"  ERROR listing snapshots of {dataset}: {e}", file=sys.stderr)
        snaps = []
    for snap in expired_snapshots(snaps, retention_days, now, result):
        print(f"  {prefix}destroying {snap.full_name}")
        try:
            zfs.destroy_snapshot(snap, executor, dry_run=dry_run, verbose=verbose)
            result.destroyed_snapshots.append(snap.full_name)
        except ExternalCommandError as e:
            result.errors.append(f"Cannot destroy {snap.full_name}: {e}")
            print(f"  ERROR destroying {snap.full_name}: {e}", file=sys.stderr)

    return result
