"""Backup cycle: quiesce the service, archive, snapshot, resume, prune."""
from __future__ import annotations

import fcntl
import glob
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterator, Sequence

from zpm import service, zfs
from zpm.errors import LockHeldError, NotFoundError
from zpm.executor import ExternalCommandError
from zpm.models import (
    ARCHIVE_PREFIX,
    ARCHIVE_SUFFIX,
    BACKUP_DIR_NAME,
    SNAPSHOT_PREFIX,
    TIMESTAMP_FORMAT,
    BackupRecord,
    Snapshot,
)
from zpm.retention import PruneResult, prune_expired

if TYPE_CHECKING:
    from zpm.executor import Executor
    from zpm.models import BackupConfig

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None:
    GREEN = RED = YELLOW = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"

# Backup cycle states
IDLE = "idle"
SERVICE_STOPPING = "service_stopping"
ARCHIVING = "archiving"
SNAPSHOTTING = "snapshotting"
SERVICE_RESUMING = "service_resuming"
PRUNING = "pruning"


class SnapshotFailedError(Exception):
    """The archive was written but the paired snapshot could not be taken."""
    def __init__(self, record: BackupRecord, cause: ExternalCommandError):
        self.record = record
        self.cause = cause
        super().__init__(
            f"Snapshot {record.snapshot_name} failed: {cause}; "
            f"archive kept at {record.archive_path}"
        )


def _confirm(prompt: str) -> bool:
    """Ask the user yes/no. Return True if yes."""
    try:
        answer = input(f"{prompt} [y/N] ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    return answer in ("y", "yes")


def backup_root(mountpoint: str) -> str:
    return os.path.join(mountpoint, BACKUP_DIR_NAME)


def make_record(mountpoint: str, dataset: str, timestamp: str) -> BackupRecord:
    directory = os.path.join(backup_root(mountpoint), timestamp)
    return BackupRecord(
        timestamp=timestamp,
        archive_path=os.path.join(directory, f"{ARCHIVE_PREFIX}{timestamp}{ARCHIVE_SUFFIX}"),
        snapshot_name=f"{dataset}@{SNAPSHOT_PREFIX}{timestamp}",
    )


# ---------------------------------------------------------------------------
# Serialization and signal handling
# ---------------------------------------------------------------------------

def lock_path(config: "BackupConfig") -> str:
    return os.path.join(config.lock_dir, f"zpm-{config.full_dataset.replace('/', '_')}.lock")


class LockFile:
    """Exclusive, non-blocking flock on a per-dataset lock file."""

    def __init__(self, path: str):
        self.path = path
        self.fd: int | None = None

    def __enter__(self):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self.fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(self.fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(self.fd)
            self.fd = None
            raise LockHeldError(f"Another zpm run holds the lock: {self.path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.fd is not None:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
            os.close(self.fd)
            self.fd = None


@contextmanager
def _trap_signals() -> Iterator[None]:
    """Turn SIGTERM/SIGHUP into KeyboardInterrupt so cleanup blocks run."""
    def handler(signum, _frame):
        raise KeyboardInterrupt(f"received signal {signum}")

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGHUP):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # Not the main thread; leave handlers alone
            break
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _resume(
    units: Sequence[str],
    executor: "Executor",
    on_state: Callable[[str], None],
    raise_errors: bool,
) -> None:
    on_state(SERVICE_RESUMING)
    print(f"Restarting {' '.join(units)}")
    try:
        service.start_services(units, executor)
    except ExternalCommandError as e:
        print(f"  {RED}ERROR: could not restart services: {e}{RESET}", file=sys.stderr)
        if raise_errors:
            raise


@contextmanager
def quiesced(
    units: Sequence[str],
    executor: "Executor",
    on_state: Callable[[str], None] = lambda _state: None,
) -> Iterator[None]:
    """
    Stop the service units for the duration of the block.

    Restarting is unconditional: it runs whether the stop, the block, or
    nothing at all failed. A stop failure aborts before the block runs.
    """
    on_state(SERVICE_STOPPING)
    print(f"Stopping {' '.join(units)} for a consistent copy")
    try:
        service.stop_services(units, executor)
    except BaseException as e:
        # Some units may already be down, interrupted or not
        if isinstance(e, ExternalCommandError):
            print(f"  {RED}ERROR: could not stop services: {e}{RESET}", file=sys.stderr)
        _resume(units, executor, on_state, raise_errors=False)
        raise
    try:
        yield
    except BaseException:
        _resume(units, executor, on_state, raise_errors=False)
        raise
    _resume(units, executor, on_state, raise_errors=True)


# ---------------------------------------------------------------------------
# Dataset preparation
# ---------------------------------------------------------------------------

def current_mountpoint(config: "BackupConfig", executor: "Executor") -> str:
    """Return where backups live without changing anything on the dataset."""
    if config.mountpoint:
        return config.mountpoint
    dataset = config.full_dataset
    if not zfs.dataset_exists(dataset, executor):
        raise NotFoundError(f"Dataset '{dataset}' not found")
    mountpoint = zfs.get_property(dataset, "mountpoint", executor)
    if mountpoint in ("legacy", "none", "-"):
        raise NotFoundError(f"Dataset '{dataset}' has no mountpoint ({mountpoint})")
    return mountpoint


def prepare_dataset(config: "BackupConfig", executor: "Executor", create: bool = True) -> str:
    """
    Make sure the backup dataset exists and is mounted. Return its mountpoint.

    A dataset with a 'legacy' or 'none' mountpoint is given
    /mnt/<pool>-<dataset>.
    """
    dataset = config.full_dataset
    if not zfs.dataset_exists(dataset, executor):
        if not create:
            raise NotFoundError(f"Dataset '{dataset}' not found")
        zfs.require_pool(config.pool, executor)
        print(f"Creating dataset {dataset}")
        zfs.create_dataset(dataset, executor)

    mountpoint = zfs.get_property(dataset, "mountpoint", executor)
    if config.mountpoint and mountpoint != config.mountpoint:
        mountpoint = config.mountpoint
        print(f"Setting mountpoint of {dataset} to {mountpoint}")
        zfs.set_mountpoint(dataset, mountpoint, executor)
    elif mountpoint in ("legacy", "none", "-"):
        mountpoint = config.default_mountpoint
        print(f"Setting mountpoint of {dataset} to {mountpoint}")
        zfs.set_mountpoint(dataset, mountpoint, executor)

    if zfs.get_property(dataset, "mounted", executor) != "yes":
        print(f"Mounting {dataset} at {mountpoint}")
        zfs.mount_dataset(dataset, executor)
    return mountpoint


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------

@dataclass
class BackupCycle:
    """One run of stop -> archive -> snapshot -> resume -> prune."""
    config: "BackupConfig"
    executor: "Executor"
    mountpoint: str
    verbose: bool = False
    state: str = IDLE
    history: list[str] = field(default_factory=list)
    record: BackupRecord | None = None
    snapshot_error: ExternalCommandError | None = None
    prune_result: PruneResult | None = None

    def _enter(self, state: str) -> None:
        self.state = state
        self.history.append(state)

    def _archive_cmd(self, record: BackupRecord) -> list[str]:
        sources = [s.lstrip("/") for s in self.config.sources]
        return ["tar", "czpf", record.archive_path, "-C", self.config.root, *sources]

    def run(self, now: datetime | None = None) -> BackupRecord:
        now = now or datetime.now()
        record = make_record(
            self.mountpoint,
            self.config.full_dataset,
            now.strftime(TIMESTAMP_FORMAT),
        )
        self.record = record

        try:
            with quiesced(self.config.services, self.executor, self._enter):
                self._enter(ARCHIVING)
                print(f"Creating backup directory: {record.directory}")
                os.makedirs(record.directory, exist_ok=True)
                print(f"Creating tarball {record.archive_path}")
                self.executor.run(self._archive_cmd(record))

                self._enter(SNAPSHOTTING)
                print(f"Creating ZFS snapshot {record.snapshot_name}")
                try:
                    zfs.create_snapshot(
                        Snapshot.parse(record.snapshot_name), self.executor, verbose=self.verbose,
                    )
                except ExternalCommandError as e:
                    # The archive alone is still a restorable backup
                    self.snapshot_error = e
                    print(f"  {RED}ERROR: snapshot failed: {e}{RESET}", file=sys.stderr)
        except BaseException:
            self._enter(IDLE)
            raise

        self._enter(PRUNING)
        self.prune_result = prune_expired(
            backup_root(self.mountpoint),
            self.config.full_dataset,
            self.executor,
            retention_days=self.config.retention_days,
            now=now,
            verbose=self.verbose,
        )
        self._enter(IDLE)

        if self.snapshot_error is not None:
            raise SnapshotFailedError(record, self.snapshot_error)
        print(f"{GREEN}Backup complete: {record.archive_path}{RESET}")
        return record


def perform_backup(
    config: "BackupConfig",
    executor: "Executor",
    now: datetime | None = None,
    verbose: bool = False,
) -> BackupCycle:
    """Prepare the dataset and run one locked backup cycle."""
    mountpoint = prepare_dataset(config, executor, create=True)
    cycle = BackupCycle(config=config, executor=executor, mountpoint=mountpoint, verbose=verbose)
    with LockFile(lock_path(config)), _trap_signals():
        cycle.run(now)
    return cycle


# ---------------------------------------------------------------------------
# Listing and restore
# ---------------------------------------------------------------------------

def _find_archive(directory: str, timestamp: str) -> str:
    expected = os.path.join(directory, f"{ARCHIVE_PREFIX}{timestamp}{ARCHIVE_SUFFIX}")
    if os.path.exists(expected):
        return expected
    found = sorted(glob.glob(os.path.join(directory, f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}")))
    return found[0] if found else expected


def list_backups(mountpoint: str, dataset: str) -> list[BackupRecord]:
    """Return backups under <mountpoint>/incus-backups, oldest first."""
    root = backup_root(mountpoint)
    if not os.path.isdir(root):
        return []
    records = []
    for name in sorted(os.listdir(root)):
        directory = os.path.join(root, name)
        if not name[:1].isdigit() or not os.path.isdir(directory):
            continue
        records.append(BackupRecord(
            timestamp=name,
            archive_path=_find_archive(directory, name),
            snapshot_name=f"{dataset}@{SNAPSHOT_PREFIX}{name}",
        ))
    return records


def select_backup(records: list[BackupRecord], choice: str) -> BackupRecord:
    """Pick a backup by timestamp, 'latest', or 1-based list index."""
    if not records:
        raise NotFoundError("No backups found")
    if choice == "latest":
        return records[-1]
    for record in records:
        if record.timestamp == choice:
            return record
    if choice.isdigit() and 1 <= int(choice) <= len(records):
        return records[int(choice) - 1]
    raise NotFoundError(f"Backup '{choice}' not found")


def restore_backup(
    record: BackupRecord,
    config: "BackupConfig",
    executor: "Executor",
) -> None:
    """Stop the service, untar the archive over the root, restart the service."""
    if not os.path.isfile(record.archive_path):
        raise NotFoundError(
            f"Archive for backup {record.timestamp} not found: {record.archive_path}"
        )
    with LockFile(lock_path(config)), _trap_signals():
        with quiesced(config.services, executor):
            print(f"Untarring {record.archive_path} -> {config.root}")
            executor.run(["tar", "xzpf", record.archive_path, "-C", config.root])
    print(f"{GREEN}Restore of {record.timestamp} complete.{RESET}")
