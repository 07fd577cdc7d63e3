"""Data models for zpm."""
from __future__ import annotations

import os
from dataclasses import dataclass, field

# Usage flags reported by devices.classify_usage
MOUNTED = "mounted"
IN_ZFS_POOL = "inZfsPool"
IN_RAID = "inRaid"
IN_LVM = "inLvm"
HAS_FILESYSTEM = "hasFilesystem"

USAGE_FLAGS = (MOUNTED, IN_ZFS_POOL, IN_RAID, IN_LVM, HAS_FILESYSTEM)

# Minimum number of member disks per vdev kind
MIN_MEMBERS = {
    "stripe": 1,
    "mirror": 2,
    "raidz": 3,
    "raidz2": 4,
    "raidz3": 5,
}

VDEV_KINDS = tuple(MIN_MEMBERS)

# Backup layout: <mountpoint>/incus-backups/<ts>/incus-full-<ts>.tar.gz
# and <pool>/<dataset>@incus-backup-<ts>
BACKUP_DIR_NAME = "incus-backups"
ARCHIVE_PREFIX = "incus-full-"
ARCHIVE_SUFFIX = ".tar.gz"
SNAPSHOT_PREFIX = "incus-backup-"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class BlockDevice:
    """A candidate disk.

    ``id`` is the by-id symlink name (or the kernel name when no stable id
    exists), ``path`` is what goes on the zpool command line and
    ``canonical_path`` is the resolved device node. Two devices with the same
    canonical path are the same disk.
    """
    id: str
    path: str
    canonical_path: str
    size_bytes: int | None = None
    model: str = ""
    usage: frozenset[str] = frozenset()

    @property
    def kernel_name(self) -> str:
        return os.path.basename(self.canonical_path)


@dataclass(frozen=True)
class VdevGroup:
    kind: str
    members: tuple[BlockDevice, ...]

    @property
    def paths(self) -> list[str]:
        return [d.path for d in self.members]


@dataclass
class PoolPlan:
    name: str
    data_vdevs: list[VdevGroup]
    cache_devices: list[BlockDevice] = field(default_factory=list)
    log_devices: list[BlockDevice] = field(default_factory=list)
    spare_devices: list[BlockDevice] = field(default_factory=list)
    options: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@name."""
    dataset: str
    name: str  # just the snapshot name after '@'

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "Snapshot":
        dataset, _, name = full_name.partition("@")
        if not name:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, name=name)


@dataclass(frozen=True, order=True)
class BackupRecord:
    """One backup: a tarball directory and its sibling snapshot."""
    timestamp: str  # YYYYMMDD-HHMMSS
    archive_path: str
    snapshot_name: str

    @property
    def directory(self) -> str:
        return os.path.dirname(self.archive_path)


@dataclass
class BackupConfig:
    pool: str
    dataset: str  # relative to pool, e.g. incus-backup
    mountpoint: str | None = None
    sources: list[str] = field(
        default_factory=lambda: ["var/lib/incus", "etc/subuid", "etc/subgid"]
    )
    services: list[str] = field(
        default_factory=lambda: ["incus.socket", "incus.service"]
    )
    retention_days: int = 7
    lock_dir: str = "/run/lock"
    root: str = "/"

    @property
    def full_dataset(self) -> str:
        """Example: tank + incus-backup -> tank/incus-backup"""
        return f"{self.pool}/{self.dataset}"

    @property
    def default_mountpoint(self) -> str:
        return f"/mnt/{self.pool}-{self.dataset.replace('/', '-')}"


@dataclass
class PoolSpec:
    """Pool layout as written by the operator, before devices are resolved."""
    name: str
    vdevs: list[tuple[str, list[str]]] = field(default_factory=list)  # (kind, ids)
    mirror_group_size: int | None = None
    mirror_group_devices: list[str] = field(default_factory=list)
    uneven: str = "proceed"
    cache: list[str] = field(default_factory=list)
    log: list[str] = field(default_factory=list)
    spare: list[str] = field(default_factory=list)
    options: dict[str, str] | None = None  # None means planner defaults
