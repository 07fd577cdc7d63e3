"""Block device discovery: enumerate candidate disks and check their usage."""
from __future__ import annotations

import json
import os
import re
import sys
from dataclasses import replace
from typing import TYPE_CHECKING, Iterable, Sequence

from zpm.errors import NotFoundError
from zpm.executor import ExternalCommandError
from zpm.models import (
    HAS_FILESYSTEM,
    IN_LVM,
    IN_RAID,
    IN_ZFS_POOL,
    MOUNTED,
    BlockDevice,
)

if TYPE_CHECKING:
    from zpm.executor import Executor

BY_ID_DIR = "/dev/disk/by-id"
DEV_DIR = "/dev"
MOUNTS_FILE = "/proc/mounts"
MDSTAT_FILE = "/proc/mdstat"

# Full tree, so partitions and dm volumes reached through by-id links
# carry their own TYPE
LSBLK_CMD = ["lsblk", "-J", "-b", "-p", "-o", "PATH,SIZE,MODEL,TYPE"]

# by-id aliases that are less readable than the bus/model id of the same disk
_SECONDARY_ID_PREFIXES = ("wwn-", "nvme-eui.", "nvme-nvme.", "dm-uuid-", "lvm-pv-uuid-")


_SKIPPED_ID_RE = re.compile(r"-part\d+$|cdrom|dvd|[-_]cd[-_]", re.IGNORECASE)


def _is_skipped_id(name: str) -> bool:
    """Partitions and optical drives are never pool candidates."""
    return bool(_SKIPPED_ID_RE.search(name))


def _id_preference(name: str) -> tuple[int, str]:
    return (1 if name.startswith(_SECONDARY_ID_PREFIXES) else 0, name)


def _lsblk_info(executor: "Executor") -> dict[str, dict]:
    """Return lsblk data keyed by device node path."""
    output = executor.run(LSBLK_CMD)
    data = json.loads(output)
    info: dict[str, dict] = {}
    pending = list(data.get("blockdevices", []))
    while pending:
        dev = pending.pop(0)
        pending.extend(dev.get("children") or [])
        if dev.get("path"):
            info.setdefault(dev["path"], dev)
    return info


def _size(raw) -> int | None:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _from_by_id(by_id_dir: str, info: dict[str, dict] | None) -> list[BlockDevice]:
    """
    One device per by-id target. With lsblk data only whole disks are kept;
    without it the by-id name filter is all there is.
    """
    by_canonical: dict[str, str] = {}
    for name in sorted(os.listdir(by_id_dir), key=_id_preference):
        if info is None and _is_skipped_id(name):
            continue
        canonical = os.path.realpath(os.path.join(by_id_dir, name))
        # Keep only the preferred alias of each physical disk
        by_canonical.setdefault(canonical, name)

    devices = []
    for canonical, name in by_canonical.items():
        if info is None:
            entry = {}
        else:
            entry = info.get(canonical)
            if entry is None or entry.get("type") != "disk":
                continue
        devices.append(BlockDevice(
            id=name,
            path=os.path.join(by_id_dir, name),
            canonical_path=canonical,
            size_bytes=_size(entry.get("size")),
            model=(entry.get("model") or "").strip(),
        ))
    return sorted(devices, key=lambda d: d.id)


def _from_lsblk(info: dict[str, dict]) -> list[BlockDevice]:
    devices = []
    for path, entry in info.items():
        if entry.get("type") != "disk":
            continue
        devices.append(BlockDevice(
            id=os.path.basename(path),
            path=path,
            canonical_path=path,
            size_bytes=_size(entry.get("size")),
            model=(entry.get("model") or "").strip(),
        ))
    return sorted(devices, key=lambda d: d.id)


def enumerate_devices(
    executor: "Executor",
    by_id_dir: str = BY_ID_DIR,
) -> list[BlockDevice]:
    """
    Return candidate disks, one entry per canonical device.

    Prefers stable /dev/disk/by-id names. If that directory is missing or
    empty, falls back to the plain lsblk disk listing. lsblk failures while
    by-id is available only cost the size/model columns.
    """
    try:
        info = _lsblk_info(executor)
    except (ExternalCommandError, ValueError) as e:
        print(f"Warning: lsblk unavailable, size/model unknown: {e}", file=sys.stderr)
        info = None

    if os.path.isdir(by_id_dir) and os.listdir(by_id_dir):
        return _from_by_id(by_id_dir, info)

    print(f"Warning: {by_id_dir} not found, listing kernel device names.", file=sys.stderr)
    if info is None:
        # Retry so the caller sees the real failure
        info = _lsblk_info(executor)
    return _from_lsblk(info)


def resolve_device(identifier: str, devices: Sequence[BlockDevice]) -> BlockDevice:
    """
    Look up a device by by-id name, kernel name, or full path.

    Accepts e.g. 'ata-WDC_WD40', 'sda', '/dev/sda' or
    '/dev/disk/by-id/ata-WDC_WD40'.
    """
    for device in devices:
        if identifier in (device.id, device.path, device.canonical_path, device.kernel_name):
            return device
    raise NotFoundError(f"Device '{identifier}' not found")


def resolve_devices(identifiers: Iterable[str], devices: Sequence[BlockDevice]) -> list[BlockDevice]:
    return [resolve_device(i, devices) for i in identifiers]


def _partition_suffix(name: str) -> str:
    # nvme0n1 -> nvme0n1p2, sda -> sda2
    return r"p\d+" if name[-1:].isdigit() else r"\d+"


def _mentions(text: str, device: BlockDevice) -> bool:
    """True if text names the disk or one of its partitions."""
    for path in {device.path, device.canonical_path}:
        pattern = re.escape(path) + rf"(-part\d+|{_partition_suffix(path)})?(?![\w-])"
        if re.search(pattern, text):
            return True
    return False


def _read(path: str) -> str:
    try:
        with open(path) as f:
            return f.read()
    except OSError:
        return ""


def _probe(executor: "Executor", cmd: list[str]) -> str:
    """Run a usage probe; a missing tool or failure means 'no evidence'."""
    try:
        return executor.run(cmd)
    except ExternalCommandError:
        return ""


def classify_usage(
    device: BlockDevice,
    executor: "Executor",
    mounts_file: str = MOUNTS_FILE,
    mdstat_file: str = MDSTAT_FILE,
) -> frozenset[str]:
    """
    Return the usage flags for a disk. Used only for warnings.

    Checks the mount table, zpool membership, MD RAID, LVM physical volumes
    and filesystem signatures. Never raises on a failed probe.
    """
    flags = set()

    for line in _read(mounts_file).splitlines():
        source = line.split(" ", 1)[0]
        if source.startswith("/") and _mentions(os.path.realpath(source), device):
            flags.add(MOUNTED)
            break

    if _mentions(_probe(executor, ["zpool", "status", "-P"]), device):
        flags.add(IN_ZFS_POOL)

    name = device.kernel_name
    if re.search(rf"\b{re.escape(name)}({_partition_suffix(name)})?\[", _read(mdstat_file)):
        flags.add(IN_RAID)

    if _mentions(_probe(executor, ["pvs", "--noheadings", "-o", "pv_name"]), device):
        flags.add(IN_LVM)

    fstype = _probe(executor, ["blkid", "-p", "-s", "TYPE", "-o", "value", device.canonical_path])
    if fstype.strip():
        flags.add(HAS_FILESYSTEM)

    return frozenset(flags)


def with_usage(devices: Sequence[BlockDevice], executor: "Executor", **kwargs) -> list[BlockDevice]:
    """Return copies of devices with their usage flags filled in."""
    return [replace(d, usage=classify_usage(d, executor, **kwargs)) for d in devices]


def format_size(size_bytes: int | None) -> str:
    if size_bytes is None:
        return "Unknown"
    size = float(size_bytes)
    unit = "B"
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024:
            break
        if unit != "TiB":
            size /= 1024
    return f"{size:.2f}{unit}"
