"""zpool / zfs operations using an Executor for dependency injection."""
from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

from zpm.errors import NotFoundError
from zpm.executor import ExternalCommandError
from zpm.models import Snapshot

if TYPE_CHECKING:
    from zpm.executor import Executor


def _show(cmd: list[str], label: str, dry_run: bool, verbose: bool) -> None:
    if dry_run or verbose:
        prefix = "[dry-run] " if dry_run else ""
        print(f"  {prefix}[{label}] {shlex.join(cmd)}")


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------

def list_pools(executor: "Executor") -> list[str]:
    """Return the names of all imported pools."""
    output = executor.run(["zpool", "list", "-H", "-o", "name"])
    return [line.strip() for line in output.splitlines() if line.strip()]


def pool_exists(pool: str, executor: "Executor") -> bool:
    return pool in list_pools(executor)


def require_pool(pool: str, executor: "Executor") -> None:
    if not pool_exists(pool, executor):
        raise NotFoundError(f"Pool '{pool}' not found")


def pool_status(pool: str | None, executor: "Executor") -> str:
    """Return `zpool status` output for one pool, or all pools if None."""
    if pool is None:
        return executor.run(["zpool", "status"])
    require_pool(pool, executor)
    return executor.run(["zpool", "status", pool])


def run_pool_command(
    cmd: list[str],
    executor: "Executor",
    dry_run: bool = False,
    verbose: bool = False,
) -> None:
    """Run a rendered zpool create/add command. Failures surface verbatim."""
    _show(cmd, cmd[1], dry_run, verbose)
    if dry_run:
        return
    executor.run(cmd)


def destroy_pool(
    pool: str,
    executor: "Executor",
    force: bool = False,
    dry_run: bool = False,
    verbose: bool = False,
) -> None:
    require_pool(pool, executor)
    cmd = ["zpool", "destroy"] + (["-f"] if force else []) + [pool]
    _show(cmd, "destroy", dry_run, verbose)
    if not dry_run:
        executor.run(cmd)


def export_pool(pool: str, executor: "Executor", force: bool = False) -> None:
    require_pool(pool, executor)
    executor.run(["zpool", "export"] + (["-f"] if force else []) + [pool])


def list_importable(executor: "Executor") -> str:
    """Return the `zpool import` scan output (pools available to import)."""
    return executor.run(["zpool", "import"])


def import_pool(pool: str, executor: "Executor", new_name: str | None = None) -> None:
    cmd = ["zpool", "import", pool]
    if new_name:
        cmd.append(new_name)
    executor.run(cmd)


def scrub_pool(pool: str, executor: "Executor") -> None:
    require_pool(pool, executor)
    executor.run(["zpool", "scrub", pool])


def remove_device(pool: str, device_path: str, executor: "Executor") -> None:
    require_pool(pool, executor)
    executor.run(["zpool", "remove", pool, device_path])


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------

def dataset_exists(dataset: str, executor: "Executor") -> bool:
    """Return True if the dataset exists."""
    try:
        executor.run(["zfs", "list", "-H", "-o", "name", dataset])
        return True
    except ExternalCommandError:
        return False


def create_dataset(dataset: str, executor: "Executor") -> None:
    executor.run(["zfs", "create", "-p", dataset])


def get_property(dataset: str, prop: str, executor: "Executor") -> str:
    output = executor.run(["zfs", "get", "-H", "-o", "value", prop, dataset])
    return output.strip()


def set_mountpoint(dataset: str, mountpoint: str, executor: "Executor") -> None:
    executor.run(["zfs", "set", f"mountpoint={mountpoint}", dataset])


def mount_dataset(dataset: str, executor: "Executor") -> None:
    executor.run(["zfs", "mount", dataset])


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def list_snapshots(dataset: str, executor: "Executor") -> list[Snapshot]:
    """Return snapshots for a dataset, oldest first."""
    output = executor.run([
        "zfs", "list", "-H", "-o", "name", "-t", "snapshot", "-s", "creation", dataset,
    ])
    results = []
    for line in output.splitlines():
        name = line.strip()
        if not name:
            continue
        # Only include snapshots directly on this dataset (not children)
        if "@" in name and name.split("@")[0] == dataset:
            results.append(Snapshot.parse(name))
    return results


def create_snapshot(snapshot: Snapshot, executor: "Executor", verbose: bool = False) -> None:
    cmd = ["zfs", "snapshot", snapshot.full_name]
    _show(cmd, "snapshot", False, verbose)
    executor.run(cmd)


def destroy_snapshot(
    snapshot: Snapshot,
    executor: "Executor",
    dry_run: bool = False,
    verbose: bool = False,
) -> None:
    """Destroy a single snapshot."""
    cmd = ["zfs", "destroy", snapshot.full_name]
    _show(cmd, "destroy", dry_run, verbose)
    if dry_run:
        return
    executor.run(cmd)
