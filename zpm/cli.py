"""CLI entry point for zpm."""
from __future__ import annotations

import argparse
import re
import sys

from zpm import zfs
from zpm.backup import GREEN, RED, RESET, YELLOW, _confirm
from zpm.config import ConfigError, load_backup_job, load_pool_spec
from zpm.devices import (
    classify_usage,
    enumerate_devices,
    format_size,
    resolve_device,
    resolve_devices,
    with_usage,
)
from zpm.errors import LockHeldError, NotFoundError, ValidationError
from zpm.executor import ExternalCommandError, LocalExecutor
from zpm.models import USAGE_FLAGS, VDEV_KINDS, PoolSpec
from zpm.planner import (
    UNEVEN_POLICIES,
    build_vdev_group,
    parse_option,
    plan_devices,
    plan_from_spec,
    render,
    render_add,
)

# Errors reported as a single line at the command boundary
COMMAND_ERRORS = (
    ValidationError,
    NotFoundError,
    LockHeldError,
    ExternalCommandError,
    OSError,
)

_VDEV_NAME_RE = re.compile(r"(mirror|raidz[123]?|draid[123]?)-\d+")


def _error(message) -> int:
    print(f"{RED}ERROR: {message}{RESET}", file=sys.stderr)
    return 1


def _executor(args) -> LocalExecutor:
    return LocalExecutor(verbose=getattr(args, "verbose", False))


def _load_job(path: str):
    try:
        return load_backup_job(path)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None


def _usage_text(flags, sep: str) -> str:
    return sep.join(f for f in USAGE_FLAGS if f in flags)


# ---------------------------------------------------------------------------
# pool
# ---------------------------------------------------------------------------

def cmd_pool_devices(args) -> int:
    """List candidate disks with size, model and usage warnings."""
    executor = _executor(args)
    try:
        devices = enumerate_devices(executor)
        if not args.no_usage:
            devices = with_usage(devices, executor)
    except COMMAND_ERRORS as e:
        return _error(e)

    if not devices:
        print("No disks found.")
        return 0

    print(f"{'DISK ID':<50} {'DEVICE':<14} {'SIZE':>10}  {'MODEL':<24} USAGE")
    print("-" * 110)
    for d in devices:
        usage = _usage_text(d.usage, ",") or "-"
        print(f"{d.id:<50} {d.canonical_path:<14} {format_size(d.size_bytes):>10}  "
              f"{d.model:<24} {usage}")
    return 0


def _spec_from_args(args) -> PoolSpec:
    if not args.name:
        raise ValidationError("Pool name is required (or use --config)")
    if not args.devices:
        raise ValidationError("No disks given (use --devices or --config)")
    spec = PoolSpec(name=args.name)
    if args.group_size:
        if args.kind not in (None, "mirror"):
            raise ValidationError(
                f"--group-size builds mirror vdevs; it cannot be combined with --kind {args.kind}"
            )
        spec.mirror_group_size = args.group_size
        spec.mirror_group_devices = list(args.devices)
        spec.uneven = args.uneven
    else:
        spec.vdevs = [(args.kind or "stripe", list(args.devices))]
    spec.cache = list(args.cache or [])
    spec.log = list(args.log or [])
    spec.spare = list(args.spare or [])
    if args.option:
        spec.options = dict(parse_option(o) for o in args.option)
    return spec


def _print_plan(plan) -> None:
    print("Pool creation summary:")
    print(f"  Pool name: {plan.name}")
    for i, group in enumerate(plan.data_vdevs, 1):
        print(f"  Data vdev #{i} ({group.kind}): {' '.join(d.id for d in group.members)}")
    for label, devs in (("Cache", plan.cache_devices), ("Log", plan.log_devices),
                        ("Spare", plan.spare_devices)):
        if devs:
            print(f"  {label}: {' '.join(d.id for d in devs)}")
    opts = " ".join(f"{k}={v}" for k, v in plan.options.items())
    print(f"  Options: {opts or '(none)'}")


def _warn_in_use(devices, executor) -> bool:
    """Print a warning per disk that looks in use. Return True if any did."""
    warned = False
    for device in devices:
        flags = classify_usage(device, executor)
        if flags:
            warned = True
            print(f"{YELLOW}Warning: {device.id} ({device.canonical_path}) "
                  f"appears to be in use: {_usage_text(flags, ', ')}{RESET}")
    return warned


def cmd_pool_create(args) -> int:
    executor = _executor(args)
    try:
        spec = load_pool_spec(args.config) if args.config else _spec_from_args(args)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    except ValidationError as e:
        return _error(e)

    try:
        devices = enumerate_devices(executor)
        plan = plan_from_spec(spec, devices, zfs.list_pools(executor))
    except COMMAND_ERRORS as e:
        return _error(e)

    _print_plan(plan)
    in_use = _warn_in_use(plan_devices(plan), executor)

    if not args.no_confirm and not args.dry_run:
        prompt = ("Some disks appear to be in use. Create the pool anyway?"
                  if in_use else "Create the pool with these settings?")
        if not _confirm(prompt):
            print("Pool creation cancelled.")
            return 1

    try:
        zfs.run_pool_command(render(plan), executor, dry_run=args.dry_run, verbose=True)
    except ExternalCommandError as e:
        return _error(f"Failed to create pool '{plan.name}': {e}")

    if not args.dry_run:
        print(f"{GREEN}Successfully created ZFS pool '{plan.name}'.{RESET}")
    return 0


def cmd_pool_status(args) -> int:
    executor = _executor(args)
    try:
        print(zfs.pool_status(args.name, executor), end="")
    except COMMAND_ERRORS as e:
        return _error(e)
    return 0


def cmd_pool_destroy(args) -> int:
    executor = _executor(args)
    try:
        zfs.require_pool(args.name, executor)
    except COMMAND_ERRORS as e:
        return _error(e)

    if not args.no_confirm and not args.dry_run:
        print(f"{RED}WARNING: This will destroy the pool '{args.name}' "
              f"and all data it contains!{RESET}")
        try:
            typed = input("Type the pool name again to confirm: ").strip()
        except (EOFError, KeyboardInterrupt):
            typed = ""
        if typed != args.name:
            print("Pool names do not match. Operation cancelled.")
            return 1

    try:
        zfs.destroy_pool(args.name, executor, force=args.force,
                         dry_run=args.dry_run, verbose=True)
    except COMMAND_ERRORS as e:
        return _error(f"Failed to destroy pool '{args.name}': {e}")
    if not args.dry_run:
        print(f"{GREEN}Successfully destroyed ZFS pool '{args.name}'.{RESET}")
    return 0


def cmd_pool_export(args) -> int:
    executor = _executor(args)
    try:
        zfs.export_pool(args.name, executor, force=args.force)
    except COMMAND_ERRORS as e:
        return _error(f"Failed to export pool '{args.name}': {e}")
    print(f"{GREEN}Successfully exported ZFS pool '{args.name}'.{RESET}")
    return 0


def cmd_pool_import(args) -> int:
    executor = _executor(args)
    if not args.name:
        try:
            print(zfs.list_importable(executor), end="")
        except ExternalCommandError as e:
            return _error(f"No importable pools found or error scanning: {e}")
        return 0
    try:
        zfs.import_pool(args.name, executor, new_name=args.new_name)
    except ExternalCommandError as e:
        return _error(f"Failed to import pool '{args.name}': {e}")
    print(f"{GREEN}Successfully imported ZFS pool '{args.new_name or args.name}'.{RESET}")
    return 0


def cmd_pool_scrub(args) -> int:
    executor = _executor(args)
    try:
        zfs.scrub_pool(args.name, executor)
    except COMMAND_ERRORS as e:
        return _error(f"Failed to start scrub on '{args.name}': {e}")
    print(f"{GREEN}Scrub started on pool '{args.name}'.{RESET}")
    print(f"Check progress with 'zpool status {args.name}'.")
    return 0


def cmd_pool_add_device(args) -> int:
    executor = _executor(args)
    try:
        zfs.require_pool(args.name, executor)
        devices = resolve_devices(args.devices, enumerate_devices(executor))
        groups, aux = [], {"cache": [], "log": [], "spare": []}
        if args.role == "data":
            groups = [build_vdev_group(args.kind, devices)]
        else:
            aux[args.role] = devices
        cmd = render_add(args.name, groups, **aux)
    except COMMAND_ERRORS as e:
        return _error(e)

    in_use = _warn_in_use(devices, executor)
    if not args.no_confirm and not args.dry_run:
        prompt = (f"Some disks appear to be in use. Add them to '{args.name}' anyway?"
                  if in_use else f"Add {len(devices)} disk(s) to '{args.name}' as {args.role}?")
        if not _confirm(prompt):
            print("Cancelled.")
            return 1

    try:
        zfs.run_pool_command(cmd, executor, dry_run=args.dry_run, verbose=True)
    except ExternalCommandError as e:
        return _error(f"Failed to add devices to '{args.name}': {e}")
    return 0


def cmd_pool_remove_device(args) -> int:
    executor = _executor(args)
    try:
        zfs.require_pool(args.name, executor)
        if _VDEV_NAME_RE.fullmatch(args.device):
            target = args.device
        else:
            target = resolve_device(args.device, enumerate_devices(executor)).path
        zfs.remove_device(args.name, target, executor)
    except COMMAND_ERRORS as e:
        return _error(f"Failed to remove '{args.device}' from '{args.name}': {e}")
    print(f"{GREEN}Removed {args.device} from pool '{args.name}'.{RESET}")
    return 0


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------

def cmd_backup_run(args) -> int:
    from zpm.backup import SnapshotFailedError, perform_backup
    config = _load_job(args.config)
    if config is None:
        return 1
    executor = _executor(args)
    try:
        cycle = perform_backup(config, executor, verbose=args.verbose)
    except SnapshotFailedError as e:
        return _error(e)
    except COMMAND_ERRORS as e:
        return _error(f"Backup of {config.full_dataset} failed: {e}")
    return 1 if cycle.prune_result and cycle.prune_result.errors else 0


def cmd_backup_list(args) -> int:
    from zpm.backup import current_mountpoint, list_backups
    config = _load_job(args.config)
    if config is None:
        return 1
    executor = _executor(args)
    try:
        records = list_backups(current_mountpoint(config, executor), config.full_dataset)
    except COMMAND_ERRORS as e:
        return _error(e)

    if not records:
        print(f"No backups found for {config.full_dataset}.")
        return 0

    try:
        snapshots = {s.full_name for s in zfs.list_snapshots(config.full_dataset, executor)}
    except ExternalCommandError:
        snapshots = None

    print(f"{'#':>3}  {'Timestamp':<17} {'Snapshot':<9} Archive")
    print("-" * 80)
    for i, record in enumerate(records, 1):
        if snapshots is None:
            snap = "?"
        else:
            snap = "yes" if record.snapshot_name in snapshots else "no"
        print(f"{i:>3}  {record.timestamp:<17} {snap:<9} {record.archive_path}")
    return 0


def cmd_backup_restore(args) -> int:
    from zpm.backup import list_backups, prepare_dataset, restore_backup, select_backup
    config = _load_job(args.config)
    if config is None:
        return 1
    executor = _executor(args)
    try:
        mountpoint = prepare_dataset(config, executor, create=False)
        record = select_backup(list_backups(mountpoint, config.full_dataset), args.backup)
    except COMMAND_ERRORS as e:
        return _error(e)

    print(f"Restoring: {record.timestamp}")
    if not args.no_confirm:
        if not _confirm(f"This will stop {' '.join(config.services)} and overwrite "
                        f"data under {config.root}. Continue?"):
            print("Aborted.")
            return 0

    try:
        restore_backup(record, config, executor)
    except COMMAND_ERRORS as e:
        return _error(f"Restore of {record.timestamp} failed: {e}")
    return 0


def cmd_backup_prune(args) -> int:
    from zpm.backup import LockFile, backup_root, current_mountpoint, lock_path
    from zpm.retention import prune_expired
    config = _load_job(args.config)
    if config is None:
        return 1
    executor = _executor(args)
    try:
        mountpoint = current_mountpoint(config, executor)
        with LockFile(lock_path(config)):
            result = prune_expired(
                backup_root(mountpoint),
                config.full_dataset,
                executor,
                retention_days=config.retention_days,
                dry_run=args.dry_run,
                verbose=args.verbose,
            )
    except COMMAND_ERRORS as e:
        return _error(e)

    prefix = "[dry-run] " if args.dry_run else ""
    print(f"{prefix}Removed {len(result.removed_dirs)} backup dir(s), "
          f"{len(result.destroyed_snapshots)} snapshot(s).")
    return 1 if result.errors else 0


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="zpm",
        description="ZFS pool planner and Incus backup manager",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_verbose(p):
        p.add_argument("--verbose", "-v", action="store_true",
                       help="Echo each external command before it runs")

    def add_confirm(p):
        p.add_argument("--no-confirm", action="store_true",
                       help="Skip confirmation prompts")

    def add_dry_run(p):
        p.add_argument("--dry-run", "-n", action="store_true",
                       help="Show what would happen without making changes")

    # --- pool ---
    p_pool = sub.add_parser("pool", help="Create and manage ZFS pools")
    pool_sub = p_pool.add_subparsers(dest="pool_command", required=True)

    p = pool_sub.add_parser("devices", help="List candidate disks")
    p.add_argument("--no-usage", action="store_true",
                   help="Skip mount/pool/RAID/LVM/filesystem checks")
    add_verbose(p)
    p.set_defaults(func=cmd_pool_devices)

    p = pool_sub.add_parser("create", help="Create a pool from flags or a YAML plan")
    p.add_argument("name", nargs="?", help="Pool name")
    p.add_argument("--config", "-c", help="Path to pool plan YAML file")
    p.add_argument("--kind", default=None,
                   choices=VDEV_KINDS,
                   help="Redundancy of the data vdev (default: stripe)")
    p.add_argument("--devices", nargs="+", metavar="DISK",
                   help="Data disks (by-id names, kernel names or paths)")
    p.add_argument("--group-size", type=int, metavar="N",
                   help="Split --devices into N-way mirror vdevs")
    p.add_argument("--uneven", default="proceed", choices=UNEVEN_POLICIES,
                   help="When disks don't split evenly: fold the rest into the "
                        "last group, or refuse (default: proceed)")
    p.add_argument("--cache", nargs="+", metavar="DISK", help="L2ARC cache disks")
    p.add_argument("--log", nargs="+", metavar="DISK",
                   help="SLOG disks (mirrored when more than one)")
    p.add_argument("--spare", nargs="+", metavar="DISK", help="Hot spare disks")
    p.add_argument("-o", "--option", action="append", metavar="KEY=VALUE",
                   help="Pool or filesystem property (repeatable; "
                        "default ashift=12 compression=lz4 atime=off)")
    add_dry_run(p)
    add_confirm(p)
    add_verbose(p)
    p.set_defaults(func=cmd_pool_create)

    p = pool_sub.add_parser("status", help="Show zpool status")
    p.add_argument("name", nargs="?", help="Pool name (default: all pools)")
    add_verbose(p)
    p.set_defaults(func=cmd_pool_status)

    p = pool_sub.add_parser("destroy", help="Destroy a pool and all its data")
    p.add_argument("name", help="Pool name")
    p.add_argument("--force", "-f", action="store_true", help="Force destruction")
    add_dry_run(p)
    add_confirm(p)
    add_verbose(p)
    p.set_defaults(func=cmd_pool_destroy)

    p = pool_sub.add_parser("export", help="Export a pool")
    p.add_argument("name", help="Pool name")
    p.add_argument("--force", "-f", action="store_true", help="Force export")
    add_verbose(p)
    p.set_defaults(func=cmd_pool_export)

    p = pool_sub.add_parser("import", help="Import a pool, or list importable pools")
    p.add_argument("name", nargs="?", help="Pool name or id to import")
    p.add_argument("--new-name", help="Import under a different name")
    add_verbose(p)
    p.set_defaults(func=cmd_pool_import)

    p = pool_sub.add_parser("scrub", help="Start a scrub")
    p.add_argument("name", help="Pool name")
    add_verbose(p)
    p.set_defaults(func=cmd_pool_scrub)

    p = pool_sub.add_parser("add-device", help="Add disks to an existing pool")
    p.add_argument("name", help="Pool name")
    p.add_argument("devices", nargs="+", metavar="DISK")
    p.add_argument("--role", default="data", choices=["data", "cache", "log", "spare"])
    p.add_argument("--kind", default="stripe",
                   choices=VDEV_KINDS,
                   help="Redundancy of a new data vdev (default: stripe)")
    add_dry_run(p)
    add_confirm(p)
    add_verbose(p)
    p.set_defaults(func=cmd_pool_add_device)

    p = pool_sub.add_parser("remove-device", help="Remove a disk or vdev from a pool")
    p.add_argument("name", help="Pool name")
    p.add_argument("device", help="Disk id/path, or a vdev name such as mirror-1")
    add_verbose(p)
    p.set_defaults(func=cmd_pool_remove_device)

    # --- backup ---
    p_backup = sub.add_parser("backup", help="Back up and restore the Incus data directory")
    backup_sub = p_backup.add_subparsers(dest="backup_command", required=True)

    p = backup_sub.add_parser("run", help="Stop Incus, archive, snapshot, restart, prune")
    p.add_argument("config", help="Path to backup job YAML config file")
    add_verbose(p)
    p.set_defaults(func=cmd_backup_run)

    p = backup_sub.add_parser("list", help="List backups, oldest first")
    p.add_argument("config", help="Path to backup job YAML config file")
    add_verbose(p)
    p.set_defaults(func=cmd_backup_list)

    p = backup_sub.add_parser("restore", help="Restore a backup over the live system")
    p.add_argument("config", help="Path to backup job YAML config file")
    p.add_argument("backup", help="Timestamp, list number, or 'latest'")
    add_confirm(p)
    add_verbose(p)
    p.set_defaults(func=cmd_backup_restore)

    p = backup_sub.add_parser("prune", help="Remove backups older than retention_days")
    p.add_argument("config", help="Path to backup job YAML config file")
    add_dry_run(p)
    add_verbose(p)
    p.set_defaults(func=cmd_backup_prune)

    args = parser.parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
