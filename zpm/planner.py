"""Pool topology planning: validate a layout and render the zpool command."""
from __future__ import annotations

import re
from typing import Iterable, Sequence

from zpm.devices import resolve_devices
from zpm.errors import ValidationError
from zpm.models import MIN_MEMBERS, BlockDevice, PoolPlan, PoolSpec, VdevGroup

# What to do when a device list does not split evenly into mirror groups
UNEVEN_PROCEED = "proceed"
UNEVEN_REJECT = "reject"
UNEVEN_POLICIES = (UNEVEN_PROCEED, UNEVEN_REJECT)

# Filesystem properties are passed with -O, everything else with -o
FS_PROPERTIES = frozenset({
    "aclinherit", "acltype", "atime", "canmount", "casesensitivity",
    "checksum", "compression", "copies", "dedup", "dnodesize", "encryption",
    "keyformat", "keylocation", "logbias", "mountpoint", "normalization",
    "pbkdf2iters", "primarycache", "recordsize", "redundant_metadata",
    "relatime", "secondarycache", "special_small_blocks", "sync", "utf8only",
    "xattr",
})

DEFAULT_OPTIONS = {"ashift": "12", "compression": "lz4", "atime": "off"}

# zpool refuses these as pool names
RESERVED_NAMES = frozenset({
    "mirror", "raidz", "raidz1", "raidz2", "raidz3", "draid", "spare",
    "log", "cache", "special", "dedup",
})

_POOL_NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9_.:-]*")
_OPTION_KEY_RE = re.compile(r"[a-z][a-z0-9_.:@-]*")


def build_vdev_group(kind: str, members: Sequence[BlockDevice]) -> VdevGroup:
    """Return a VdevGroup, enforcing the minimum member count for its kind."""
    if kind not in MIN_MEMBERS:
        raise ValidationError(
            f"Unknown vdev kind {kind!r} (expected one of: {', '.join(MIN_MEMBERS)})"
        )
    required = MIN_MEMBERS[kind]
    if len(members) < required:
        raise ValidationError(
            f"{kind} requires at least {required} disks, got {len(members)}"
        )
    return VdevGroup(kind=kind, members=tuple(members))


def partition_into_mirror_groups(
    devices: Sequence[BlockDevice],
    group_size: int,
    uneven: str = UNEVEN_PROCEED,
) -> list[VdevGroup]:
    """
    Split an ordered device list into consecutive N-way mirror vdevs.

    When the count does not divide evenly:
      - "proceed": the trailing group takes the remainder. A remainder of one
        disk cannot form a mirror on its own, so it joins the previous group.
      - "reject": raise ValidationError so the operator picks another size.
    """
    if uneven not in UNEVEN_POLICIES:
        raise ValidationError(
            f"Unknown uneven policy {uneven!r} (expected one of: {', '.join(UNEVEN_POLICIES)})"
        )
    if group_size < MIN_MEMBERS["mirror"]:
        raise ValidationError(
            f"mirror group size must be at least {MIN_MEMBERS['mirror']}, got {group_size}"
        )
    if len(devices) < group_size:
        raise ValidationError(
            f"mirror group size {group_size} needs at least {group_size} disks, "
            f"got {len(devices)}"
        )

    remainder = len(devices) % group_size
    if remainder and uneven == UNEVEN_REJECT:
        raise ValidationError(
            f"{len(devices)} disks do not split evenly into mirrors of {group_size} "
            f"({remainder} left over); choose another group size"
        )

    chunks = [
        list(devices[i:i + group_size])
        for i in range(0, len(devices), group_size)
    ]
    if len(chunks[-1]) < MIN_MEMBERS["mirror"]:
        leftover = chunks.pop()
        chunks[-1].extend(leftover)

    return [build_vdev_group("mirror", chunk) for chunk in chunks]


def parse_option(text: str) -> tuple[str, str]:
    """Split 'key=value' into a tuple. Raise ValidationError if malformed."""
    key, sep, value = text.partition("=")
    if not sep:
        raise ValidationError(f"Option {text!r} is not of the form key=value")
    _check_option(key, value)
    return key, value


def _check_option(key: str, value: str) -> None:
    if not _OPTION_KEY_RE.fullmatch(key):
        raise ValidationError(f"Option key {key!r} is not a valid property name")
    if value == "" or any(c.isspace() for c in value):
        raise ValidationError(
            f"Option {key!r} has an empty value or one containing whitespace: {value!r}"
        )


def _check_pool_name(name: str, existing_pools: Iterable[str]) -> None:
    if not name:
        raise ValidationError("Pool name cannot be empty")
    if name in set(existing_pools):
        raise ValidationError(f"A pool named '{name}' already exists")
    if not _POOL_NAME_RE.fullmatch(name):
        raise ValidationError(
            f"Pool name '{name}' must start with a letter and contain only "
            "letters, digits, '_', '-', '.' and ':'"
        )
    if name in RESERVED_NAMES or name.startswith(("mirror", "raidz", "draid", "spare")):
        raise ValidationError(f"Pool name '{name}' is reserved by zpool")


def _check_cross_role(
    data_vdevs: Sequence[VdevGroup],
    cache: Sequence[BlockDevice],
    log: Sequence[BlockDevice],
    spare: Sequence[BlockDevice],
) -> None:
    """Reject any disk used twice, within or across roles."""
    seen: dict[str, tuple[str, BlockDevice]] = {}

    def claim(device: BlockDevice, role: str) -> None:
        previous = seen.get(device.canonical_path)
        if previous is not None:
            prev_role, prev_dev = previous
            raise ValidationError(
                f"Device {device.id} ({device.canonical_path}) is used as {role} "
                f"but is already used as {prev_role} ({prev_dev.id})"
            )
        seen[device.canonical_path] = (role, device)

    for i, group in enumerate(data_vdevs):
        for device in group.members:
            claim(device, f"data vdev #{i + 1} ({group.kind})")
    for device in cache:
        claim(device, "cache")
    for device in log:
        claim(device, "log")
    for device in spare:
        claim(device, "spare")


def assemble_plan(
    name: str,
    data_vdevs: Sequence[VdevGroup],
    cache: Sequence[BlockDevice] = (),
    log: Sequence[BlockDevice] = (),
    spare: Sequence[BlockDevice] = (),
    options: dict[str, str] | None = None,
    existing_pools: Iterable[str] = (),
) -> PoolPlan:
    """
    Validate a complete pool layout and return it as a PoolPlan.

    Checks run in this order and the first failure raises ValidationError:
    pool name, per-group member counts, device reuse across roles, options.
    """
    _check_pool_name(name, existing_pools)

    if not data_vdevs:
        raise ValidationError(f"Pool '{name}' needs at least one data vdev")
    for group in data_vdevs:
        build_vdev_group(group.kind, group.members)

    _check_cross_role(data_vdevs, cache, log, spare)

    opts = dict(options) if options is not None else dict(DEFAULT_OPTIONS)
    for key, value in opts.items():
        _check_option(key, str(value))

    return PoolPlan(
        name=name,
        data_vdevs=list(data_vdevs),
        cache_devices=list(cache),
        log_devices=list(log),
        spare_devices=list(spare),
        options={k: str(v) for k, v in opts.items()},
    )


def plan_from_spec(
    spec: PoolSpec,
    devices: Sequence[BlockDevice],
    existing_pools: Iterable[str] = (),
) -> PoolPlan:
    """Resolve the device ids in a PoolSpec and assemble a validated plan."""
    existing_pools = list(existing_pools)
    _check_pool_name(spec.name, existing_pools)
    data_vdevs = [
        build_vdev_group(kind, resolve_devices(ids, devices))
        for kind, ids in spec.vdevs
    ]
    if spec.mirror_group_devices:
        data_vdevs += partition_into_mirror_groups(
            resolve_devices(spec.mirror_group_devices, devices),
            spec.mirror_group_size or MIN_MEMBERS["mirror"],
            spec.uneven,
        )
    return assemble_plan(
        spec.name,
        data_vdevs,
        cache=resolve_devices(spec.cache, devices),
        log=resolve_devices(spec.log, devices),
        spare=resolve_devices(spec.spare, devices),
        options=spec.options,
        existing_pools=existing_pools,
    )


def plan_devices(plan: PoolPlan) -> list[BlockDevice]:
    """Every disk the plan touches, in command-line order."""
    devices = [d for group in plan.data_vdevs for d in group.members]
    return devices + plan.cache_devices + plan.log_devices + plan.spare_devices


def render_options(options: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in options.items():
        flag = "-O" if key in FS_PROPERTIES else "-o"
        args += [flag, f"{key}={value}"]
    return args


def _render_vdevs(data_vdevs: Sequence[VdevGroup]) -> list[str]:
    args: list[str] = []
    for group in data_vdevs:
        if group.kind != "stripe":
            args.append(group.kind)
        args += group.paths
    return args


def _render_aux(
    cache: Sequence[BlockDevice],
    log: Sequence[BlockDevice],
    spare: Sequence[BlockDevice],
) -> list[str]:
    args: list[str] = []
    if cache:
        args += ["cache"] + [d.path for d in cache]
    if log:
        args.append("log")
        if len(log) > 1:
            args.append("mirror")
        args += [d.path for d in log]
    if spare:
        args += ["spare"] + [d.path for d in spare]
    return args


def render(plan: PoolPlan) -> list[str]:
    """
    Translate a plan into one zpool create invocation.

    Order is fixed by the zpool grammar: options, pool name, data vdevs
    (kind keyword omitted for stripe), cache, log (mirrored when more than
    one device), spare.
    """
    return (
        ["zpool", "create"]
        + render_options(plan.options)
        + [plan.name]
        + _render_vdevs(plan.data_vdevs)
        + _render_aux(plan.cache_devices, plan.log_devices, plan.spare_devices)
    )


def render_add(
    pool: str,
    data_vdevs: Sequence[VdevGroup] = (),
    cache: Sequence[BlockDevice] = (),
    log: Sequence[BlockDevice] = (),
    spare: Sequence[BlockDevice] = (),
) -> list[str]:
    """Render a zpool add invocation that extends an existing pool."""
    if not (data_vdevs or cache or log or spare):
        raise ValidationError(f"Nothing to add to pool '{pool}'")
    for group in data_vdevs:
        build_vdev_group(group.kind, group.members)
    _check_cross_role(data_vdevs, cache, log, spare)
    return (
        ["zpool", "add", pool]
        + _render_vdevs(data_vdevs)
        + _render_aux(cache, log, spare)
    )
