"""Load and validate YAML backup-job and pool-plan files."""
from __future__ import annotations

import yaml

from zpm.models import VDEV_KINDS, BackupConfig, PoolSpec
from zpm.planner import UNEVEN_POLICIES


class ConfigError(Exception):
    pass


def _load_mapping(path: str) -> dict:
    with open(path) as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")
    return raw


def _string_list(raw, key: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"'{key}' must be a list")
    items = []
    for item in raw:
        name = str(item).strip() if item is not None else ""
        if not name:
            raise ConfigError(f"Invalid entry in '{key}': {item!r}")
        items.append(name)
    return items


def _option_value(value) -> str:
    # YAML turns bare on/off into booleans
    if value is True:
        return "on"
    if value is False:
        return "off"
    return str(value)


def load_backup_job(path: str) -> BackupConfig:
    raw = _load_mapping(path)

    pool = raw.get("pool")
    if not pool:
        raise ConfigError("pool is required")
    dataset = raw.get("dataset")
    if not dataset:
        raise ConfigError("dataset is required")
    dataset = str(dataset).strip("/")
    if dataset.startswith(f"{pool}/"):
        dataset = dataset[len(pool) + 1:]

    config = BackupConfig(pool=str(pool), dataset=dataset)

    mountpoint = raw.get("mountpoint")
    if mountpoint is not None:
        mountpoint = str(mountpoint)
        if not mountpoint.startswith("/"):
            raise ConfigError(f"mountpoint must be an absolute path, got {mountpoint!r}")
        config.mountpoint = mountpoint

    if "sources" in raw:
        config.sources = _string_list(raw["sources"], "sources")
        if not config.sources:
            raise ConfigError("'sources' must not be empty")
    if "services" in raw:
        config.services = _string_list(raw["services"], "services")

    if "retention_days" in raw:
        try:
            days = int(raw["retention_days"])
        except (TypeError, ValueError):
            raise ConfigError(f"retention_days must be an integer, got {raw['retention_days']!r}")
        if days < 0:
            raise ConfigError(f"retention_days must be >= 0, got {days}")
        config.retention_days = days

    if raw.get("lock_dir"):
        config.lock_dir = str(raw["lock_dir"])
    if raw.get("root"):
        config.root = str(raw["root"])

    return config


def load_pool_spec(path: str) -> PoolSpec:
    raw = _load_mapping(path)

    name = raw.get("name")
    if not name:
        raise ConfigError("name is required")
    spec = PoolSpec(name=str(name))

    for i, vdev in enumerate(raw.get("vdevs") or []):
        if not isinstance(vdev, dict) or "kind" not in vdev or "devices" not in vdev:
            raise ConfigError(f"vdevs[{i}] needs 'kind' and 'devices'")
        kind = str(vdev["kind"])
        if kind not in VDEV_KINDS:
            raise ConfigError(
                f"vdevs[{i}].kind must be one of {', '.join(VDEV_KINDS)}, got {kind!r}"
            )
        spec.vdevs.append((kind, _string_list(vdev["devices"], f"vdevs[{i}].devices")))

    groups = raw.get("mirror_groups")
    if groups:
        if not isinstance(groups, dict) or "size" not in groups or "devices" not in groups:
            raise ConfigError("mirror_groups needs 'size' and 'devices'")
        try:
            spec.mirror_group_size = int(groups["size"])
        except (TypeError, ValueError):
            raise ConfigError(f"mirror_groups.size must be an integer, got {groups['size']!r}")
        spec.mirror_group_devices = _string_list(groups["devices"], "mirror_groups.devices")
        spec.uneven = str(groups.get("uneven", "proceed"))
        if spec.uneven not in UNEVEN_POLICIES:
            raise ConfigError(
                f"mirror_groups.uneven must be one of {', '.join(UNEVEN_POLICIES)}, "
                f"got {spec.uneven!r}"
            )

    if not spec.vdevs and not spec.mirror_group_devices:
        raise ConfigError("at least one of 'vdevs' or 'mirror_groups' is required")

    spec.cache = _string_list(raw.get("cache"), "cache")
    spec.log = _string_list(raw.get("log"), "log")
    spec.spare = _string_list(raw.get("spare"), "spare")

    options = raw.get("options")
    if options is not None:
        if not isinstance(options, dict):
            raise ConfigError("'options' must be a mapping of property: value")
        spec.options = {str(k): _option_value(v) for k, v in options.items()}

    return spec
