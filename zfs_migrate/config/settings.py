"""Settings file and defaults for a migration run."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from zfs_migrate.domain.models import (
    FEATURES,
    BootType,
    DiskTarget,
    MigrationConfig,
    SwapPolicy,
)
from zfs_migrate.storage.exceptions import ConfigError


SETTINGS_PATH = Path(
    os.environ.get(
        "ZFS_MIGRATE_SETTINGS_PATH",
        "/etc/zfs-migrate/settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_FRONT_MARGIN_MIB = 128
DEFAULT_TAIL_MARGIN_MIB = 256
DEFAULT_MAX_PERCENT_FULL = 45
DEFAULT_SETTLE_TIMEOUT = 30.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "boot_type": "UEFI",
    "disk": "sda",
    "efi_partition": 1,
    "root_partition": 2,
    "pool": "rpool",
    "root_dataset": "ubuntu",
    "swap": "auto",
    "filesystems": ["local", "opt"],
    "front_margin_mib": DEFAULT_FRONT_MARGIN_MIB,
    "tail_margin_mib": DEFAULT_TAIL_MARGIN_MIB,
    "max_percent_full": DEFAULT_MAX_PERCENT_FULL,
    "copy_block_size": "64K",
    "snapshot_name": "initial",
    "settle_timeout": DEFAULT_SETTLE_TIMEOUT,
    "swap_file": "swapfile",
    "install_host_packages": True,
    "bootloader_id": "ubuntu",
}


def load_settings(path: Optional[Path] = None) -> dict[str, Any]:
    """Return defaults overlaid with the JSON settings file, if it exists.

    Raises:
        ConfigError: If the file cannot be read, is not valid JSON, is not
            an object, or contains unknown keys
    """
    values = dict(DEFAULT_SETTINGS)
    settings_path = path or SETTINGS_PATH
    if not settings_path.exists():
        return values
    try:
        data = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ConfigError(f"Cannot read settings file {settings_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {settings_path} must contain a JSON object")
    unknown = sorted(set(data) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ConfigError(f"Unknown settings in {settings_path}: {', '.join(unknown)}")
    values.update(data)
    return values


def _positive_int(values: Mapping[str, Any], key: str) -> int:
    value = values[key]
    try:
        number = int(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from error
    if number <= 0 or isinstance(value, bool):
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return number


def build_config(values: Mapping[str, Any]) -> MigrationConfig:
    """Validate raw settings and build the immutable run configuration.

    Raises:
        ConfigError: On any invalid or inconsistent value
    """
    disk = str(values["disk"] or "").strip()
    if disk.startswith("/dev/"):
        disk = disk[len("/dev/"):]
    if not disk or "/" in disk:
        raise ConfigError(f"Invalid disk name: {values['disk']!r}")

    try:
        boot_type = BootType(str(values["boot_type"]).upper())
    except ValueError as error:
        raise ConfigError(
            f"boot_type must be UEFI or BIOS, got {values['boot_type']!r}"
        ) from error

    root_partition = _positive_int(values, "root_partition")
    efi_partition = None
    if boot_type is BootType.UEFI:
        if values.get("efi_partition") in (None, ""):
            raise ConfigError("efi_partition is required when boot_type is UEFI")
        efi_partition = _positive_int(values, "efi_partition")
        if efi_partition == root_partition:
            raise ConfigError("efi_partition and root_partition must differ")

    filesystems = frozenset(values.get("filesystems") or ())
    unknown = sorted(filesystems - set(FEATURES))
    if unknown:
        raise ConfigError(
            f"Unknown filesystems: {', '.join(unknown)} "
            f"(choose from {', '.join(FEATURES)})"
        )

    try:
        swap = SwapPolicy.parse(values["swap"])
    except ValueError as error:
        raise ConfigError(str(error)) from error

    pool = str(values["pool"] or "").strip()
    if not pool or "/" in pool or " " in pool:
        raise ConfigError(f"Invalid pool name: {values['pool']!r}")

    max_percent_full = _positive_int(values, "max_percent_full")
    if max_percent_full >= 100:
        raise ConfigError("max_percent_full must be below 100")

    front_margin_mib = _positive_int(values, "front_margin_mib")
    tail_margin_mib = _positive_int(values, "tail_margin_mib")
    # The copy at the tail must be able to hold the whole front partition.
    if tail_margin_mib < front_margin_mib:
        raise ConfigError("tail_margin_mib must not be smaller than front_margin_mib")

    return MigrationConfig(
        target=DiskTarget(
            disk=disk,
            root_partition=root_partition,
            efi_partition=efi_partition,
            pool_name=pool,
        ),
        boot_type=boot_type,
        filesystems=filesystems,
        swap=swap,
        root_dataset=str(values["root_dataset"]),
        front_margin_mib=front_margin_mib,
        tail_margin_mib=tail_margin_mib,
        max_percent_full=max_percent_full,
        copy_block_size=str(values["copy_block_size"]),
        snapshot_name=str(values["snapshot_name"]),
        settle_timeout=float(values["settle_timeout"]),
        swap_file=str(values["swap_file"]),
        install_host_packages=bool(values["install_host_packages"]),
        target_packages=(
            "zfs-initramfs",
            "grub-efi-amd64" if boot_type is BootType.UEFI else "grub-pc",
        ),
        bootloader_id=str(values["bootloader_id"]),
    )


def load_config(
    path: Optional[Path] = None, overrides: Optional[Mapping[str, Any]] = None
) -> MigrationConfig:
    """Defaults, then the settings file, then non-None overrides (CLI flags)."""
    values = load_settings(path)
    if overrides:
        values.update({key: value for key, value in overrides.items() if value is not None})
    return build_config(values)
