"""Typed wrappers for zpool(8) and zfs(8)."""

from __future__ import annotations

from typing import Mapping, Optional

from zfs_migrate.domain.models import CommandResult
from zfs_migrate.storage.commands import run_command


def _options(flag: str, properties: Mapping[str, str]) -> list[str]:
    args = []
    for key, value in properties.items():
        args += [flag, f"{key}={value}"]
    return args


def zpool_create(
    pool: str,
    vdev: str,
    *,
    pool_properties: Mapping[str, str],
    filesystem_properties: Mapping[str, str],
    altroot: str,
) -> CommandResult:
    return run_command(
        ["zpool", "create", "-f"]
        + _options("-o", pool_properties)
        + _options("-O", filesystem_properties)
        + ["-R", altroot, pool, vdev]
    )


def zfs_create(name: str, properties: Optional[Mapping[str, str]] = None) -> CommandResult:
    return run_command(["zfs", "create"] + _options("-o", properties or {}) + [name])


def zfs_create_volume(
    name: str,
    size_mib: int,
    block_size: int,
    properties: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    return run_command(
        ["zfs", "create", "-V", f"{size_mib}M", "-b", str(block_size)]
        + _options("-o", properties or {})
        + [name]
    )


def zfs_mount(name: str) -> CommandResult:
    return run_command(["zfs", "mount", name])


def zfs_snapshot(name: str, snapshot: str, recursive: bool = True) -> CommandResult:
    command = ["zfs", "snapshot"]
    if recursive:
        command.append("-r")
    return run_command(command + [f"{name}@{snapshot}"])


def zfs_list() -> CommandResult:
    return run_command(["zfs", "list"])


def zpool_set(pool: str, prop: str, value: str) -> CommandResult:
    return run_command(["zpool", "set", f"{prop}={value}", pool])


def zpool_online_expand(pool: str, vdev: str) -> CommandResult:
    return run_command(["zpool", "online", "-e", pool, vdev])


def zpool_export(pool: str) -> CommandResult:
    return run_command(["zpool", "export", pool])
