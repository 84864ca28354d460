"""Mount helpers built on mount(8)/umount(8) argument lists.

Functions:
    - mounted_entries(): (source, mountpoint, fstype) rows of /proc/mounts
    - is_mounted(): is a device or a directory currently mounted
    - mount(): mount a device (or ZFS dataset) on a directory, creating it
    - bind_mount(): bind or recursive-bind mount
    - unmount(): unmount a directory or device
    - unmount_if_mounted(): unmount only when mounted
    - swapoff_all(): disable every active swap area
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from zfs_migrate.domain.models import CommandResult
from zfs_migrate.logging import LoggerFactory

from .commands import run_command

log = LoggerFactory.for_disk()

PROC_MOUNTS = "/proc/mounts"

PathLike = Union[str, Path]


def mounted_entries(mounts_path: str = PROC_MOUNTS) -> list[tuple[str, str, str]]:
    entries = []
    with open(mounts_path, "r", encoding="utf-8") as mounts_file:
        for line in mounts_file:
            parts = line.split()
            if len(parts) > 2:
                # Spaces in paths are octal-escaped in /proc/mounts.
                entries.append(
                    (
                        parts[0].replace("\\040", " "),
                        parts[1].replace("\\040", " "),
                        parts[2],
                    )
                )
    return entries


def is_mounted(device_or_path: PathLike, mounts_path: str = PROC_MOUNTS) -> bool:
    """True if the argument is mounted somewhere or has something mounted on it."""
    wanted = str(device_or_path).rstrip("/") or "/"
    try:
        entries = mounted_entries(mounts_path)
    except FileNotFoundError:
        return os.path.ismount(wanted)
    return any(wanted in (source, mountpoint) for source, mountpoint, _ in entries)


def mount(
    device: str,
    mountpoint: PathLike,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
) -> CommandResult:
    """Mount ``device`` on ``mountpoint``, creating the directory first."""
    Path(mountpoint).mkdir(parents=True, exist_ok=True)
    command = ["mount"]
    if fstype:
        command += ["-t", fstype]
    if options:
        command += ["-o", options]
    command += [device, str(mountpoint)]
    log.debug(f"Mounting {device} at {mountpoint}")
    return run_command(command)


def bind_mount(source: PathLike, mountpoint: PathLike, recursive: bool = False) -> CommandResult:
    flag = "--rbind" if recursive else "--bind"
    return run_command(["mount", flag, str(source), str(mountpoint)])


def unmount(
    path: PathLike, lazy: bool = False, recursive: bool = False, check: bool = True
) -> CommandResult:
    command = ["umount"]
    if recursive:
        command.append("--recursive")
    if lazy:
        command.append("--lazy")
    command.append(str(path))
    return run_command(command, check=check)


def unmount_if_mounted(path: PathLike) -> bool:
    """Unmount ``path`` if it is mounted; returns whether it was."""
    if not is_mounted(path):
        return False
    log.debug(f"Unmounting {path}")
    unmount(path)
    return True


def swapoff_all() -> CommandResult:
    return run_command(["swapoff", "--all"])
