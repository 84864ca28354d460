"""Run commands inside the target root.

The kernel pseudo-filesystems (/dev, /proc, /sys, recursively) and the
live system's resolver configuration are bind-mounted into the target
for the duration of each command, and always unmounted afterwards, also
when the command fails.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from functools import partial
from pathlib import Path
from typing import Callable, Iterator, Sequence

from zfs_migrate.domain.models import CommandResult
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.commands import run_command
from zfs_migrate.storage.exceptions import CommandError
from zfs_migrate.storage.mount import bind_mount, unmount

log = LoggerFactory.for_boot()

PSEUDO_FILESYSTEMS = ("dev", "proc", "sys")
RESOLV_CONF = Path("/etc/resolv.conf")

RunInTarget = Callable[..., CommandResult]


def _target_resolv_conf(target: Path) -> Path:
    """Where the target's /etc/resolv.conf really lives, resolved inside target."""
    path = target / "etc" / "resolv.conf"
    for _ in range(8):
        if not path.is_symlink():
            break
        link = os.readlink(path)
        if link.startswith("/"):
            path = target / link.lstrip("/")
        else:
            path = Path(os.path.normpath(path.parent / link))
    return path


@contextmanager
def target_mounts(target: Path, resolv_conf: Path = RESOLV_CONF) -> Iterator[None]:
    """Bind the live system's /dev, /proc, /sys and resolv.conf into ``target``."""
    mounted: list[Path] = []
    placeholder: Path | None = None
    try:
        if resolv_conf.exists():
            destination = _target_resolv_conf(target)
            if not destination.exists():
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.touch()
                placeholder = destination
            bind_mount(os.path.realpath(resolv_conf), destination)
            mounted.append(destination)
        for name in PSEUDO_FILESYSTEMS:
            mountpoint = target / name
            mountpoint.mkdir(parents=True, exist_ok=True)
            bind_mount(f"/{name}", mountpoint, recursive=True)
            mounted.append(mountpoint)
        yield
    finally:
        for mountpoint in reversed(mounted):
            result = unmount(mountpoint, lazy=True, recursive=True, check=False)
            if not result.ok:
                log.warning(f"Could not unmount {mountpoint}: {result.stderr.strip()}")
                if mountpoint == placeholder:
                    placeholder = None
        if placeholder is not None:
            placeholder.unlink(missing_ok=True)


def run_in_target(
    target: Path,
    args: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
) -> CommandResult:
    """Run ``args`` with ``target`` as the root directory.

    Raises:
        CommandError: If check is True and the command exits non-zero
    """
    with target_mounts(target):
        return run_command(["chroot", str(target), *args], check=check, capture=capture)


def bound_runner(target: Path) -> RunInTarget:
    """run_in_target with the target fixed, as the boot steps expect it."""
    return partial(run_in_target, target)


def interactive_shell(target: Path, args: Sequence[str] = ()) -> int:
    """Run a command (default /bin/bash) in the target attached to the terminal."""
    command = list(args) or ["/bin/bash"]
    try:
        result = run_in_target(target, command, check=False, capture=False)
    except CommandError as error:
        return error.returncode
    return result.returncode
