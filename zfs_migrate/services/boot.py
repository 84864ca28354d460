"""Make the new root bootable from ZFS.

Everything that has to run as the target system runs through the chroot
helper. Two independent checks guard the result: grub-probe must report
``zfs`` for the new root, and the installed GRUB must have shipped
``zfs.mod``. Either check failing ends the migration, because the disk
would not boot.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from zfs_migrate.domain.models import MigrationContext
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.devices import BY_ID_DIR, partition_path
from zfs_migrate.storage.exceptions import BootVerificationError
from zfs_migrate.storage.mount import mount

from .chroot import RunInTarget, bound_runner

log = LoggerFactory.for_boot()

ZFS_MARKER = "zfs"
RESUME_CONF = Path("etc/initramfs-tools/conf.d/resume")
GRUB_DEFAULTS = Path("etc/default/grub")
EFI_MOUNT = Path("boot/efi")

_CMDLINE_RE = re.compile(r"^(\s*GRUB_CMDLINE_LINUX_DEFAULT=)([\"']?)(.*?)\2\s*$")
_HIDDEN_TIMEOUT_RE = re.compile(r"^\s*GRUB_HIDDEN_TIMEOUT=")
_TERMINAL_RE = re.compile(r"^\s*#\s*(GRUB_TERMINAL=console\b.*)$")
_QUIET_ARGS = {"quiet", "splash"}


# ==============================================================================
# Configuration file rewrites
# ==============================================================================


def rewrite_fstab(text: str, pool: str) -> str:
    """Drop the old root and swap entries and add the legacy ZFS mounts."""
    kept = []
    for line in text.splitlines():
        fields = line.split()
        if fields and not fields[0].startswith("#") and len(fields) >= 3:
            if fields[1] == "/" or fields[2] == "swap":
                continue
        kept.append(line)
    kept.append(f"{pool}/var/log  /var/log  zfs  defaults  0  0")
    kept.append(f"{pool}/var/tmp  /var/tmp  zfs  defaults  0  0")
    return "\n".join(kept) + "\n"


def rewrite_grub_defaults(text: str) -> str:
    """Make boot problems visible.

    - comment out GRUB_HIDDEN_TIMEOUT
    - remove ``quiet`` and ``splash`` from GRUB_CMDLINE_LINUX_DEFAULT
    - enable GRUB_TERMINAL=console (added when absent)
    """
    lines = []
    terminal_set = False
    for line in text.splitlines():
        if _HIDDEN_TIMEOUT_RE.match(line):
            line = "#" + line
        elif _CMDLINE_RE.match(line):
            match = _CMDLINE_RE.match(line)
            prefix, quote, value = match.groups()
            args = [arg for arg in value.split() if arg not in _QUIET_ARGS]
            line = f"{prefix}{quote}{' '.join(args)}{quote}"
        elif _TERMINAL_RE.match(line):
            line = _TERMINAL_RE.match(line).group(1)
            terminal_set = True
        elif line.strip().startswith("GRUB_TERMINAL=console"):
            terminal_set = True
        lines.append(line)
    if not terminal_set:
        lines.append("GRUB_TERMINAL=console")
    return "\n".join(lines) + "\n"


def update_fstab(context: MigrationContext) -> None:
    log.info("Fixing fstab...")
    fstab = context.target / "etc" / "fstab"
    text = fstab.read_text(encoding="utf-8") if fstab.exists() else ""
    fstab.write_text(rewrite_fstab(text, context.config.pool), encoding="utf-8")


def disable_resume(target: Path) -> None:
    """The old swap is gone, so the initramfs must not wait for a resume device."""
    path = target / RESUME_CONF
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("RESUME=none\n", encoding="utf-8")


def apply_grub_defaults(target: Path) -> None:
    path = target / GRUB_DEFAULTS
    path.write_text(rewrite_grub_defaults(path.read_text(encoding="utf-8")), encoding="utf-8")


# ==============================================================================
# Commands run in the target
# ==============================================================================


def mount_efi_partition(context: MigrationContext) -> Optional[Path]:
    config = context.config
    if not config.uses_efi:
        return None
    mountpoint = context.target / EFI_MOUNT
    mount(partition_path(config.target.disk, config.target.efi_partition), mountpoint)
    return mountpoint


def install_target_packages(context: MigrationContext, run: RunInTarget) -> None:
    log.info(f"Installing {', '.join(context.config.target_packages)} in target...")
    run(["apt-get", "--yes", "install", *context.config.target_packages])


def probe_bootloader(run: RunInTarget) -> None:
    """grub-probe must see the new root as zfs.

    Raises:
        BootVerificationError: If grub-probe fails or reports another filesystem
    """
    result = run(["grub-probe", "/"], check=False)
    reported = (result.stdout or result.stderr).strip()
    if not result.ok or ZFS_MARKER not in result.stdout:
        raise BootVerificationError(f"grub-probe reported {reported!r}")
    log.info(f"grub-probe reports {reported}")


def rebuild_initramfs(run: RunInTarget) -> None:
    log.info("Rebuilding initramfs for all kernels...")
    run(["update-initramfs", "-u", "-k", "all"])


def update_grub(run: RunInTarget) -> None:
    run(["update-grub"])


def install_grub(context: MigrationContext, run: RunInTarget) -> None:
    config = context.config
    if config.uses_efi:
        run(
            [
                "grub-install",
                "--target=x86_64-efi",
                f"--efi-directory=/{EFI_MOUNT}",
                f"--bootloader-id={config.bootloader_id}",
                "--recheck",
                "--no-floppy",
            ]
        )
    else:
        run(["grub-install", "--recheck", str(BY_ID_DIR / context.disk_id)])


def verify_zfs_module(target: Path) -> Path:
    """GRUB's zfs module must exist on disk for at least one platform.

    Raises:
        BootVerificationError: If no boot/grub/*/zfs.mod was installed
    """
    modules = sorted((target / "boot" / "grub").glob("*/zfs.mod"))
    if not modules:
        raise BootVerificationError("zfs.mod was not installed under /boot/grub")
    log.debug(f"Found GRUB ZFS module {modules[0]}")
    return modules[0]


def integrate_boot(context: MigrationContext, run: Optional[RunInTarget] = None) -> None:
    """Rewrite the target's boot configuration and install GRUB.

    Raises:
        BootVerificationError: If GRUB cannot boot from ZFS
        CommandError: If any command in the target fails
    """
    run = run or bound_runner(context.target)

    update_fstab(context)
    disable_resume(context.target)

    log.info("Installing GRUB...")
    mount_efi_partition(context)
    install_target_packages(context, run)
    probe_bootloader(run)
    rebuild_initramfs(run)
    apply_grub_defaults(context.target)
    update_grub(run)
    install_grub(context, run)
    verify_zfs_module(context.target)
