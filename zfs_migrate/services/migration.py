"""The migration pipeline.

A strictly linear list of named steps. Each step runs inside
operation_context() so its start, duration and failure end up in the run
log under the step's name. The first exception stops the run; nothing
that already happened is undone.

Steps:
    preflight -> capacity -> relocate -> mount-source -> pool-partition
    -> pool -> datasets -> clone -> boot -> expand -> swap -> snapshot
    -> unmount
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, Optional

from zfs_migrate.domain.models import DatasetSpec, MigrationContext, RelocationResult
from zfs_migrate.logging import LoggerFactory, flush_logs, operation_context, run_log_path
from zfs_migrate.storage.capacity import check_capacity, inspect_filesystem
from zfs_migrate.storage.commands import require_tools, run_command
from zfs_migrate.storage.devices import partition_path, stable_id, validate_block_device
from zfs_migrate.storage.exceptions import MigrationError, PrivilegeError
from zfs_migrate.storage.mount import swapoff_all, unmount_if_mounted
from zfs_migrate.storage.relocate import mount_source, relocate_root_partition
from zfs_migrate.zfs.datasets import build_datasets
from zfs_migrate.zfs.pool import create_pool, create_pool_partition

from .boot import integrate_boot
from .chroot import RunInTarget, bound_runner
from .cloning import clone_installation
from .finalize import add_swap, expand, take_snapshots, unmount_all

log = LoggerFactory.for_migration()

REQUIRED_TOOLS = (
    "sgdisk",
    "partprobe",
    "udevadm",
    "wipefs",
    "dd",
    "e2fsck",
    "resize2fs",
    "dumpe2fs",
    "zpool",
    "zfs",
    "rsync",
    "mkswap",
    "chroot",
    "mount",
    "umount",
    "swapoff",
)

RUN_LOG_TARGET = Path("var/log/zfs-migrate")

Step = Callable[[], None]


def check_privileges() -> None:
    euid = os.geteuid()
    if euid != 0:
        raise PrivilegeError(euid)


def install_host_packages(packages: tuple[str, ...]) -> None:
    log.info("Installing dependencies...")
    run_command(["add-apt-repository", "--yes", "universe"])
    run_command(["apt-get", "--yes", "install", *packages])


def copy_run_log(target: Path) -> Optional[Path]:
    """Copy the run log into the new root, where it survives the reboot."""
    source = run_log_path()
    if source is None or not source.exists():
        return None
    flush_logs()
    destination = target / RUN_LOG_TARGET / source.name
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    log.info(f"Run log copied to {destination}")
    return destination


class Migration:
    """One run of the ext4 to ZFS root migration."""

    def __init__(self, context: MigrationContext, run: Optional[RunInTarget] = None):
        self.context = context
        self.run_in_target = run or bound_runner(context.target)
        self.current_step: Optional[str] = None
        self.relocation: Optional[RelocationResult] = None
        self.tree: list[DatasetSpec] = []

    def steps(self) -> list[tuple[str, Step]]:
        return [
            ("preflight", self.preflight),
            ("capacity", self.check_capacity),
            ("relocate", self.relocate),
            ("mount-source", self.mount_source),
            ("pool-partition", self.create_pool_partition),
            ("pool", self.create_pool),
            ("datasets", self.create_datasets),
            ("clone", self.clone),
            ("boot", self.integrate_boot),
            ("expand", self.expand),
            ("swap", self.add_swap),
            ("snapshot", self.snapshot),
            ("unmount", self.unmount),
        ]

    def run(self) -> None:
        """Run every step in order; the first failure propagates."""
        config = self.context.config
        log.info(
            f"Migrating /dev/{config.target.disk} partition "
            f"{config.target.root_partition} to ZFS pool {config.pool}"
        )
        for name, step in self.steps():
            self.current_step = name
            with operation_context(name, disk=config.target.disk):
                step()
        self.current_step = None

    # -- steps ---------------------------------------------------------------

    def preflight(self) -> None:
        """Checks and preparation that do not modify the disk."""
        check_privileges()
        config = self.context.config
        target = config.target
        validate_block_device(target.device_path)
        root = partition_path(target.disk, target.root_partition)
        validate_block_device(root)
        efi = None
        if config.uses_efi:
            efi = partition_path(target.disk, target.efi_partition)
            validate_block_device(efi)
        self.context.disk_id = stable_id(target.disk)
        log.info(f"Using disk id {self.context.disk_id}")

        log.info("Unmounting existing installation...")
        swapoff_all()
        unmount_if_mounted(root)
        if efi is not None:
            unmount_if_mounted(efi)

        if config.install_host_packages:
            install_host_packages(config.host_packages)
        require_tools(REQUIRED_TOOLS)

    def check_capacity(self) -> None:
        target = self.context.config.target
        root = partition_path(target.disk, target.root_partition)
        log.info("Checking available disk space...")
        report = inspect_filesystem(root)
        check_capacity(report, root, self.context.config.max_percent_full)

    def relocate(self) -> None:
        self.relocation = relocate_root_partition(self.context)

    def mount_source(self) -> None:
        mount_source(self.context, self._relocation())

    def create_pool_partition(self) -> None:
        create_pool_partition(self.context)

    def create_pool(self) -> None:
        create_pool(self.context)

    def create_datasets(self) -> None:
        self.tree = build_datasets(self.context)

    def clone(self) -> None:
        clone_installation(self.context)

    def integrate_boot(self) -> None:
        integrate_boot(self.context, self.run_in_target)

    def expand(self) -> None:
        expand(self.context, self._relocation(), self.run_in_target)

    def add_swap(self) -> None:
        add_swap(self.context)

    def snapshot(self) -> None:
        take_snapshots(self.context, self.tree)

    def unmount(self) -> None:
        # The log goes into the var/log dataset, so copy it before unmounting.
        copy_run_log(self.context.target)
        unmount_all(self.context, self.tree)

    def _relocation(self) -> RelocationResult:
        if self.relocation is None:
            raise MigrationError("Root partition has not been relocated")
        return self.relocation
