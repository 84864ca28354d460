"""Steps after the system is bootable: expand, swap, snapshot, unmount."""

from __future__ import annotations

from typing import Iterable, Optional

from zfs_migrate.domain.models import DatasetSpec, MigrationContext, RelocationResult
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.mount import unmount_if_mounted
from zfs_migrate.zfs.commands import zfs_snapshot, zpool_export
from zfs_migrate.zfs.datasets import snapshot_roots
from zfs_migrate.zfs.pool import expand_pool, grow_pool_partition
from zfs_migrate.zfs.swap import create_swap

from .boot import EFI_MOUNT, update_grub
from .chroot import RunInTarget, bound_runner

log = LoggerFactory.for_migration()


def expand(
    context: MigrationContext,
    relocation: RelocationResult,
    run: Optional[RunInTarget] = None,
) -> None:
    """Give the pool the space held by the old root copy."""
    run = run or bound_runner(context.target)
    grow_pool_partition(context, relocation)
    # Partition numbers changed; regenerate grub.cfg against the new table.
    update_grub(run)
    expand_pool(context)


def add_swap(context: MigrationContext) -> Optional[str]:
    return create_swap(context)


def take_snapshots(context: MigrationContext, tree: Iterable[DatasetSpec]) -> list[str]:
    """Recursive recovery snapshots of the boot environment and user data roots."""
    name = context.config.snapshot_name
    taken = []
    for dataset in snapshot_roots(tree, context.config.pool):
        log.info(f"Creating snapshot {dataset}@{name}")
        zfs_snapshot(dataset, name, recursive=True)
        taken.append(f"{dataset}@{name}")
    return taken


def unmount_all(context: MigrationContext, tree: Iterable[DatasetSpec]) -> None:
    """Release everything below the target and export the pool."""
    log.info("Unmounting filesystems...")
    unmount_if_mounted(context.target / EFI_MOUNT)
    for spec in reversed(list(tree)):
        if spec.legacy:
            unmount_if_mounted(context.target / spec.mount_path().lstrip("/"))
    zpool_export(context.config.pool)
    unmount_if_mounted(context.source)
