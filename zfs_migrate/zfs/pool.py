"""Root pool partition, pool creation and one-shot expansion."""

from __future__ import annotations

from zfs_migrate.domain.models import MigrationContext, RelocationResult
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.devices import await_settle, by_id_partition_path
from zfs_migrate.storage.exceptions import MigrationError
from zfs_migrate.storage.mount import unmount_if_mounted
from zfs_migrate.storage.partitions import (
    TYPECODE_ZFS,
    delete_partition,
    new_partition_filling,
    reread_partition_table,
)

from .commands import zfs_list, zpool_create, zpool_online_expand, zpool_set

log = LoggerFactory.for_pool()

POOL_PROPERTIES = {"ashift": "12"}

ROOT_FILESYSTEM_PROPERTIES = {
    "atime": "off",
    "canmount": "off",
    "compression": "lz4",
    "normalization": "formD",
    "xattr": "sa",
    "mountpoint": "/",
}


def pool_vdev(context: MigrationContext) -> str:
    """by-id path of the pool partition; survives device renumbering."""
    if not context.disk_id:
        raise MigrationError("Stable disk id was not resolved before pool operations")
    return by_id_partition_path(context.disk_id, context.config.target.root_partition)


def create_pool_partition(context: MigrationContext) -> str:
    """Fill the space freed at the front of the disk with a ZFS partition."""
    config = context.config
    number = config.target.root_partition
    log.info(f"Creating ZFS partition {number} on {config.target.device_path}")
    new_partition_filling(config.target.disk, number, TYPECODE_ZFS)
    reread_partition_table(config.target.disk)
    vdev = pool_vdev(context)
    await_settle([vdev], timeout=config.settle_timeout)
    return vdev


def create_pool(context: MigrationContext) -> None:
    """Create the root pool with its altroot at the target sentinel."""
    config = context.config
    vdev = pool_vdev(context)
    log.info(f"Creating new ZFS ROOT pool ({config.pool}) on {vdev}...")
    context.target.mkdir(parents=True, exist_ok=True)
    zpool_create(
        config.pool,
        vdev,
        pool_properties=POOL_PROPERTIES,
        filesystem_properties=ROOT_FILESYSTEM_PROPERTIES,
        altroot=str(context.target),
    )


def grow_pool_partition(context: MigrationContext, relocation: RelocationResult) -> None:
    """Drop the old root copy and let the pool partition span the disk.

    The pool partition is deleted and recreated at the same start sector,
    so the pool's data is not moved.
    """
    config = context.config
    disk = config.target.disk
    plan = relocation.plan

    unmount_if_mounted(context.source)
    log.info("Removing old ROOT filesystem...")
    delete_partition(disk, plan.temporary_partition)
    delete_partition(disk, plan.pool_partition)
    new_partition_filling(disk, plan.pool_partition, TYPECODE_ZFS)
    reread_partition_table(disk)
    await_settle([pool_vdev(context)], timeout=config.settle_timeout)


def expand_pool(context: MigrationContext) -> None:
    """Grow the pool onto its enlarged partition, then switch autoexpand off."""
    pool = context.config.pool
    log.info(f"Expanding ZFS ROOT pool {pool}...")
    zpool_set(pool, "autoexpand", "on")
    zpool_online_expand(pool, pool_vdev(context))
    zpool_set(pool, "autoexpand", "off")
    log.debug(zfs_list().stdout)
