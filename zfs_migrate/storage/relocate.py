"""Move the source root filesystem to the end of the disk.

Turns "one disk with one big ext partition" into "one disk with a minimal
copy of that filesystem at the tail and free space at the front", where
the ZFS pool partition is created next.

Sequence:
    1. Shrink the (unmounted) filesystem to its minimum size.
    2. Read its start sector, delete its partition entry and recreate it
       at that exact sector, sized to the filesystem plus the front
       margin. The bytes on disk are untouched.
    3. Create a partition numbered max(existing)+1 at the end of the disk,
       sized to the filesystem plus the (larger) tail margin.
    4. Re-read the partition table and wait for both nodes.
    5. Wipe stale signatures on the tail partition.
    6. dd the front partition onto the tail partition.
    7. Check the copy: the first e2fsck may fail or correct things, the
       second one must be clean.
    8. Delete the front partition and re-read the table.

Until step 8 the front partition is the authoritative copy; it is only
dropped after the tail copy has passed its second check.
"""

from __future__ import annotations

from zfs_migrate.domain.models import (
    FilesystemReport,
    MigrationContext,
    PartitionPlan,
    RelocationResult,
)
from zfs_migrate.logging import LoggerFactory

from .capacity import check_filesystem, measure_filesystem, read_superblock, shrink_filesystem
from .devices import (
    await_settle,
    next_partition_number,
    partition_first_sector,
    partition_path,
)
from .exceptions import ConsistencyCheckError
from .mount import mount, unmount_if_mounted
from .partitions import (
    block_copy,
    delete_partition,
    new_partition_at_end,
    new_partition_at_sector,
    reread_partition_table,
    wipe_signatures,
)

log = LoggerFactory.for_disk()

MIB = 1024 * 1024


def filesystem_mib(report: FilesystemReport, shrunk_blocks: int) -> int:
    """Size of the shrunk filesystem in whole MiB.

    Uses the larger of the estimate and the block count actually left by
    ``resize2fs -M``; the margins absorb the rounding down.
    """
    return max(report.min_blocks, shrunk_blocks) * report.block_size // MIB


def verify_copy(device: str) -> None:
    """Two forced e2fsck passes over a raw copy.

    The first pass is allowed to fail or correct errors. The second pass
    must exit 0, otherwise the copy cannot be trusted.

    Raises:
        ConsistencyCheckError: If the second pass is not clean
    """
    first = check_filesystem(device, repair=True)
    if not first.ok:
        log.warning(
            f"First check of {device} exited with {first.returncode}; checking again"
        )
    second = check_filesystem(device, repair=False)
    if not second.ok:
        raise ConsistencyCheckError(device, second.returncode, second.stdout + second.stderr)
    log.info(f"Copy on {device} passed its consistency check")


def relocate_root_partition(context: MigrationContext) -> RelocationResult:
    """Shrink the root filesystem and move it to a new partition at the end.

    Raises:
        CommandError: If any tool fails; nothing is undone
        ConsistencyCheckError: If the copy does not check clean
    """
    config = context.config
    disk = config.target.disk
    root_number = config.target.root_partition
    front = partition_path(disk, root_number)

    unmount_if_mounted(front)

    log.info(f"Shrinking filesystem on {front}...")
    report = measure_filesystem(front)
    shrink_filesystem(front)
    shrunk_blocks, _ = read_superblock(front)
    size_mib = filesystem_mib(report, shrunk_blocks)
    front_mib = size_mib + config.front_margin_mib
    tail_mib = size_mib + config.tail_margin_mib

    start_sector = partition_first_sector(disk, root_number)
    log.info(f"Recreating {front} as {front_mib} MiB at sector {start_sector}")
    delete_partition(disk, root_number)
    new_partition_at_sector(disk, root_number, start_sector, front_mib)

    temporary = next_partition_number(disk)
    tail = partition_path(disk, temporary)
    log.info(f"Creating {tail} ({tail_mib} MiB) at the end of the disk")
    new_partition_at_end(disk, temporary, tail_mib)
    plan = PartitionPlan(
        original_partition=root_number,
        temporary_partition=temporary,
        front_mib=front_mib,
        tail_mib=tail_mib,
        pool_partition=root_number,
    )

    reread_partition_table(disk)
    await_settle([front, tail], timeout=config.settle_timeout)

    wipe_signatures(tail)
    log.info(f"Copying {front} to {tail}...")
    block_copy(front, tail, config.copy_block_size)
    verify_copy(tail)

    log.info(f"Removing original partition {front}")
    delete_partition(disk, root_number)
    reread_partition_table(disk)
    await_settle([tail], timeout=config.settle_timeout)

    return RelocationResult(plan=plan, source_device=tail)


def mount_source(context: MigrationContext, relocation: RelocationResult) -> None:
    """Mount the relocated filesystem read-write at the source sentinel."""
    log.info(f"Mounting source filesystem at {context.source}...")
    mount(relocation.source_device, context.source)
