"""Typed wrappers for the partition table and raw block tools.

sgdisk start/end arguments use its own notation: ``0`` is the default
(first free sector or last usable sector), ``+512M`` is relative to the
start, and ``-512M`` is measured back from the end of the largest free
block.
"""

from __future__ import annotations

from zfs_migrate.domain.models import CommandResult

from .commands import run_command
from .devices import device_path

TYPECODE_LINUX = "8300"
TYPECODE_ZFS = "BF01"


def delete_partition(disk: str, number: int) -> CommandResult:
    return run_command(["sgdisk", f"--delete={number}", device_path(disk)])


def new_partition(
    disk: str, number: int, start: str, end: str, typecode: str
) -> CommandResult:
    """Create partition ``number`` spanning ``start``..``end``."""
    return run_command(
        [
            "sgdisk",
            f"--new={number}:{start}:{end}",
            f"--typecode={number}:{typecode}",
            device_path(disk),
        ]
    )


def new_partition_at_sector(
    disk: str, number: int, start_sector: int, size_mib: int, typecode: str = TYPECODE_LINUX
) -> CommandResult:
    """Partition of ``size_mib`` starting exactly at ``start_sector``."""
    return new_partition(disk, number, str(start_sector), f"+{size_mib}M", typecode)


def new_partition_at_end(
    disk: str, number: int, size_mib: int, typecode: str = TYPECODE_LINUX
) -> CommandResult:
    """Partition of ``size_mib`` ending at the last usable sector."""
    return new_partition(disk, number, f"-{size_mib}M", "0", typecode)


def new_partition_filling(
    disk: str, number: int, typecode: str = TYPECODE_ZFS
) -> CommandResult:
    """Partition covering the largest free block."""
    return new_partition(disk, number, "0", "0", typecode)


def reread_partition_table(disk: str) -> CommandResult:
    return run_command(["partprobe", device_path(disk)])


def wipe_signatures(device: str) -> CommandResult:
    return run_command(["wipefs", "--all", device])


def block_copy(source: str, destination: str, block_size: str = "64K") -> CommandResult:
    """Raw byte copy of one block device onto another."""
    return run_command(
        [
            "dd",
            f"if={source}",
            f"of={destination}",
            f"bs={block_size}",
            "conv=fsync",
            "status=none",
        ]
    )
