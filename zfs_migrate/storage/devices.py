"""Disk and partition inspection.

Derives partition device paths, the persistent /dev/disk/by-id name of a
disk, and the partition numbers currently allocated on it. Also waits for
the kernel to register partition nodes after the table has been edited.

Operations:
    - partition_path(): /dev/sda + 2 -> /dev/sda2, /dev/nvme0n1 + 2 -> /dev/nvme0n1p2
    - parse_partition_numbers(): partition numbers from ``sgdisk --print`` text
    - list_partition_numbers(): the same, read from the live disk
    - partition_first_sector(): start sector of a partition, from ``sgdisk --info``
    - stable_id(): persistent by-id name for a disk
    - by_id_partition_path(): /dev/disk/by-id/<id>-part<N>
    - await_settle(): block until device nodes exist, bounded by a timeout
    - get_ram_mib(): installed memory in MiB
"""

from __future__ import annotations

import os
import stat
import time
from pathlib import Path
from typing import Iterable

from zfs_migrate.logging import LoggerFactory

from .commands import run_command
from .exceptions import DeviceNotFoundError, MigrationError, SettleTimeoutError

log = LoggerFactory.for_disk()

BY_ID_DIR = Path("/dev/disk/by-id")
MEMINFO_PATH = Path("/proc/meminfo")
SETTLE_POLL_INTERVAL = 0.5

# by-id names derived from protocol identifiers rather than model/serial.
PROTOCOL_ID_PREFIXES = ("wwn-", "eui.", "nvme-eui.", "ieee", "nvme-nvme.")

# Lines before the partition rows in `sgdisk --print` output.
SGDISK_HEADER_LINES = 11


def device_path(disk: str) -> str:
    return disk if disk.startswith("/dev/") else f"/dev/{disk}"


def partition_path(disk: str, partition_number: int) -> str:
    """Device node of a partition.

    Kernel names for disks ending in a digit (nvme0n1, mmcblk0, loop0) put a
    ``p`` between the disk name and the partition number.
    """
    base = device_path(disk)
    separator = "p" if base[-1].isdigit() else ""
    return f"{base}{separator}{partition_number}"


def parse_partition_numbers(output: str) -> set[int]:
    """Partition numbers listed by ``sgdisk --print``.

    Rows follow the ``Number  Start (sector) ...`` header. If that header is
    missing the fixed-size preamble is skipped instead.
    """
    lines = output.splitlines()
    start = None
    for index, line in enumerate(lines):
        if line.strip().startswith("Number"):
            start = index + 1
            break
    if start is None:
        start = SGDISK_HEADER_LINES
    numbers = set()
    for line in lines[start:]:
        fields = line.split()
        if fields and fields[0].isdigit():
            numbers.add(int(fields[0]))
    return numbers


def list_partition_numbers(disk: str) -> set[int]:
    """Partition numbers currently allocated on the disk."""
    result = run_command(["sgdisk", "--print", device_path(disk)])
    numbers = parse_partition_numbers(result.stdout)
    log.debug(f"Partitions on {device_path(disk)}: {sorted(numbers)}")
    return numbers


def next_partition_number(disk: str) -> int:
    """One past the highest allocated partition number; gaps are not reused."""
    numbers = list_partition_numbers(disk)
    return max(numbers, default=0) + 1


def parse_first_sector(output: str) -> int:
    """Start sector from ``sgdisk --info=N`` output (``First sector: 2048 (at 1024.0 KiB)``)."""
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "First sector":
            fields = value.split()
            if fields and fields[0].isdigit():
                return int(fields[0])
    raise MigrationError("sgdisk --info did not report a first sector")


def partition_first_sector(disk: str, partition_number: int) -> int:
    """Sector where partition ``partition_number`` starts."""
    result = run_command(["sgdisk", f"--info={partition_number}", device_path(disk)])
    sector = parse_first_sector(result.stdout)
    log.debug(f"Partition {partition_number} on {device_path(disk)} starts at sector {sector}")
    return sector


def _is_protocol_id(name: str) -> bool:
    return name.startswith(PROTOCOL_ID_PREFIXES)


def stable_id(disk: str, by_id_dir: Path = BY_ID_DIR) -> str:
    """Persistent by-id name whose link resolves to the disk.

    Model/serial style names (ata-, nvme-, scsi-, usb-) are preferred over
    WWN/EUI names when both exist.

    Raises:
        DeviceNotFoundError: If no by-id link points at the disk
    """
    node = Path(os.path.realpath(device_path(disk)))
    candidates = []
    try:
        entries = sorted(by_id_dir.iterdir())
    except FileNotFoundError as error:
        raise DeviceNotFoundError(str(by_id_dir), "no persistent device names") from error
    for entry in entries:
        if Path(os.path.realpath(entry)) == node:
            candidates.append(entry.name)
    if not candidates:
        raise DeviceNotFoundError(device_path(disk), f"no link in {by_id_dir}")
    candidates.sort(key=lambda name: (_is_protocol_id(name), name))
    chosen = candidates[0]
    log.debug(f"Stable id for {device_path(disk)}: {chosen} (from {candidates})")
    return chosen


def by_id_partition_path(
    disk_id: str, partition_number: int, by_id_dir: Path = BY_ID_DIR
) -> str:
    return str(by_id_dir / f"{disk_id}-part{partition_number}")


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def validate_block_device(path: str) -> None:
    """Raises DeviceNotFoundError unless path is an existing block device."""
    if not os.path.exists(path):
        raise DeviceNotFoundError(path)
    if not is_block_device(path):
        raise DeviceNotFoundError(path, "not a block device")


def await_settle(
    paths: Iterable[str],
    timeout: float = 30.0,
    interval: float = SETTLE_POLL_INTERVAL,
) -> None:
    """Wait for udev to finish and for every device node to exist.

    Blocks the caller; polls every ``interval`` seconds until ``timeout``.

    Raises:
        SettleTimeoutError: Naming the first node that never appeared
    """
    wanted = list(paths)
    # A non-zero exit only means udev timed out; the polling below decides.
    run_command(["udevadm", "settle", f"--timeout={int(timeout)}"], check=False)
    deadline = time.monotonic() + timeout
    while True:
        missing = [path for path in wanted if not os.path.exists(path)]
        if not missing:
            return
        if time.monotonic() >= deadline:
            raise SettleTimeoutError(missing[0], timeout)
        log.debug(f"Waiting for {', '.join(missing)}")
        time.sleep(interval)


def get_ram_mib(meminfo_path: Path = MEMINFO_PATH) -> int:
    """Total installed memory in MiB, from /proc/meminfo."""
    with open(meminfo_path, "r", encoding="utf-8") as meminfo:
        for line in meminfo:
            key, _, value = line.partition(":")
            if key.strip() == "MemTotal":
                return int(value.split()[0]) // 1024
    raise MigrationError(f"MemTotal missing from {meminfo_path}")

