"""Capacity planning for the source ext filesystem.

Reads the minimum shrinkable size and the block geometry from e2fsprogs
output and decides whether the filesystem can be relocated at all.

The relocation needs room for the shrunk filesystem, a copy of it at the
end of the disk, and the new pool, so a filesystem that is more than
``max_percent_full`` full (45% by default) is refused before anything is
written.
"""

from __future__ import annotations

from zfs_migrate.domain.models import CommandResult, FilesystemReport
from zfs_migrate.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, InsufficientSpaceError, MigrationError

log = LoggerFactory.for_disk()

MIN_SIZE_PREFIX = "Estimated minimum size of the filesystem"
BLOCK_COUNT_KEY = "Block count"
BLOCK_SIZE_KEY = "Block size"

# e2fsck exit codes that still leave a usable filesystem:
# 0 no errors, 1 errors corrected, 2 errors corrected and reboot advised.
FSCK_ACCEPTABLE = {0, 1, 2}


def parse_key_values(output: str) -> dict[str, str]:
    """``Key:   value`` lines into a dict; keys and values are stripped."""
    values = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            values.setdefault(key.strip(), value.strip())
    return values


def _parse_int(values: dict[str, str], key: str, source: str) -> int:
    raw = values.get(key)
    if raw is None:
        raise MigrationError(f"'{key}' missing from {source} output")
    try:
        return int(raw.split()[0])
    except (IndexError, ValueError) as error:
        raise MigrationError(f"Cannot parse '{key}: {raw}' from {source} output") from error


def parse_min_blocks(output: str) -> int:
    """Minimum block count from ``resize2fs -P`` output."""
    for line in output.splitlines():
        if line.strip().startswith(MIN_SIZE_PREFIX):
            return _parse_int(parse_key_values(line), MIN_SIZE_PREFIX, "resize2fs -P")
    raise MigrationError("resize2fs -P did not report a minimum size")


def parse_superblock(output: str) -> tuple[int, int]:
    """(block count, block size) from ``dumpe2fs -h`` output."""
    values = parse_key_values(output)
    block_count = _parse_int(values, BLOCK_COUNT_KEY, "dumpe2fs -h")
    block_size = _parse_int(values, BLOCK_SIZE_KEY, "dumpe2fs -h")
    if block_count <= 0 or block_size <= 0:
        raise MigrationError(
            f"Implausible filesystem geometry: {block_count} blocks of {block_size} bytes"
        )
    return block_count, block_size


def check_capacity(report: FilesystemReport, device: str, limit: int = 45) -> None:
    """Abort the migration when the filesystem is more than ``limit`` percent full.

    Raises:
        InsufficientSpaceError: If percent_full > limit
    """
    full = report.percent_full
    log.info(f"Filesystem is {full}% full.")
    log.debug(f"{device} shrinks to about {report.min_mib} MiB")
    if full > limit:
        raise InsufficientSpaceError(device, full, limit)


def check_filesystem(device: str, repair: bool = True) -> CommandResult:
    """Run a forced e2fsck; the caller judges the exit code."""
    mode = "-y" if repair else "-n"
    return run_command(["e2fsck", "-f", mode, device], check=False)


def require_clean_filesystem(device: str) -> None:
    """Forced e2fsck that must end with a usable filesystem.

    Raises:
        CommandError: On an exit code outside FSCK_ACCEPTABLE
    """
    result = check_filesystem(device)
    if result.returncode not in FSCK_ACCEPTABLE:
        raise CommandError(result.args, result.returncode, result.stdout, result.stderr)


def read_min_blocks(device: str) -> int:
    result = run_command(["resize2fs", "-P", device])
    # resize2fs prints its banner on stderr and the estimate on stdout.
    return parse_min_blocks(result.stdout + "\n" + result.stderr)


def read_superblock(device: str) -> tuple[int, int]:
    result = run_command(["dumpe2fs", "-h", device])
    return parse_superblock(result.stdout)


def inspect_filesystem(device: str) -> FilesystemReport:
    """Check an unmounted ext filesystem, then measure it."""
    require_clean_filesystem(device)
    return measure_filesystem(device)


def measure_filesystem(device: str) -> FilesystemReport:
    """Live capacity figures for an ext filesystem that was just checked."""
    min_blocks = read_min_blocks(device)
    total_blocks, block_size = read_superblock(device)
    report = FilesystemReport(
        min_blocks=min_blocks, total_blocks=total_blocks, block_size=block_size
    )
    log.debug(
        f"{device}: {min_blocks} minimum of {total_blocks} blocks of {block_size} bytes"
    )
    return report


def shrink_filesystem(device: str) -> CommandResult:
    """Shrink the filesystem to its minimum size in place."""
    return run_command(["resize2fs", "-M", device])
