"""Swap sizing and the swap zvol."""

from __future__ import annotations

import os
from typing import Optional

from zfs_migrate.domain.models import MigrationContext, SwapMode
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.commands import run_command
from zfs_migrate.storage.devices import await_settle, get_ram_mib

from .commands import zfs_create_volume

log = LoggerFactory.for_pool()

SMALL_MEMORY_MIB = 2048
MEDIUM_MEMORY_MIB = 8192
LARGE_MEMORY_MIB = 16384
CAPPED_SWAP_MIB = 8192

SWAP_VOLUME_PROPERTIES = {
    "compression": "zle",
    "logbias": "throughput",
    "sync": "always",
    "primarycache": "metadata",
    "secondarycache": "none",
    "com.sun:auto-snapshot": "false",
}


def recommended_swap_mib(mem_mib: int) -> int:
    """Swap size for ``mem_mib`` of RAM.

    Twice RAM up to 2 GiB, equal to RAM up to 8 GiB, 8 GiB up to 16 GiB,
    and half of RAM beyond that.
    """
    if mem_mib <= SMALL_MEMORY_MIB:
        return 2 * mem_mib
    if mem_mib <= MEDIUM_MEMORY_MIB:
        return mem_mib
    if mem_mib <= LARGE_MEMORY_MIB:
        return CAPPED_SWAP_MIB
    return mem_mib // 2


def resolve_swap(context: MigrationContext) -> Optional[int]:
    """Turn the swap policy into a size in MiB and store it on the context."""
    policy = context.config.swap
    if policy.mode is SwapMode.DISABLED:
        context.swap_mib = None
    elif policy.mode is SwapMode.AUTO:
        context.swap_mib = recommended_swap_mib(get_ram_mib())
    else:
        context.swap_mib = policy.size_mib
    return context.swap_mib


def swap_volume_name(pool: str) -> str:
    return f"{pool}/swap"


def swap_device(pool: str) -> str:
    return f"/dev/zvol/{swap_volume_name(pool)}"


def fstab_swap_line(pool: str) -> str:
    return f"{swap_device(pool)}  none  swap  defaults  0  0\n"


def create_swap(context: MigrationContext) -> Optional[str]:
    """Create and format the swap zvol and register it in the target fstab.

    Returns:
        The swap device path, or None when swap is disabled
    """
    size_mib = resolve_swap(context)
    if size_mib is None:
        log.info("Swap disabled, skipping swap volume")
        return None
    config = context.config
    log.info(f"Creating {size_mib}M VDEV for swap...")
    zfs_create_volume(
        swap_volume_name(config.pool),
        size_mib,
        os.sysconf("SC_PAGE_SIZE"),
        SWAP_VOLUME_PROPERTIES,
    )
    device = swap_device(config.pool)
    await_settle([device], timeout=config.settle_timeout)
    run_command(["mkswap", "-f", device])
    with open(context.target / "etc" / "fstab", "a", encoding="utf-8") as fstab:
        fstab.write(fstab_swap_line(config.pool))
    return device
