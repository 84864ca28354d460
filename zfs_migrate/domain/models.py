"""Domain model for the ext4 to ZFS root migration.

Plain frozen dataclasses that carry validated configuration and values
derived from live tool output between the migration steps.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional


SOURCE_MOUNT = Path("/source")
TARGET_MOUNT = Path("/target")

# Optional datasets selectable in the configuration.
FEATURES = (
    "local",
    "opt",
    "srv",
    "games",
    "mysql",
    "postgres",
    "mongodb",
    "libvirt",
    "nfs",
    "mail",
    "user-cache",
    "user-downloads",
    "user-scratch",
)


# ==============================================================================
# Command Results
# ==============================================================================


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


# ==============================================================================
# Configuration
# ==============================================================================


class BootType(Enum):
    """Firmware boot mode of the machine being migrated."""

    UEFI = "UEFI"
    BIOS = "BIOS"


class SwapMode(Enum):
    AUTO = "auto"
    FIXED = "fixed"
    DISABLED = "disabled"


_SWAP_SIZE_RE = re.compile(r"^(\d+)([MG])$")
_SWAP_DISABLED = {"off", "none", "no", "disabled", "false", "0"}


@dataclass(frozen=True)
class SwapPolicy:
    """How big the swap zvol should be, if any."""

    mode: SwapMode
    size_mib: Optional[int] = None

    @classmethod
    def parse(cls, value: str) -> SwapPolicy:
        """Parse ``auto``, ``<n>M``, ``<n>G`` or ``off``.

        Raises:
            ValueError: If the value is not one of the accepted forms
        """
        text = str(value).strip()
        if text.lower() == "auto":
            return cls(SwapMode.AUTO)
        if text.lower() in _SWAP_DISABLED:
            return cls(SwapMode.DISABLED)
        match = _SWAP_SIZE_RE.match(text.upper())
        if not match:
            raise ValueError(
                f"Invalid swap size {value!r}: expected auto, off, or a size like 512M or 4G"
            )
        amount = int(match.group(1))
        if amount <= 0:
            raise ValueError(f"Swap size must be positive: {value!r}")
        size_mib = amount * 1024 if match.group(2) == "G" else amount
        return cls(SwapMode.FIXED, size_mib)

    @property
    def enabled(self) -> bool:
        return self.mode is not SwapMode.DISABLED


@dataclass(frozen=True)
class DiskTarget:
    """The disk being migrated and the partitions that matter on it."""

    disk: str  # e.g., "sda", "nvme0n1"
    root_partition: int
    efi_partition: Optional[int] = None
    pool_name: str = "rpool"

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/sda)."""
        return f"/dev/{self.disk}"


@dataclass(frozen=True)
class MigrationConfig:
    """Validated configuration for one run, immutable once built."""

    target: DiskTarget
    boot_type: BootType = BootType.UEFI
    filesystems: frozenset[str] = frozenset({"local", "opt"})
    swap: SwapPolicy = SwapPolicy(SwapMode.AUTO)
    root_dataset: str = "ubuntu"
    front_margin_mib: int = 128
    tail_margin_mib: int = 256
    max_percent_full: int = 45
    copy_block_size: str = "64K"
    snapshot_name: str = "initial"
    settle_timeout: float = 30.0
    swap_file: str = "swapfile"
    install_host_packages: bool = True
    host_packages: tuple[str, ...] = ("gdisk", "parted", "dosfstools", "zfs-initramfs")
    target_packages: tuple[str, ...] = ("zfs-initramfs",)
    bootloader_id: str = "ubuntu"

    def has_feature(self, name: str) -> bool:
        return name in self.filesystems

    @property
    def pool(self) -> str:
        return self.target.pool_name

    @property
    def uses_efi(self) -> bool:
        return self.boot_type is BootType.UEFI


@dataclass
class MigrationContext:
    """State shared by the steps of one run.

    Everything is fixed at construction except ``swap_mib``, which is
    filled in when the swap policy is resolved.
    """

    config: MigrationConfig
    source: Path = SOURCE_MOUNT
    target: Path = TARGET_MOUNT
    disk_id: Optional[str] = None
    swap_mib: Optional[int] = None


# ==============================================================================
# Disk Geometry
# ==============================================================================


@dataclass(frozen=True)
class FilesystemReport:
    """Block counts of an ext filesystem as reported by e2fsprogs."""

    min_blocks: int
    total_blocks: int
    block_size: int

    @property
    def percent_full(self) -> int:
        return self.min_blocks * 100 // self.total_blocks

    @property
    def min_bytes(self) -> int:
        return self.min_blocks * self.block_size

    @property
    def min_mib(self) -> int:
        return self.min_bytes // 1024 // 1024


@dataclass(frozen=True)
class PartitionPlan:
    """Partition geometry for the relocation, derived from live tool output."""

    original_partition: int
    temporary_partition: int
    front_mib: int  # size of the recreated (shrunk) front partition
    tail_mib: int  # size of the copy at the end of the disk
    pool_partition: int


@dataclass(frozen=True)
class RelocationResult:
    """Where the source filesystem lives once the relocation is done."""

    plan: PartitionPlan
    source_device: str


# ==============================================================================
# Dataset Tree
# ==============================================================================


@dataclass(frozen=True)
class DatasetSpec:
    """One ZFS dataset to create below the pool.

    ``path`` is relative to the pool (e.g. ``var/log``). ``feature`` names
    the configuration flag that enables the dataset; ``None`` means always
    created. ``reference`` is a source directory whose mode and ownership
    are copied onto the new mount point; ``owner_reference`` is used for
    ownership (with mode 0755) when ``reference`` does not exist.
    """

    path: str
    properties: Mapping[str, str] = field(default_factory=dict)
    mountpoint: Optional[str] = None
    legacy: bool = False
    snapshot: bool = False
    feature: Optional[str] = None
    reference: Optional[Path] = None
    owner_reference: Optional[Path] = None

    def full_name(self, pool: str) -> str:
        return f"{pool}/{self.path}"

    def create_properties(self) -> dict[str, str]:
        """Properties passed to ``zfs create``, mount strategy included."""
        props = dict(self.properties)
        if self.legacy:
            props["mountpoint"] = "legacy"
        elif self.mountpoint is not None:
            props["mountpoint"] = self.mountpoint
        return props

    def mount_path(self) -> str:
        """Where the dataset appears inside the new root."""
        if self.mountpoint is not None:
            return self.mountpoint
        return "/" + self.path
