"""Domain models for the ext4 to ZFS root migration."""

from __future__ import annotations

from .models import (
    FEATURES,
    SOURCE_MOUNT,
    TARGET_MOUNT,
    BootType,
    CommandResult,
    DatasetSpec,
    DiskTarget,
    FilesystemReport,
    MigrationConfig,
    MigrationContext,
    PartitionPlan,
    RelocationResult,
    SwapMode,
    SwapPolicy,
)


__all__ = [
    "FEATURES",
    "SOURCE_MOUNT",
    "TARGET_MOUNT",
    "BootType",
    "CommandResult",
    "DatasetSpec",
    "DiskTarget",
    "FilesystemReport",
    "MigrationConfig",
    "MigrationContext",
    "PartitionPlan",
    "RelocationResult",
    "SwapMode",
    "SwapPolicy",
]
