"""Custom exceptions for the migration.

Exception Hierarchy:
    MigrationError (base)
        ├── PreconditionError
        │   ├── ConfigError
        │   ├── PrivilegeError
        │   ├── DeviceNotFoundError
        │   │   └── SettleTimeoutError
        │   ├── InsufficientSpaceError
        │   └── MissingToolError
        ├── CommandError
        └── VerificationError
            ├── ConsistencyCheckError
            └── BootVerificationError

Precondition failures are raised before anything on disk has changed.
Everything else may leave the disk partially migrated; nothing is rolled
back automatically.

Usage:
    from zfs_migrate.storage.exceptions import InsufficientSpaceError

    if percent_full > limit:
        raise InsufficientSpaceError("/dev/sda2", percent_full, limit)
"""

from __future__ import annotations

from typing import Sequence


class MigrationError(Exception):
    """Base exception for every fatal migration condition."""


class PreconditionError(MigrationError):
    """Migration cannot start; the disk has not been touched."""


class ConfigError(PreconditionError):
    """Configuration value is missing or invalid."""


class PrivilegeError(PreconditionError):
    """Migration must run as root."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(f"Must be root to migrate system to ZFS (euid={euid})")


class DeviceNotFoundError(PreconditionError):
    """Device was not found or is not a block device."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device not found: {device_name}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class SettleTimeoutError(DeviceNotFoundError):
    """Device node did not appear after a partition table change."""

    def __init__(self, device_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(device_name, f"did not appear within {timeout:g}s")


class InsufficientSpaceError(PreconditionError):
    """Source filesystem is too full to be relocated."""

    def __init__(self, device_name: str, percent_full: int, limit: int):
        self.device_name = device_name
        self.percent_full = percent_full
        self.limit = limit
        super().__init__(
            f"Not enough free space on root partition ({device_name}) for "
            f"migration: {percent_full}% full, at most {limit}% allowed. "
            "Delete some files, or expand the root partition, and try again."
        )


class MissingToolError(PreconditionError):
    """A required external command is not installed."""

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__(f"Required commands not found: {', '.join(self.tools)}")


class CommandError(MigrationError):
    """External command exited with a non-zero status."""

    def __init__(
        self,
        args: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = stderr.strip() or stdout.strip() or f"exit code {returncode}"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class VerificationError(MigrationError):
    """A command succeeded but the property it should establish does not hold."""


class ConsistencyCheckError(VerificationError):
    """Filesystem copy did not pass its consistency check."""

    def __init__(self, device_name: str, returncode: int, output: str = ""):
        self.device_name = device_name
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Filesystem check of {device_name} failed with exit code "
            f"{returncode}; the copy is not trustworthy"
        )


class BootVerificationError(VerificationError):
    """GRUB in the target cannot boot from ZFS."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"GRUB does not support ZFS booting: {reason}")
