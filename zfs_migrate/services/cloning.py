"""Copy the mounted source installation into the new dataset tree."""

from __future__ import annotations

from pathlib import Path

from zfs_migrate.domain.models import CommandResult, MigrationContext
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.commands import run_command

log = LoggerFactory.for_migration()

# Archive mode plus ACLs, extended attributes and hard links.
RSYNC_OPTIONS = ("--archive", "--acls", "--xattrs", "--hard-links", "--numeric-ids")
CLONE_PASSES = 2


def rsync(source: Path, target: Path) -> CommandResult:
    # Trailing "/." copies the directory contents, not the directory itself.
    return run_command(["rsync", *RSYNC_OPTIONS, f"{source}/.", f"{target}/."])


def remove_swap_file(context: MigrationContext) -> bool:
    """Delete the swap file carried over from the source, if there is one."""
    swap_file = context.target / context.config.swap_file
    if not swap_file.exists():
        return False
    log.info(f"Removing {swap_file}")
    swap_file.unlink()
    return True


def clone_installation(context: MigrationContext) -> None:
    """rsync the source root onto the target root, twice.

    The second pass picks up anything the first one missed (sparse files,
    hard links that crossed pass boundaries).
    """
    log.info("Cloning existing installation...")
    for attempt in range(1, CLONE_PASSES + 1):
        log.info(f"rsync pass {attempt}/{CLONE_PASSES}")
        rsync(context.source, context.target)
    remove_swap_file(context)
