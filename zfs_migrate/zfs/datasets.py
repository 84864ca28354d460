"""Declarative ZFS dataset tree for the new root.

The tree is assembled in full before anything is created: the fixed
layout, the datasets enabled by feature flags, and one dataset per home
directory found on the source filesystem. build_datasets() then creates
it in order, mounts the boot environment, copies home directory
ownership from the source, and finally mounts the legacy datasets.

``var/log`` and ``var/tmp`` use ``mountpoint=legacy`` and are mounted
with mount(8) after the whole tree exists; letting ZFS mount them itself
races with the pool's own mount-everything at boot.
"""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Iterable

from zfs_migrate.domain.models import DatasetSpec, MigrationConfig, MigrationContext
from zfs_migrate.logging import LoggerFactory
from zfs_migrate.storage.mount import mount

from .commands import zfs_create, zfs_mount

log = LoggerFactory.for_pool()

NO_SNAPSHOT = {"com.sun:auto-snapshot": "false"}

FEATURE_DATASETS = {
    "local": DatasetSpec("local", mountpoint="/usr/local", snapshot=True, feature="local"),
    "opt": DatasetSpec("opt", snapshot=True, feature="opt"),
    "srv": DatasetSpec("srv", {"exec": "off"}, snapshot=True, feature="srv"),
    "games": DatasetSpec("var/games", {"exec": "on"}, feature="games"),
    "libvirt": DatasetSpec("var/libvirt", mountpoint="/var/lib/libvirt", feature="libvirt"),
    "mongodb": DatasetSpec("var/mongodb", mountpoint="/var/lib/mongodb", feature="mongodb"),
    "mysql": DatasetSpec("var/mysql", mountpoint="/var/lib/mysql", feature="mysql"),
    "postgres": DatasetSpec(
        "var/postgres", mountpoint="/var/lib/postgres", feature="postgres"
    ),
    "nfs": DatasetSpec("var/nfs", NO_SNAPSHOT, mountpoint="/var/lib/nfs", feature="nfs"),
    "mail": DatasetSpec("var/mail", feature="mail"),
}

# Per-user datasets: feature flag -> directory below the user's home.
USER_DATASETS = {
    "user-cache": ".cache",
    "user-downloads": "Downloads",
    "user-scratch": "Scratch",
}

IGNORED_HOME_ENTRIES = {"lost+found"}


def base_tree(config: MigrationConfig) -> list[DatasetSpec]:
    """Datasets every migrated system gets, parents before children."""
    return [
        DatasetSpec("ROOT", {"canmount": "off", "mountpoint": "none"}, snapshot=True),
        DatasetSpec(
            f"ROOT/{config.root_dataset}", {"canmount": "noauto"}, mountpoint="/"
        ),
        DatasetSpec("home", {"setuid": "off"}),
        DatasetSpec("home/root", mountpoint="/root"),
        DatasetSpec("var", {"canmount": "off", "setuid": "off", "exec": "off"}),
        DatasetSpec("var/cache", NO_SNAPSHOT),
        DatasetSpec("var/log", {"acltype": "posixacl", "xattr": "sa"}, legacy=True),
        DatasetSpec("var/spool"),
        DatasetSpec("var/tmp", {**NO_SNAPSHOT, "exec": "on"}, legacy=True),
    ]


def feature_tree(config: MigrationConfig) -> list[DatasetSpec]:
    return [spec for name, spec in FEATURE_DATASETS.items() if config.has_feature(name)]


def discover_home_directories(source: Path) -> list[str]:
    """Names of the real directories directly below <source>/home."""
    home = source / "home"
    if not home.is_dir():
        return []
    return sorted(
        entry.name
        for entry in home.iterdir()
        if entry.is_dir() and not entry.is_symlink() and entry.name not in IGNORED_HOME_ENTRIES
    )


def user_tree(config: MigrationConfig, source: Path, users: Iterable[str]) -> list[DatasetSpec]:
    specs = []
    for user in users:
        home = source / "home" / user
        specs.append(DatasetSpec(f"home/{user}", reference=home))
        for feature, directory in USER_DATASETS.items():
            if config.has_feature(feature):
                specs.append(
                    DatasetSpec(
                        f"home/{user}/{directory}",
                        NO_SNAPSHOT,
                        feature=feature,
                        reference=home / directory,
                        owner_reference=home,
                    )
                )
    return specs


def dataset_tree(config: MigrationConfig, source: Path) -> list[DatasetSpec]:
    """The complete, ordered list of datasets to create."""
    tree = base_tree(config) + feature_tree(config)
    taken = {spec.path for spec in tree}
    users = [
        user for user in discover_home_directories(source) if f"home/{user}" not in taken
    ]
    return tree + user_tree(config, source, users)


def copy_reference_permissions(spec: DatasetSpec, target: Path) -> None:
    """Give the new mount point the mode and owner of its source directory.

    When the source directory does not exist, the mount point gets mode
    0755 and the owner of ``owner_reference``.
    """
    destination = target / spec.mount_path().lstrip("/")
    if spec.reference is not None and spec.reference.is_dir():
        info = spec.reference.stat()
        mode = stat.S_IMODE(info.st_mode)
    elif spec.owner_reference is not None:
        info = spec.owner_reference.stat()
        mode = 0o755
    else:
        return
    os.chown(destination, info.st_uid, info.st_gid)
    os.chmod(destination, mode)


def create_dataset(spec: DatasetSpec, pool: str) -> None:
    name = spec.full_name(pool)
    log.info(f"Creating {name} ({spec.mount_path()})...")
    zfs_create(name, spec.create_properties())
    # canmount=noauto datasets are mounted once here, never at boot.
    if spec.properties.get("canmount") == "noauto":
        zfs_mount(name)


def mount_legacy_datasets(specs: Iterable[DatasetSpec], pool: str, target: Path) -> None:
    for spec in specs:
        if spec.legacy:
            mount(spec.full_name(pool), target / spec.mount_path().lstrip("/"), fstype="zfs")


def build_datasets(context: MigrationContext) -> list[DatasetSpec]:
    """Create the whole dataset tree below the pool.

    Any failure aborts; datasets created so far are left in place.

    Returns:
        The specs that were created, in creation order
    """
    config = context.config
    tree = dataset_tree(config, context.source)
    for spec in tree:
        create_dataset(spec, config.pool)
        if spec.reference is not None or spec.owner_reference is not None:
            copy_reference_permissions(spec, context.target)
    mount_legacy_datasets(tree, config.pool, context.target)
    return tree


def snapshot_roots(tree: Iterable[DatasetSpec], pool: str) -> list[str]:
    """Full names of the datasets that get a recursive recovery snapshot."""
    return [spec.full_name(pool) for spec in tree if spec.snapshot]
