"""Tests for zfs/pool.py and zfs/commands.py."""

import pytest

from zfs_migrate.domain.models import PartitionPlan, RelocationResult
from zfs_migrate.storage.exceptions import MigrationError
from zfs_migrate.zfs import commands, pool

VDEV = "/dev/disk/by-id/ata-TEST_DISK_123-part2"


@pytest.fixture
def relocation():
    return RelocationResult(
        plan=PartitionPlan(
            original_partition=2,
            temporary_partition=3,
            front_mib=129,
            tail_mib=257,
            pool_partition=2,
        ),
        source_device="/dev/sda3",
    )


class TestPoolVdev:
    def test_uses_stable_id(self, context):
        assert pool.pool_vdev(context) == VDEV

    def test_requires_stable_id(self, context):
        context.disk_id = None

        with pytest.raises(MigrationError):
            pool.pool_vdev(context)


class TestCreatePool:
    def test_pool_partition_fills_free_space(self, fake_run, instant_settle, context):
        vdev = pool.create_pool_partition(context)

        assert vdev == VDEV
        assert fake_run.calls == [
            ["sgdisk", "--new=2:0:0", "--typecode=2:BF01", "/dev/sda"],
            ["partprobe", "/dev/sda"],
        ]
        instant_settle["zfs.pool"].assert_called_once_with([VDEV], timeout=30.0)

    def test_create_pool_properties(self, fake_run, context):
        pool.create_pool(context)

        assert fake_run.calls == [
            [
                "zpool", "create", "-f",
                "-o", "ashift=12",
                "-O", "atime=off",
                "-O", "canmount=off",
                "-O", "compression=lz4",
                "-O", "normalization=formD",
                "-O", "xattr=sa",
                "-O", "mountpoint=/",
                "-R", str(context.target),
                "rpool", VDEV,
            ]
        ]


class TestExpand:
    def test_grow_partition(self, fake_run, instant_settle, context, relocation, mocker):
        unmount = mocker.patch("zfs_migrate.zfs.pool.unmount_if_mounted")

        pool.grow_pool_partition(context, relocation)

        unmount.assert_called_once_with(context.source)
        assert fake_run.calls == [
            ["sgdisk", "--delete=3", "/dev/sda"],
            ["sgdisk", "--delete=2", "/dev/sda"],
            ["sgdisk", "--new=2:0:0", "--typecode=2:BF01", "/dev/sda"],
            ["partprobe", "/dev/sda"],
        ]

    def test_autoexpand_is_one_shot(self, fake_run, context):
        pool.expand_pool(context)

        assert fake_run.calls == [
            ["zpool", "set", "autoexpand=on", "rpool"],
            ["zpool", "online", "-e", "rpool", VDEV],
            ["zpool", "set", "autoexpand=off", "rpool"],
            ["zfs", "list"],
        ]


class TestCommands:
    def test_volume(self, fake_run):
        commands.zfs_create_volume("rpool/swap", 4096, 4096, {"sync": "always"})

        assert fake_run.calls == [
            ["zfs", "create", "-V", "4096M", "-b", "4096", "-o", "sync=always", "rpool/swap"]
        ]

    def test_recursive_snapshot(self, fake_run):
        commands.zfs_snapshot("rpool/ROOT", "initial")

        assert fake_run.calls == [["zfs", "snapshot", "-r", "rpool/ROOT@initial"]]

    def test_export(self, fake_run):
        commands.zpool_export("rpool")

        assert fake_run.calls == [["zpool", "export", "rpool"]]
