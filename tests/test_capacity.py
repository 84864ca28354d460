"""Tests for storage/capacity.py - e2fsprogs parsing and the fullness check."""

import pytest

from conftest import dumpe2fs_output, resize2fs_estimate
from zfs_migrate.domain.models import FilesystemReport
from zfs_migrate.storage import capacity
from zfs_migrate.storage.exceptions import (
    CommandError,
    InsufficientSpaceError,
    MigrationError,
)


class TestParsing:
    def test_min_blocks_from_resize2fs(self):
        output = "resize2fs 1.46.5 (30-Dec-2021)\n" + resize2fs_estimate(400)

        assert capacity.parse_min_blocks(output) == 400

    def test_min_blocks_tolerates_whitespace(self):
        assert capacity.parse_min_blocks(
            "  Estimated minimum size of the filesystem:    1234567  \n"
        ) == 1234567

    def test_min_blocks_missing(self):
        with pytest.raises(MigrationError):
            capacity.parse_min_blocks("resize2fs 1.46.5 (30-Dec-2021)\n")

    def test_superblock(self):
        assert capacity.parse_superblock(dumpe2fs_output(1000, 4096)) == (1000, 4096)

    def test_superblock_does_not_confuse_reserved_count(self):
        output = "Reserved block count:     50\n" + dumpe2fs_output(2000, 1024)

        assert capacity.parse_superblock(output) == (2000, 1024)

    def test_superblock_missing_field(self):
        with pytest.raises(MigrationError, match="Block size"):
            capacity.parse_superblock("Block count:  1000\n")

    def test_superblock_rejects_zero_blocks(self):
        with pytest.raises(MigrationError):
            capacity.parse_superblock(dumpe2fs_output(0))


class TestCheckCapacity:
    @pytest.mark.parametrize(
        "min_blocks, total_blocks, expected",
        [(450, 1000, 45), (451, 1000, 45), (400, 1000, 40), (900, 1000, 90)],
    )
    def test_percent_full_rounds_down(self, min_blocks, total_blocks, expected):
        report = FilesystemReport(min_blocks, total_blocks, 4096)

        assert report.percent_full == expected

    @pytest.mark.parametrize("min_blocks", [400, 450, 451])
    def test_at_or_below_limit_passes(self, min_blocks, captured_logs):
        capacity.check_capacity(FilesystemReport(min_blocks, 1000, 4096), "/dev/sda2")

        assert any("% full." in message for message in captured_logs)

    def test_above_limit_aborts(self):
        with pytest.raises(InsufficientSpaceError) as excinfo:
            capacity.check_capacity(FilesystemReport(900, 1000, 4096), "/dev/sda2")

        assert excinfo.value.percent_full == 90
        assert excinfo.value.limit == 45

    def test_configurable_limit(self):
        with pytest.raises(InsufficientSpaceError):
            capacity.check_capacity(FilesystemReport(400, 1000, 4096), "/dev/sda2", limit=30)


class TestInspectFilesystem:
    def test_end_to_end_report(self, fake_run):
        fake_run.on("resize2fs", "-P", stdout=resize2fs_estimate(400))
        fake_run.on("dumpe2fs", "-h", stdout=dumpe2fs_output(1000, 4096))

        report = capacity.inspect_filesystem("/dev/sda2")

        assert report == FilesystemReport(400, 1000, 4096)
        assert report.percent_full == 40
        assert fake_run.calls[0] == ["e2fsck", "-f", "-y", "/dev/sda2"]

    def test_corrected_errors_are_accepted(self, fake_run):
        fake_run.on("e2fsck", returncode=1)
        fake_run.on("resize2fs", "-P", stdout=resize2fs_estimate(400))
        fake_run.on("dumpe2fs", "-h", stdout=dumpe2fs_output(1000))

        assert capacity.inspect_filesystem("/dev/sda2").min_blocks == 400

    def test_uncorrected_errors_abort(self, fake_run):
        fake_run.on("e2fsck", returncode=4, stderr="UNEXPECTED INCONSISTENCY")

        with pytest.raises(CommandError):
            capacity.inspect_filesystem("/dev/sda2")

        assert not fake_run.called("resize2fs")

    def test_estimate_printed_on_stderr(self, fake_run):
        fake_run.on("resize2fs", "-P", stderr=resize2fs_estimate(321))

        assert capacity.read_min_blocks("/dev/sda2") == 321
