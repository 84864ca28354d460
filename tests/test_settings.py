"""Tests for config/settings.py - settings file loading and validation."""

import json

import pytest

from zfs_migrate.config import settings
from zfs_migrate.domain.models import BootType, SwapMode
from zfs_migrate.storage.exceptions import ConfigError


def values(**overrides):
    merged = dict(settings.DEFAULT_SETTINGS)
    merged.update(overrides)
    return merged


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert settings.load_settings(tmp_path / "missing.json") == settings.DEFAULT_SETTINGS

    def test_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"disk": "nvme0n1", "swap": "8G"}))

        loaded = settings.load_settings(path)

        assert loaded["disk"] == "nvme0n1"
        assert loaded["swap"] == "8G"
        assert loaded["pool"] == "rpool"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{disk: sda")

        with pytest.raises(ConfigError, match="Cannot read settings file"):
            settings.load_settings(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2]")

        with pytest.raises(ConfigError, match="JSON object"):
            settings.load_settings(path)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"disks": "sda"}))

        with pytest.raises(ConfigError, match="disks"):
            settings.load_settings(path)


class TestBuildConfig:
    def test_defaults(self):
        config = settings.build_config(settings.DEFAULT_SETTINGS)

        assert config.target.disk == "sda"
        assert config.target.root_partition == 2
        assert config.target.efi_partition == 1
        assert config.boot_type is BootType.UEFI
        assert config.pool == "rpool"
        assert config.swap.mode is SwapMode.AUTO
        assert config.filesystems == frozenset({"local", "opt"})
        assert config.front_margin_mib == 128
        assert config.tail_margin_mib == 256
        assert config.max_percent_full == 45
        assert config.target_packages == ("zfs-initramfs", "grub-efi-amd64")

    def test_dev_prefix_is_stripped(self):
        assert settings.build_config(values(disk="/dev/vda")).target.disk == "vda"

    def test_bios_ignores_efi_partition(self):
        config = settings.build_config(values(boot_type="bios"))

        assert config.boot_type is BootType.BIOS
        assert config.target.efi_partition is None
        assert config.target_packages == ("zfs-initramfs", "grub-pc")

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"disk": ""}, "disk"),
            ({"disk": "sda/1"}, "disk"),
            ({"boot_type": "EFI"}, "boot_type"),
            ({"root_partition": 0}, "root_partition"),
            ({"root_partition": "two"}, "root_partition"),
            ({"root_partition": True}, "root_partition"),
            ({"efi_partition": None}, "efi_partition is required"),
            ({"efi_partition": 2}, "must differ"),
            ({"filesystems": ["local", "docker"]}, "docker"),
            ({"swap": "huge"}, "swap"),
            ({"pool": "r pool"}, "pool"),
            ({"max_percent_full": 100}, "below 100"),
            ({"tail_margin_mib": 64}, "tail_margin_mib"),
        ],
    )
    def test_invalid_values(self, overrides, message):
        with pytest.raises(ConfigError, match=message):
            settings.build_config(values(**overrides))


class TestLoadConfig:
    def test_overrides_win_and_none_is_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"pool": "tank", "disk": "sdb"}))

        config = settings.load_config(path, {"pool": "zroot", "disk": None})

        assert config.pool == "zroot"
        assert config.target.disk == "sdb"
