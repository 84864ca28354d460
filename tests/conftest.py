"""
Pytest configuration and shared fixtures for zfs-migrate tests.

External tools are never run. ``fake_run`` replaces subprocess.run with a
FakeRunner that answers by argv prefix and records every call, so tests can
assert on the exact commands and their order.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import pytest
from loguru import logger

from zfs_migrate import logging as logging_module
from zfs_migrate.config.settings import DEFAULT_SETTINGS, build_config
from zfs_migrate.domain.models import CommandResult, MigrationContext
from zfs_migrate.storage.exceptions import CommandError


# ==============================================================================
# Fake process runner
# ==============================================================================


@dataclass
class FakeResponse:
    prefix: tuple
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    once: bool = False


class FakeRunner:
    """Stand-in for subprocess.run that dispatches on the argument vector."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.responses: List[FakeResponse] = []

    def on(self, *prefix, stdout="", stderr="", returncode=0, once=False):
        """Answer commands starting with ``prefix``.

        ``once`` responses are used a single time, in registration order,
        before any permanent response for the same prefix.
        """
        self.responses.append(
            FakeResponse(tuple(prefix), stdout, stderr, returncode, once)
        )
        return self

    def _respond(self, argv: Sequence[str]) -> FakeResponse:
        matches = [
            response
            for response in self.responses
            if tuple(argv[: len(response.prefix)]) == response.prefix
        ]
        for response in matches:
            if response.once:
                self.responses.remove(response)
                return response
        if matches:
            # Longest prefix wins; among equals, the latest registration.
            return max(reversed(matches), key=lambda response: len(response.prefix))
        return FakeResponse(())

    def __call__(self, argv, input=None, text=True, capture_output=True, cwd=None, env=None):
        argv = list(argv)
        self.calls.append(argv)
        response = self._respond(argv)
        return subprocess.CompletedProcess(
            argv, response.returncode, response.stdout, response.stderr
        )

    def target_runner(self):
        """A run_in_target replacement that records ``["<target>", *args]``."""

        def run(args, *, check=True, capture=True):
            argv = ["<target>", *args]
            self.calls.append(argv)
            response = self._respond(argv)
            result = CommandResult(
                tuple(argv), response.returncode, response.stdout, response.stderr
            )
            if check and not result.ok:
                raise CommandError(argv, result.returncode, result.stdout, result.stderr)
            return result

        return run

    # -- queries ---------------------------------------------------------------

    def commands(self, *prefix) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def index(self, *prefix) -> int:
        """Position of the first call starting with ``prefix``."""
        for position, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return position
        raise AssertionError(f"No call starting with {prefix!r} in {self.calls!r}")

    def last_index(self, *prefix) -> int:
        positions = [
            position
            for position, call in enumerate(self.calls)
            if tuple(call[: len(prefix)]) == prefix
        ]
        if not positions:
            raise AssertionError(f"No call starting with {prefix!r} in {self.calls!r}")
        return positions[-1]

    def called(self, *prefix) -> bool:
        return bool(self.commands(*prefix))


@pytest.fixture
def fake_run(mocker) -> FakeRunner:
    """
    Fixture replacing subprocess.run for every external command.

    Returns:
        The FakeRunner; register answers with ``fake_run.on(...)``.
    """
    runner = FakeRunner()
    mocker.patch("zfs_migrate.storage.commands.subprocess.run", side_effect=runner)
    return runner


@pytest.fixture
def instant_settle(mocker):
    """Skip waiting for device nodes after partition table changes."""
    return {
        module: mocker.patch(f"zfs_migrate.{module}.await_settle")
        for module in ("storage.relocate", "zfs.pool", "zfs.swap")
    }


# ==============================================================================
# Configuration fixtures
# ==============================================================================


def make_config(**overrides):
    values = dict(DEFAULT_SETTINGS)
    values.update(overrides)
    return build_config(values)


@pytest.fixture
def config():
    """UEFI configuration for /dev/sda, root on partition 2."""
    return make_config()


@pytest.fixture
def bios_config():
    return make_config(boot_type="BIOS", efi_partition=None)


@pytest.fixture
def context(tmp_path, config) -> MigrationContext:
    """
    Fixture providing a context whose source and target live under tmp_path.

    The target already has an /etc directory, as a cloned system would.
    """
    source = tmp_path / "source"
    target = tmp_path / "target"
    (source / "home").mkdir(parents=True)
    (target / "etc").mkdir(parents=True)
    return MigrationContext(
        config=config, source=source, target=target, disk_id="ata-TEST_DISK_123"
    )


@pytest.fixture
def sgdisk_print_output():
    """``sgdisk --print`` output for a disk with partitions 1 and 2."""
    return sgdisk_table([1, 2])


def sgdisk_table(numbers: Sequence[int], disk: str = "/dev/sda") -> str:
    rows = "\n".join(
        f"   {number}         {2048 * number}        {2048 * number + 2047}   1024.0 KiB  8300  "
        for number in numbers
    )
    return (
        f"Disk {disk}: 41943040 sectors, 20.0 GiB\n"
        "Model: VBOX HARDDISK\n"
        "Sector size (logical/physical): 512/512 bytes\n"
        "Disk identifier (GUID): 6A1B2C3D-0000-4000-8000-123456789ABC\n"
        "Partition table holds up to 128 entries\n"
        "Main partition table begins at sector 2 and ends at sector 33\n"
        "First usable sector is 34, last usable sector is 41943006\n"
        "Partitions will be aligned on 2048-sector boundaries\n"
        "Total free space is 2014 sectors (1007.0 KiB)\n"
        "\n"
        "Number  Start (sector)    End (sector)  Size       Code  Name\n"
        f"{rows}\n"
    )


def dumpe2fs_output(block_count: int, block_size: int = 4096) -> str:
    return (
        "Filesystem volume name:   <none>\n"
        "Last mounted on:          /\n"
        "Filesystem UUID:          0b7f0e5e-3c52-4a61-9f3e-2c4b8d2f8a11\n"
        f"Block count:              {block_count}\n"
        "Reserved block count:     50\n"
        "Free blocks:              600\n"
        f"Block size:               {block_size}\n"
    )


def resize2fs_estimate(min_blocks: int) -> str:
    return f"Estimated minimum size of the filesystem: {min_blocks}\n"


# ==============================================================================
# Logging
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_logging(monkeypatch):
    """Drop sinks added by a test and forget its run log path."""
    monkeypatch.setattr(logging_module, "_run_log_path", None)
    yield
    logger.remove()


@pytest.fixture
def captured_logs() -> List[str]:
    """Fixture collecting formatted log messages in memory."""
    messages: List[str] = []
    logger.remove()
    logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    return messages


def write_file(path: Path, text: str, mode: Optional[int] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if mode is not None:
        path.chmod(mode)
    return path


def sgdisk_info(first_sector: int, last_sector: int = 41940991) -> str:
    """``sgdisk --info=N`` output for a Linux filesystem partition."""
    return (
        "Partition GUID code: 0FC63DAF-8483-4772-8E79-3D69D8477DE4 (Linux filesystem)\n"
        "Partition unique GUID: 3E1B2A44-5F0C-4D7B-9A61-0C2E8F7B1D21\n"
        f"First sector: {first_sector} (at 513.0 MiB)\n"
        f"Last sector: {last_sector} (at 20.0 GiB)\n"
        "Partition size: 40890368 sectors (19.5 GiB)\n"
        "Attribute flags: 0000000000000000\n"
        "Partition name: ''\n"
    )
