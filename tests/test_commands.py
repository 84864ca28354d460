"""Tests for storage/commands.py - the external command runner."""

import pytest

from zfs_migrate.storage import commands
from zfs_migrate.storage.exceptions import CommandError, MissingToolError


class TestRunCommand:
    def test_returns_structured_result(self, fake_run):
        fake_run.on("zfs", "list", stdout="NAME USED\nrpool 1G\n")

        result = commands.run_command(["zfs", "list"])

        assert result.ok
        assert result.args == ("zfs", "list")
        assert result.stdout.startswith("NAME")
        assert fake_run.calls == [["zfs", "list"]]

    def test_arguments_are_passed_as_list(self, mocker, fake_run):
        run = commands.subprocess.run

        commands.run_command(["mount", "--bind", "/a b", "/c"])

        args, kwargs = run.call_args
        assert args[0] == ["mount", "--bind", "/a b", "/c"]
        assert kwargs["text"] is True
        assert kwargs["capture_output"] is True
        assert "shell" not in kwargs

    def test_non_zero_exit_raises_with_stderr(self, fake_run):
        fake_run.on("zpool", "create", returncode=1, stderr="invalid vdev specification\n")

        with pytest.raises(CommandError) as excinfo:
            commands.run_command(["zpool", "create", "rpool", "/dev/sda2"])

        error = excinfo.value
        assert error.returncode == 1
        assert error.command == ["zpool", "create", "rpool", "/dev/sda2"]
        assert "invalid vdev specification" in str(error)

    def test_non_zero_exit_tolerated_without_check(self, fake_run):
        fake_run.on("e2fsck", returncode=1)

        result = commands.run_command(["e2fsck", "-f", "-y", "/dev/sda3"], check=False)

        assert result.returncode == 1
        assert not result.ok

    def test_missing_executable_raises_command_error(self, mocker):
        mocker.patch(
            "zfs_migrate.storage.commands.subprocess.run",
            side_effect=FileNotFoundError("No such file or directory: 'sgdisk'"),
        )

        with pytest.raises(CommandError) as excinfo:
            commands.run_command(["sgdisk", "--print", "/dev/sda"])

        assert excinfo.value.returncode == 127

    def test_output_with_braces_is_logged(self, fake_run, captured_logs):
        fake_run.on("zfs", stderr="cannot open '{rpool}': dataset does not exist")

        commands.run_command(["zfs", "get", "all"], check=False)

        assert any("{rpool}" in message for message in captured_logs)
        assert any("Running command: zfs get all" in message for message in captured_logs)

    def test_input_text_is_forwarded(self, fake_run):
        commands.run_command(["chpasswd"], input_text="root:secret\n")

        _, kwargs = commands.subprocess.run.call_args
        assert kwargs["input"] == "root:secret\n"


class TestRequireTools:
    def test_all_present(self, mocker):
        mocker.patch("zfs_migrate.storage.commands.shutil.which", return_value="/usr/bin/x")

        commands.require_tools(["zfs", "zpool"])

    def test_lists_every_missing_tool(self, mocker):
        mocker.patch(
            "zfs_migrate.storage.commands.shutil.which",
            side_effect=lambda tool: None if tool in {"sgdisk", "rsync"} else "/usr/bin/" + tool,
        )

        with pytest.raises(MissingToolError) as excinfo:
            commands.require_tools(["zfs", "sgdisk", "rsync"])

        assert excinfo.value.tools == ["sgdisk", "rsync"]
