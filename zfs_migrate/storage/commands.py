"""External command execution.

Every external tool the migration uses goes through run_command(). Commands
are always argument lists, never shell strings. Each invocation is written
to the run log with its literal argv, exit code, stdout and stderr, whether
it succeeded or not.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
from typing import Iterable, Mapping, Optional, Sequence

from zfs_migrate.domain.models import CommandResult
from zfs_migrate.logging import LoggerFactory

from .exceptions import CommandError, MissingToolError

log = LoggerFactory.for_command()


def _log_output(result: CommandResult) -> None:
    output_log = log.bind(tags=["command", "output"])
    if result.stdout.strip():
        output_log.debug("stdout:\n" + result.stdout.rstrip())
    if result.stderr.strip():
        output_log.debug("stderr:\n" + result.stderr.rstrip())
    log.debug(f"Command completed with return code {result.returncode}")


def run_command(
    args: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
) -> CommandResult:
    """Run a command and return its result.

    Args:
        args: Command and arguments
        check: Raise CommandError on a non-zero exit status. Callers that
            expect particular non-zero codes pass check=False and inspect
            the result themselves.
        capture: Capture stdout/stderr (otherwise they go to the terminal)
        cwd: Working directory
        env: Full environment for the child process
        input_text: Text written to the command's stdin

    Raises:
        CommandError: If the command cannot be started, or exits non-zero
            while check is True
    """
    argv = [str(arg) for arg in args]
    log.debug(f"Running command: {shlex.join(argv)}")
    try:
        completed = subprocess.run(
            argv,
            input=input_text,
            text=True,
            capture_output=capture,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except OSError as error:
        log.error(f"Could not start {argv[0]}: {error}")
        raise CommandError(argv, 127, stderr=str(error)) from error

    result = CommandResult(
        args=tuple(argv),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    _log_output(result)
    if check and not result.ok:
        raise CommandError(argv, result.returncode, result.stdout, result.stderr)
    return result


def require_tools(tools: Iterable[str]) -> None:
    """Make sure every named command is on PATH.

    Raises:
        MissingToolError: Listing every missing command
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingToolError(missing)


__all__ = ["run_command", "require_tools"]
