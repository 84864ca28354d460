from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(os.environ.get("ZFS_MIGRATE_LOG_DIR", "/var/log/zfs-migrate"))
RUN_LOG_NAME = "migration.log"

_run_log_path: Path | None = None


def _console_filter(record) -> bool:
    """Keep raw command output out of the console unless it is a failure."""
    tags = record["extra"].get("tags", [])
    if "output" in tags:
        return record["level"].no >= logger.level("WARNING").no
    return True


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console and file logging for a migration run.

    Sinks:
    - stderr: INFO+ progress (DEBUG+ with debug=True), colourised
    - migration.log: every record at DEBUG+, append-only, never rotated.
      This is the post-mortem record of every command and its output.
    - structured.jsonl: INFO+ records serialized as JSON

    Args:
        debug: Enable DEBUG level output on the console
        log_dir: Custom log directory (defaults to /var/log/zfs-migrate)
    """
    global _run_log_path

    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_console_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <20}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    _run_log_path = log_dir / RUN_LOG_NAME

    # No rotation or retention: the run log must survive intact.
    logger.add(
        _run_log_path,
        level="DEBUG",
        mode="a",
        enqueue=True,
        backtrace=True,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def run_log_path() -> Path | None:
    """Path of the append-only run log, once setup_logging() has run."""
    return _run_log_path


def flush_logs() -> None:
    """Wait until every enqueued record has reached its sink."""
    logger.complete()


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Identifier of the step being run
        tags: Tags for filtering (e.g., ["command", "output"])
        source: Source component (e.g., "disk", "pool", "boot")
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for one migration step, with automatic timing.

    Logs step start, completion and failure. Failures are re-raised after
    logging so the caller decides how to stop.

    Example:
        with operation_context("relocate", disk="/dev/sda") as log:
            log.debug("Shrinking filesystem")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source="step", job_id=job_id, tags=[operation])

        log.info(f"Step '{operation}' started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"Step '{operation}' completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            # bind() rather than kwargs: the error text may contain braces.
            log.bind(
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"Step '{operation}' failed: {e}")
            raise


class LoggerFactory:
    """
    Factory for domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_disk() -> Logger:
        """Logger for partition table and filesystem operations."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_pool() -> Logger:
        """Logger for ZFS pool and dataset operations."""
        return logger.bind(source="pool", tags=["zfs", "storage"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for chroot, initramfs and GRUB operations."""
        return logger.bind(source="boot", tags=["boot"])

    @staticmethod
    def for_migration() -> Logger:
        """Logger for the migration pipeline itself."""
        return logger.bind(source="migrate", tags=["system"])
