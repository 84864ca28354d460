import argparse
import sys
from pathlib import Path

from zfs_migrate import __version__
from zfs_migrate.config.settings import load_config
from zfs_migrate.domain.models import TARGET_MOUNT, MigrationConfig, MigrationContext
from zfs_migrate.logging import flush_logs, get_logger, run_log_path, setup_logging
from zfs_migrate.services.boot import GRUB_DEFAULTS, apply_grub_defaults
from zfs_migrate.services.chroot import interactive_shell
from zfs_migrate.services.migration import Migration
from zfs_migrate.storage.devices import partition_path
from zfs_migrate.storage.exceptions import CommandError, MigrationError

COMMANDS = ("migrate", "chroot", "fix-grub")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

log = get_logger(source="cli")


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    common.add_argument("--log-dir", type=Path, help="Directory for migration.log")

    parser = argparse.ArgumentParser(
        prog="zfs-migrate",
        description="Migrate an ext4 Linux root filesystem to a ZFS root pool in place",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="subcommand")

    migrate = subparsers.add_parser(
        "migrate", parents=[common], help="Migrate the root filesystem (default)"
    )
    migrate.add_argument("--config", type=Path, help="JSON settings file")
    migrate.add_argument("--disk", help="Disk to migrate (e.g. sda, nvme0n1)")
    migrate.add_argument("--root-part", type=int, help="Partition number of the ext4 root")
    migrate.add_argument("--efi-part", type=int, help="Partition number of the EFI system partition")
    migrate.add_argument("--boot-type", choices=["UEFI", "BIOS"], type=str.upper)
    migrate.add_argument("--pool", help="Name of the new root pool")
    migrate.add_argument("--swap", help="auto, off, or a size such as 4G or 512M")
    migrate.add_argument(
        "--filesystem",
        action="append",
        dest="filesystems",
        metavar="NAME",
        help="Optional dataset to create (repeatable)",
    )
    migrate.add_argument(
        "--skip-host-packages",
        action="store_true",
        help="Do not install gdisk, parted, dosfstools and zfs-initramfs on this system",
    )
    migrate.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    chroot = subparsers.add_parser(
        "chroot", parents=[common], help="Run a command inside a target root"
    )
    chroot.add_argument("target", type=Path, help="Root directory of the target system")
    chroot.add_argument(
        "command", nargs=argparse.REMAINDER, help="Command to run (default /bin/bash)"
    )

    fix_grub = subparsers.add_parser(
        "fix-grub", parents=[common], help="Make GRUB boot messages visible in a target root"
    )
    fix_grub.add_argument("--target", type=Path, default=TARGET_MOUNT)
    return parser


def config_overrides(args) -> dict:
    return {
        "disk": args.disk,
        "root_partition": args.root_part,
        "efi_partition": args.efi_part,
        "boot_type": args.boot_type,
        "pool": args.pool,
        "swap": args.swap,
        "filesystems": args.filesystems,
        "install_host_packages": False if args.skip_host_packages else None,
    }


def confirm(config: MigrationConfig) -> bool:
    root = partition_path(config.target.disk, config.target.root_partition)
    print("This will attempt to migrate the existing installation")
    print(f"at {root} to a ZFS ROOT filesystem. The migration is")
    print("EXPERIMENTAL, it may destroy your data. Make sure you have a backup")
    print("before continuing.")
    try:
        answer = input("Do you wish to continue (yes/no): ")
    except EOFError:
        return False
    return answer.strip() == "yes"


def failure_banner(step, error: Exception) -> None:
    # The step's own failure record is queued; let it reach stderr first.
    flush_logs()
    print("", file=sys.stderr)
    print("=" * 60, file=sys.stderr)
    where = f" in step '{step}'" if step else ""
    print(f"MIGRATION FAILED{where}: {type(error).__name__}", file=sys.stderr)
    print(str(error), file=sys.stderr)
    if isinstance(error, CommandError) and error.stderr.strip():
        print(error.stderr.rstrip(), file=sys.stderr)
    log_path = run_log_path()
    if log_path is not None:
        print(f"Full command log: {log_path}", file=sys.stderr)
    print("The disk may be partially migrated; nothing was rolled back.", file=sys.stderr)
    print("=" * 60, file=sys.stderr)


def run_migrate(args) -> int:
    try:
        config = load_config(args.config, config_overrides(args))
    except MigrationError as error:
        print(f"Configuration error: {error}", file=sys.stderr)
        return EXIT_FAILURE

    if not args.yes and not confirm(config):
        print("Aborted, nothing was changed.")
        return EXIT_OK

    setup_logging(debug=args.debug, log_dir=args.log_dir)
    migration = Migration(MigrationContext(config=config))
    try:
        migration.run()
    except KeyboardInterrupt:
        log.warning(
            f"Interrupted during step '{migration.current_step}'; "
            "the disk may need manual recovery"
        )
        return EXIT_INTERRUPTED
    except MigrationError as error:
        failure_banner(migration.current_step, error)
        return EXIT_FAILURE
    except Exception as error:
        failure_banner(migration.current_step, error)
        return EXIT_FAILURE

    log.success("Migration complete, you may now reboot into your new ZFS ROOT pool.")
    return EXIT_OK


def run_chroot(args) -> int:
    setup_logging(debug=args.debug, log_dir=args.log_dir)
    try:
        return interactive_shell(args.target, args.command)
    except MigrationError as error:
        print(f"chroot failed: {error}", file=sys.stderr)
        return EXIT_FAILURE


def run_fix_grub(args) -> int:
    setup_logging(debug=args.debug, log_dir=args.log_dir)
    try:
        apply_grub_defaults(args.target)
    except OSError as error:
        print(f"Cannot update {args.target / GRUB_DEFAULTS}: {error}", file=sys.stderr)
        return EXIT_FAILURE
    log.info(f"Updated {args.target / GRUB_DEFAULTS}")
    return EXIT_OK


def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS + ("-h", "--help", "--version"):
        argv.insert(0, "migrate")
    args = build_parser().parse_args(argv)

    handlers = {
        "migrate": run_migrate,
        "chroot": run_chroot,
        "fix-grub": run_fix_grub,
    }
    return handlers[args.subcommand](args)


if __name__ == "__main__":
    sys.exit(main())
