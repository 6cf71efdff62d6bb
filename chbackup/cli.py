#!/usr/bin/env python3
"""
Command line interface for clickhouse-backup.

Usage:
    clickhouse-backup tables
    clickhouse-backup freeze [PATTERN ...]
    clickhouse-backup upload
    clickhouse-backup download [ARCHIVE]
    clickhouse-backup create-tables
    clickhouse-backup restore [PATTERN ...] [-i N ...] [-m]
    clickhouse-backup clean
    clickhouse-backup default-config
"""

import sys
import argparse
import logging

from . import __version__, configure_logging
from .config import DEFAULT_CONFIG_PATH, ConfigError, default_config_yaml, load_config
from .exceptions import BackupError
from .backup.archive import ArchiveError
from .backup.clickhouse import ClickHouseError
from .backup.executor import BackupWorkflow
from .backup.storage import StorageError


logger = logging.getLogger(__name__)

COMMAND_ERRORS = (BackupError, ClickHouseError, StorageError, ArchiveError, ConfigError)


def cmd_tables(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    for table in workflow.tables():
        print(table.full_name)
    return 0


def cmd_freeze(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    workflow.freeze(args.patterns)
    return 0


def cmd_upload(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    workflow.upload()
    return 0


def cmd_download(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    workflow.download(args.archive)
    return 0


def cmd_create_tables(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    # Individual table failures are reported, not fatal
    workflow.create_tables()
    return 0


def cmd_restore(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    workflow.restore(args.patterns, args.increments or [], args.move)
    return 0


def cmd_clean(workflow: BackupWorkflow, args: argparse.Namespace) -> int:
    workflow.clean()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='clickhouse-backup',
        description="Backup ClickHouse to s3",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Freeze all tables of one database and upload them
  clickhouse-backup freeze 'salesdb.*'
  clickhouse-backup upload
  clickhouse-backup clean

  # Restore on another host
  clickhouse-backup download clickhouse-backup-abc123.tar
  clickhouse-backup create-tables
  clickhouse-backup restore 'salesdb.*' -i 1

  # Show what would be uploaded
  clickhouse-backup --dry-run upload
        """
    )
    parser.add_argument(
        '--config', '-c',
        default=DEFAULT_CONFIG_PATH,
        metavar='FILE',
        help=f"Config file name (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help="Only show what would be changed. Listings and connectivity checks are still performed"
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    # Lets --dry-run follow the sub-command as well
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--dry-run', action='store_true', default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest='command', help="Command to run")
    subparsers.required = True

    tables_parser = subparsers.add_parser('tables', parents=[common], help="Print all tables and exit")
    tables_parser.set_defaults(func=cmd_tables)

    freeze_parser = subparsers.add_parser(
        'freeze', parents=[common],
        help="Freeze all or specific tables. Tables are given as [db].[table] glob patterns"
    )
    freeze_parser.add_argument('patterns', nargs='*', metavar='PATTERN')
    freeze_parser.set_defaults(func=cmd_freeze)

    upload_parser = subparsers.add_parser(
        'upload', parents=[common],
        help="Upload 'metadata' and 'shadow' directories to s3. Extra files on s3 will be deleted"
    )
    upload_parser.set_defaults(func=cmd_upload)

    download_parser = subparsers.add_parser(
        'download', parents=[common],
        help="Download 'metadata' and 'shadow' from s3 to backup folder"
    )
    download_parser.add_argument(
        'archive', nargs='?',
        help="Archive object name (required with the archive strategy)"
    )
    download_parser.set_defaults(func=cmd_download)

    create_parser = subparsers.add_parser(
        'create-tables', parents=[common],
        help="Create databases and tables from backup metadata"
    )
    create_parser.set_defaults(func=cmd_create_tables)

    restore_parser = subparsers.add_parser(
        'restore', parents=[common],
        help="Copy data from 'backup' to 'detached' folder and execute ATTACH"
    )
    restore_parser.add_argument('patterns', nargs='*', metavar='PATTERN')
    restore_parser.add_argument(
        '--increments', '-i',
        type=int,
        action='append',
        metavar='N',
        help="Restore only this increment (can be used multiple times)"
    )
    restore_parser.add_argument(
        '--move', '-m',
        action='store_true',
        help="Move backup data into 'detached' instead of copying it. This reduces disk usage"
    )
    restore_parser.set_defaults(func=cmd_restore)

    clean_parser = subparsers.add_parser(
        'clean', parents=[common],
        help="Clean backup data from shadow folder"
    )
    clean_parser.set_defaults(func=cmd_clean)

    subparsers.add_parser('default-config', help="Print default config and exit")

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'default-config':
        print(default_config_yaml(), end='')
        return 0

    try:
        config = load_config(args.config)
    except ConfigError as e:
        configure_logging()
        logger.error(str(e))
        return 1
    config.dry_run = args.dry_run

    configure_logging(config.logging.level, config.logging.file or None)
    if config.dry_run:
        logger.info("Dry run: no changes will be made")

    workflow = BackupWorkflow(config)
    try:
        return args.func(workflow, args)
    except COMMAND_ERRORS as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
