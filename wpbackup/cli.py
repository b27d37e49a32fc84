"""
Command line entry point.

This is the single place where failures are reported: errors propagate up to
``main`` which logs them and returns a non-zero exit status.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Iterable, Optional

from wpbackup import configure_logging, create_orchestrator, create_storage
from wpbackup.backup.errors import BackupCancelled, BackupError
from wpbackup.config import ConfigurationError, load_config

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='wp-backup',
        description="Back up a WordPress database and file tree to S3 with snapshot rotation."
    )
    parser.add_argument(
        '--config', default=None,
        help="Path to the env file (default: /etc/wp_backup.env if present)."
    )
    parser.add_argument(
        '--log-level', default=None,
        help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)."
    )

    subparsers = parser.add_subparsers(dest='command')
    subparsers.add_parser('run', help="Dump, archive, upload and rotate once (default).")

    rotate = subparsers.add_parser('rotate', help="Delete snapshots beyond the retention count.")
    rotate.add_argument('--keep', type=int, default=None, help="Override BACKUP_RETENTION.")

    subparsers.add_parser('list', help="List snapshot prefixes, oldest first.")
    subparsers.add_parser('check', help="Verify access to the bucket.")

    encrypt = subparsers.add_parser('encrypt-secret', help="Encrypt a value for the env file.")
    encrypt.add_argument('value', help="Plaintext value to encrypt.")
    encrypt.add_argument(
        '--secret-key', default=None,
        help="Passphrase (default: BACKUP_SECRET_KEY from the environment)."
    )

    schedule = subparsers.add_parser('schedule', help="Run backups on a cron schedule (UTC).")
    schedule.add_argument('--cron', default=None, help="Crontab expression (default: BACKUP_SCHEDULE).")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = 'run'
    return args


def install_signal_handlers(cancel_event: threading.Event, on_signal=None):
    """Set ``cancel_event`` on SIGINT and SIGTERM."""

    def handle(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling backup")
        cancel_event.set()
        if on_signal:
            on_signal()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def cmd_run(config, cancel_event) -> int:
    result = create_orchestrator(config, cancel_event=cancel_event).execute()
    logger.info(
        f"Backup {result.snapshot_id} complete: uploaded {len(result.uploaded_keys)} artifacts, "
        f"rotated out {len(result.rotation.expired)} snapshots"
    )
    return 0


def cmd_rotate(config, cancel_event, keep=None) -> int:
    from wpbackup.backup.retention import RetentionEngine
    from wpbackup.utils.lock import RunLock

    if keep is None:
        keep = config.retention_count

    def check_cancelled():
        if cancel_event.is_set():
            raise BackupCancelled("Rotation cancelled")

    # Held by backup runs too
    with RunLock(config.lock_file):
        result = RetentionEngine(create_storage(config), cancellation_check=check_cancelled).rotate(keep)
    logger.info(f"Rotated out {len(result.expired)} snapshots ({len(result.deleted_keys)} objects)")
    return 0


def cmd_list(config) -> int:
    from wpbackup.backup.retention import RetentionEngine

    for prefix in RetentionEngine(create_storage(config)).list_snapshots():
        print(prefix)
    return 0


def cmd_check(config) -> int:
    storage = create_storage(config)
    storage.test_connection()
    logger.info(f"Bucket {storage.url()} is reachable")
    return 0


def cmd_encrypt_secret(value, secret_key) -> int:
    from wpbackup.utils.crypto import SecretBox

    secret_key = secret_key or os.environ.get('BACKUP_SECRET_KEY')
    if not secret_key:
        raise ConfigurationError("BACKUP_SECRET_KEY is required to encrypt a secret")
    print(SecretBox(secret_key).encrypt(value))
    return 0


def cmd_schedule(config, cancel_event, cron=None) -> int:
    from wpbackup import scheduler as scheduler_module

    cron = cron or config.schedule
    if not cron:
        raise ConfigurationError("A cron expression is required (--cron or BACKUP_SCHEDULE)")

    try:
        scheduler_module.init_scheduler(config, cron, cancel_event=cancel_event)
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression {cron!r}: {e}")

    install_signal_handlers(cancel_event, on_signal=scheduler_module.stop_scheduler)
    scheduler_module.start_scheduler()
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)

    if args.command == 'encrypt-secret':
        try:
            return cmd_encrypt_secret(args.value, args.secret_key)
        except ConfigurationError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        configure_logging(args.log_level or 'INFO')
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        configure_logging(args.log_level or config.log_level, config.log_file)
    except ValueError as e:
        configure_logging('INFO')
        logger.error(f"Configuration error: {e}")
        return 1

    cancel_event = threading.Event()

    try:
        if args.command == 'run':
            install_signal_handlers(cancel_event)
            return cmd_run(config, cancel_event)
        if args.command == 'rotate':
            install_signal_handlers(cancel_event)
            return cmd_rotate(config, cancel_event, args.keep)
        if args.command == 'list':
            return cmd_list(config)
        if args.command == 'check':
            return cmd_check(config)
        if args.command == 'schedule':
            return cmd_schedule(config, cancel_event, args.cron)
    except (BackupError, ConfigurationError, ValueError) as e:
        logger.error(f"Backup failed: {e}")
        return 1

    logger.error(f"Unknown command: {args.command}")
    return 1


if __name__ == '__main__':
    sys.exit(main())
