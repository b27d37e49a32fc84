import os
import logging
import threading
from logging.handlers import RotatingFileHandler

__version__ = '1.0.0'

QUIET_LOGGERS = ('boto3', 'botocore', 's3transfer', 'urllib3', 'apscheduler')


def configure_logging(log_level='INFO', log_file=None):
    """Configure application logging"""

    level = logging.getLevelName(log_level.upper()) if isinstance(log_level, str) else log_level
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(level)})")


def create_storage(config):
    """Build the S3 client for the configured bucket."""
    from wpbackup.backup.storage import S3Storage

    return S3Storage(
        bucket_name=config.aws_bucket,
        region=config.aws_region,
        access_key=config.aws_access_key_id,
        secret_key=config.aws_secret_access_key,
        endpoint_url=config.aws_endpoint_url,
        connect_timeout=config.s3_connect_timeout,
        read_timeout=config.s3_read_timeout
    )


def create_orchestrator(config, cancel_event=None, storage=None):
    """
    Backup orchestrator factory.

    Args:
        config: Config built at startup
        cancel_event: threading.Event shared with signal handlers
        storage: S3Storage to use instead of one built from config

    Returns:
        BackupOrchestrator wired from config
    """
    from wpbackup.backup.compression import SiteArchiver
    from wpbackup.backup.executor import BackupOrchestrator
    from wpbackup.backup.retention import RetentionEngine
    from wpbackup.backup.sources import MySQLDumpSource
    from wpbackup.backup.uploader import DATABASE_DUMP, FILE_ARCHIVE, Uploader, build_manifest
    from wpbackup.utils.lock import RunLock

    if storage is None:
        storage = create_storage(config)

    manifest = build_manifest(config.site_name, config.archive_format)
    filenames = {artifact.name: artifact.filename for artifact in manifest}

    dumper = MySQLDumpSource(
        database=config.db_name,
        username=config.db_username,
        password=config.db_password,
        hostname=config.db_hostname,
        port=config.db_port,
        filename=filenames[DATABASE_DUMP],
        timeout=config.db_dump_timeout,
        mysqldump_bin=config.mysqldump_bin
    )

    return BackupOrchestrator(
        dumper=dumper,
        archiver=SiteArchiver(config.archive_format, config.exclude_patterns),
        uploader=Uploader(storage, manifest),
        retention=RetentionEngine(storage),
        source_dir=config.backup_dir,
        archive_filename=filenames[FILE_ARCHIVE],
        retention_count=config.retention_count,
        staging_base_dir=config.staging_dir,
        run_lock=RunLock(config.lock_file),
        cancel_event=cancel_event or threading.Event()
    )
