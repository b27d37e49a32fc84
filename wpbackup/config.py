import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from cryptography.fernet import InvalidToken
from dotenv import dotenv_values

from wpbackup.backup.compression import EXTENSIONS
from wpbackup.utils.crypto import SecretBox, is_encrypted

DEFAULT_ENV_FILE = '/etc/wp_backup.env'

REQUIRED_KEYS = ('AWS_BUCKET', 'DB_USERNAME', 'DB_NAME', 'BACKUP_DIR')


class ConfigurationError(Exception):
    """Raised when the configuration is missing or invalid."""
    pass


@dataclass
class Config:
    """Backup configuration, built once at startup and passed down explicitly."""

    # S3
    aws_bucket: str
    aws_region: str = 'us-east-1'
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_endpoint_url: Optional[str] = None
    s3_connect_timeout: int = 10
    s3_read_timeout: int = 60

    # Database
    db_name: str = ''
    db_username: str = ''
    db_password: Optional[str] = None
    db_hostname: str = 'localhost'
    db_port: int = 3306
    db_dump_timeout: int = 600
    mysqldump_bin: str = 'mysqldump'

    # Backup
    backup_dir: str = ''
    site_name: str = 'wordpress'
    retention_count: int = 3
    archive_format: str = 'zip'
    exclude_patterns: List[str] = field(default_factory=list)
    staging_dir: Optional[str] = None
    lock_file: str = os.path.join(tempfile.gettempdir(), 'wp_backup.lock')
    schedule: Optional[str] = None

    # Logging
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, Optional[str]]) -> 'Config':
        """
        Build a Config from environment-style keys.

        Args:
            values: Mapping of variable name to value (env file + environment)

        Returns:
            Validated Config

        Raises:
            ConfigurationError: If a required key is missing or a value is invalid
        """
        values = _decrypt_secrets(values)

        def get(name, default=None):
            value = values.get(name)
            if value is None or value.strip() == '':
                return default
            return value.strip()

        missing = [name for name in REQUIRED_KEYS if get(name) is None]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        archive_format = get('BACKUP_ARCHIVE_FORMAT', 'zip')
        if archive_format not in EXTENSIONS:
            raise ConfigurationError(
                f"Invalid BACKUP_ARCHIVE_FORMAT: {archive_format}. "
                f"Valid options: {list(EXTENSIONS.keys())}"
            )

        retention_count = _parse_int(get('BACKUP_RETENTION', '3'), 'BACKUP_RETENTION')
        if retention_count < 0:
            raise ConfigurationError(f"BACKUP_RETENTION must be non-negative, got {retention_count}")

        exclude = get('BACKUP_EXCLUDE', '')
        exclude_patterns = [pattern.strip() for pattern in exclude.split(',') if pattern.strip()]

        return cls(
            aws_bucket=get('AWS_BUCKET'),
            aws_region=get('AWS_REGION', 'us-east-1'),
            aws_access_key_id=get('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=get('AWS_SECRET_ACCESS_KEY'),
            aws_endpoint_url=get('AWS_ENDPOINT_URL'),
            s3_connect_timeout=_parse_int(get('S3_CONNECT_TIMEOUT', '10'), 'S3_CONNECT_TIMEOUT'),
            s3_read_timeout=_parse_int(get('S3_READ_TIMEOUT', '60'), 'S3_READ_TIMEOUT'),
            db_name=get('DB_NAME'),
            db_username=get('DB_USERNAME'),
            db_password=get('DB_PASSWORD'),
            db_hostname=get('DB_HOSTNAME', 'localhost'),
            db_port=_parse_int(get('DB_PORT', '3306'), 'DB_PORT'),
            db_dump_timeout=_parse_int(get('DB_DUMP_TIMEOUT', '600'), 'DB_DUMP_TIMEOUT'),
            mysqldump_bin=get('MYSQLDUMP_BIN', 'mysqldump'),
            backup_dir=get('BACKUP_DIR'),
            site_name=get('BACKUP_SITE_NAME', 'wordpress'),
            retention_count=retention_count,
            archive_format=archive_format,
            exclude_patterns=exclude_patterns,
            staging_dir=get('BACKUP_STAGING_DIR'),
            lock_file=get('BACKUP_LOCK_FILE', os.path.join(tempfile.gettempdir(), 'wp_backup.lock')),
            schedule=get('BACKUP_SCHEDULE'),
            log_level=get('LOG_LEVEL', 'INFO').upper(),
            log_file=get('LOG_FILE'),
        )


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _decrypt_secrets(values: Mapping[str, Optional[str]]) -> Mapping[str, Optional[str]]:
    """Decrypt ``fernet:`` values with the key in BACKUP_SECRET_KEY."""
    encrypted = [name for name, value in values.items() if is_encrypted(value)]
    if not encrypted:
        return values

    secret_key = values.get('BACKUP_SECRET_KEY')
    if not secret_key:
        raise ConfigurationError(
            f"BACKUP_SECRET_KEY is required to decrypt: {', '.join(sorted(encrypted))}"
        )

    try:
        return SecretBox(secret_key).decrypt_values(values)
    except InvalidToken:
        raise ConfigurationError(
            "Failed to decrypt configuration secrets (wrong BACKUP_SECRET_KEY or corrupted value)"
        )


def load_config(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load configuration from an env file overlaid by the process environment.

    Variables already set in the environment win over the file.

    Args:
        env_file: Path to a dotenv file (DEFAULT_ENV_FILE is used if it exists when None)
        environ: Environment mapping (os.environ when None)

    Returns:
        Validated Config

    Raises:
        ConfigurationError: If an explicit env_file is missing or the configuration is invalid
    """
    if environ is None:
        environ = os.environ

    values = {}
    if env_file is not None:
        if not os.path.isfile(env_file):
            raise ConfigurationError(f"Configuration file not found: {env_file}")
        values.update(dotenv_values(env_file))
    elif os.path.isfile(DEFAULT_ENV_FILE):
        values.update(dotenv_values(DEFAULT_ENV_FILE))

    values.update(environ)
    return Config.from_mapping(values)
