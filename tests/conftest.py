"""
Shared pytest fixtures for wp-backup tests.

This module provides fixtures for:
- Mock S3 bucket (moto) and an S3Storage bound to it
- Snapshot prefixes pre-populated in the bucket
- Staging directory with the artifact manifest
- Site directory to archive
- Config and env file
"""

import os
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from wpbackup.backup.compression import SiteArchiver
from wpbackup.backup.executor import BackupOrchestrator
from wpbackup.backup.retention import RetentionEngine
from wpbackup.backup.storage import S3Storage
from wpbackup.backup.uploader import Uploader, build_manifest
from wpbackup.config import Config

BUCKET = 'test-bucket'


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket=BUCKET)
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage bound to the mocked test bucket."""
    return S3Storage(
        bucket_name=BUCKET,
        region='us-east-1',
        access_key='test_access_key',
        secret_key='test_secret_key'
    )


@pytest.fixture
def put_snapshots(mock_s3):
    """
    Populate the bucket with snapshot prefixes.

    Each snapshot gets wordpress.sql and wordpress.zip.
    """
    bucket = mock_s3.Bucket(BUCKET)

    def _put(snapshot_ids, filenames=('wordpress.sql', 'wordpress.zip')):
        for snapshot_id in snapshot_ids:
            for filename in filenames:
                bucket.put_object(Key=f'{snapshot_id}/{filename}', Body=b'data')

    return _put


@pytest.fixture
def bucket_keys(mock_s3):
    """Return every key currently in the bucket, sorted."""
    bucket = mock_s3.Bucket(BUCKET)

    def _keys():
        return sorted(obj.key for obj in bucket.objects.all())

    return _keys


@pytest.fixture
def manifest():
    """Default artifact manifest (wordpress.sql, wordpress.zip)."""
    return build_manifest('wordpress', 'zip')


@pytest.fixture
def staging_dir(tmp_path, manifest):
    """Staging directory holding every artifact of the manifest."""
    staging = tmp_path / 'staging'
    staging.mkdir()
    for artifact in manifest:
        (staging / artifact.filename).write_bytes(f'{artifact.name} content'.encode())
    return staging


@pytest.fixture
def site_dir(tmp_path):
    """
    Create a small WordPress-like site tree.

    Creates:
    - html/index.php
    - html/wp-config.php
    - html/wp-content/uploads/image.jpg
    - html/wp-content/cache/page.html
    """
    site = tmp_path / 'html'
    (site / 'wp-content' / 'uploads').mkdir(parents=True)
    (site / 'wp-content' / 'cache').mkdir()
    (site / 'index.php').write_text('<?php // index')
    (site / 'wp-config.php').write_text('<?php // config')
    (site / 'wp-content' / 'uploads' / 'image.jpg').write_bytes(b'\xff\xd8jpeg')
    (site / 'wp-content' / 'cache' / 'page.html').write_text('<html></html>')
    return site


class FakeDumper:
    """Stands in for MySQLDumpSource: writes a small SQL file."""

    def __init__(self, filename='wordpress.sql', error=None):
        self.filename = filename
        self.error = error
        self.calls = []

    def dump(self, output_dir):
        self.calls.append(output_dir)
        if self.error:
            raise self.error
        with open(os.path.join(output_dir, self.filename), 'w') as f:
            f.write('CREATE TABLE wp_posts (id INT);\n')
        return self.filename


@pytest.fixture
def make_dumper():
    """Factory for FakeDumper instances."""
    return FakeDumper


@pytest.fixture
def fake_dumper(make_dumper):
    return make_dumper()


@pytest.fixture
def fixed_clock():
    """Clock frozen at 2024-01-04 12:00:00 UTC (snapshot 20240104T120000)."""
    return lambda: datetime(2024, 1, 4, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_orchestrator(s3_storage, manifest, site_dir, fake_dumper, fixed_clock, tmp_path):
    """
    Build a BackupOrchestrator wired to the mocked bucket.

    Keyword arguments override the defaults.
    """

    def _make(**overrides):
        kwargs = {
            'dumper': fake_dumper,
            'archiver': SiteArchiver('zip'),
            'uploader': Uploader(s3_storage, manifest),
            'retention': RetentionEngine(s3_storage),
            'source_dir': str(site_dir),
            'archive_filename': 'wordpress.zip',
            'retention_count': 2,
            'staging_base_dir': str(tmp_path / 'staging-base'),
            'run_lock': None,
            'cancel_event': threading.Event(),
            'clock': fixed_clock,
        }
        kwargs.update(overrides)
        return BackupOrchestrator(**kwargs)

    return _make


@pytest.fixture
def config(tmp_path, site_dir):
    """Config pointing at the mocked bucket and the test site."""
    return Config(
        aws_bucket=BUCKET,
        aws_region='us-east-1',
        aws_access_key_id='test_access_key',
        aws_secret_access_key='test_secret_key',
        db_name='wordpress',
        db_username='wp',
        db_password='secret',
        backup_dir=str(site_dir),
        retention_count=3,
        staging_dir=str(tmp_path / 'staging-base'),
        lock_file=str(tmp_path / 'wp_backup.lock'),
    )


@pytest.fixture
def env_file(tmp_path, site_dir):
    """Write a minimal env file and return its path."""
    path = tmp_path / 'wp_backup.env'
    path.write_text(
        'AWS_BUCKET=test-bucket\n'
        'AWS_REGION=eu-west-1\n'
        'DB_USERNAME=wp\n'
        'DB_PASSWORD=secret\n'
        'DB_NAME=wordpress\n'
        f'BACKUP_DIR={site_dir}\n'
        'BACKUP_RETENTION=5\n'
    )
    return path


@pytest.fixture
def mock_storage():
    """MagicMock standing in for S3Storage, for failure injection."""
    storage = MagicMock(spec=S3Storage)
    storage.bucket_name = BUCKET
    storage.url.side_effect = lambda key='': f's3://{BUCKET}/{key}'
    return storage
