"""
Backup module for wp-backup.

This module handles the core backup functionality including:
- Database dump (mysqldump)
- File tree archiving
- Storage (S3)
- Upload of the artifact manifest
- Retention of snapshot prefixes
- Run orchestration
"""

from .executor import BackupOrchestrator, BackupResult, Stage, generate_snapshot_id
from .sources import MySQLDumpSource
from .compression import SiteArchiver
from .storage import S3Storage
from .uploader import Artifact, Uploader, build_manifest
from .retention import RetentionEngine, RotationResult, select_expired_prefixes

__all__ = [
    'BackupOrchestrator',
    'BackupResult',
    'Stage',
    'generate_snapshot_id',
    'MySQLDumpSource',
    'SiteArchiver',
    'S3Storage',
    'Artifact',
    'Uploader',
    'build_manifest',
    'RetentionEngine',
    'RotationResult',
    'select_expired_prefixes'
]
