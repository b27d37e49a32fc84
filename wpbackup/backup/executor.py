"""
Backup orchestrator - drives one backup run.

Workflow:
1. Init: take the run lock, create the staging directory, compute the snapshot id
2. Dumping: dump the database into the staging directory
3. Archiving: archive the site directory into the staging directory
4. Uploading: upload the artifacts under the snapshot prefix
5. Rotating: delete snapshots beyond the retention count
6. Done

Stages run strictly in order and are never retried. The first failure ends
the run. The staging directory is removed on every exit path; a completed run
whose staging directory cannot be removed fails with CleanupFailed.
"""

import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from .compression import SiteArchiver
from .errors import BackupCancelled, CleanupFailed, StageFailed
from .retention import RetentionEngine, RotationResult
from .sources import MySQLDumpSource
from .uploader import Uploader

logger = logging.getLogger(__name__)

SNAPSHOT_ID_FORMAT = '%Y%m%dT%H%M%S'


class Stage(Enum):
    INIT = 'init'
    DUMPING = 'dumping'
    ARCHIVING = 'archiving'
    UPLOADING = 'uploading'
    ROTATING = 'rotating'
    DONE = 'done'
    FAILED = 'failed'


def generate_snapshot_id(now: Optional[datetime] = None) -> str:
    """
    Generate a snapshot id from a UTC timestamp.

    Format: YYYYMMDDThhmmss, which sorts lexicographically in time order.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return now.strftime(SNAPSHOT_ID_FORMAT)


@dataclass
class BackupResult:
    """Outcome of a successful backup run."""
    snapshot_id: str
    stage: Stage
    started_at: datetime
    completed_at: Optional[datetime] = None
    uploaded_keys: List[str] = field(default_factory=list)
    rotation: Optional[RotationResult] = None


class BackupOrchestrator:
    """
    Orchestrates the complete backup workflow for the site.
    """

    def __init__(
        self,
        dumper: MySQLDumpSource,
        archiver: SiteArchiver,
        uploader: Uploader,
        retention: RetentionEngine,
        source_dir: str,
        archive_filename: str,
        retention_count: int,
        staging_base_dir: Optional[str] = None,
        run_lock=None,
        cancel_event: Optional[threading.Event] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize backup orchestrator.

        Args:
            dumper: Produces the database dump in the staging directory
            archiver: Produces the file archive in the staging directory
            uploader: Uploads the staged artifacts
            retention: Rotates old snapshots
            source_dir: Site directory to archive
            archive_filename: Filename of the archive inside the staging directory
            retention_count: Number of snapshots to keep
            staging_base_dir: Parent of the staging directory (system temp dir when None)
            run_lock: Lock held for the whole run (RunLock or None)
            cancel_event: Event that cancels the run when set
            clock: Returns the current UTC time
        """
        self.dumper = dumper
        self.archiver = archiver
        self.uploader = uploader
        self.retention = retention
        self.source_dir = source_dir
        self.archive_filename = archive_filename
        self.retention_count = retention_count
        self.staging_base_dir = staging_base_dir
        self.run_lock = run_lock
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.stage = Stage.INIT
        self.staging_dir = None
        self.snapshot_id = None

        self.archiver.cancellation_check = self.check_cancelled
        self.uploader.cancellation_check = self.check_cancelled
        self.retention.cancellation_check = self.check_cancelled

    def cancel(self):
        """Request cancellation; the run stops at the next checkpoint."""
        self.cancel_event.set()

    def check_cancelled(self):
        """
        Raises:
            BackupCancelled: If cancellation was requested
        """
        if self.cancel_event.is_set():
            raise BackupCancelled("Backup run cancelled")

    def execute(self) -> BackupResult:
        """
        Execute one backup run.

        Returns:
            BackupResult of the completed run

        Raises:
            StageFailed: Wrapping the error that ended the run
            CleanupFailed: If the run completed but its staging directory could not be removed
        """
        self.stage = Stage.INIT
        started_at = self.clock()

        with self._run_lock():
            with self._staging_directory() as staging_dir:
                self.snapshot_id = generate_snapshot_id(started_at)
                result = BackupResult(snapshot_id=self.snapshot_id, stage=self.stage, started_at=started_at)
                logger.info(f"Start backup to {self.uploader.storage.url(self.snapshot_id)}")

                self._run_stage(Stage.DUMPING, self.dumper.dump, staging_dir)

                self._run_stage(
                    Stage.ARCHIVING,
                    self.archiver.archive,
                    self.source_dir,
                    os.path.join(staging_dir, self.archive_filename)
                )

                result.uploaded_keys = self._run_stage(
                    Stage.UPLOADING, self.uploader.upload, staging_dir, self.snapshot_id
                )

                result.rotation = self._run_stage(
                    Stage.ROTATING, self.retention.rotate, self.retention_count
                )

                self.stage = Stage.DONE
                result.stage = self.stage
                result.completed_at = self.clock()
                logger.info(f"Finish backup to {self.uploader.storage.url(self.snapshot_id)}")

        return result

    def _run_stage(self, stage: Stage, func, *args):
        try:
            self.check_cancelled()
            self.stage = stage
            logger.info(f"Stage {stage.value} started")
            return func(*args)
        except Exception as e:
            self.stage = Stage.FAILED
            raise StageFailed(stage, e) from e

    @contextmanager
    def _run_lock(self):
        if self.run_lock is None:
            yield
            return

        try:
            self.run_lock.acquire()
        except Exception as e:
            self.stage = Stage.FAILED
            raise StageFailed(Stage.INIT, e) from e

        try:
            yield
        finally:
            self.run_lock.release()

    @contextmanager
    def _staging_directory(self):
        """Create a fresh staging directory and remove it on exit."""
        try:
            if self.staging_base_dir:
                os.makedirs(self.staging_base_dir, exist_ok=True)
            self.staging_dir = tempfile.mkdtemp(prefix='wp_backup_', dir=self.staging_base_dir)
        except OSError as e:
            self.stage = Stage.FAILED
            raise StageFailed(Stage.INIT, e) from e

        logger.debug(f"Staging directory: {self.staging_dir}")
        try:
            yield self.staging_dir
        except BaseException:
            # The original error is the one reported
            error = self._cleanup()
            if error:
                logger.error(f"Failed to remove staging directory {self.staging_dir}: {error}")
            raise

        error = self._cleanup()
        if error:
            self.stage = Stage.FAILED
            raise CleanupFailed(self.staging_dir, error) from error

    def _cleanup(self) -> Optional[OSError]:
        """Remove the staging directory and its artifacts, returning the error if that fails."""
        if self.staging_dir and os.path.exists(self.staging_dir):
            try:
                shutil.rmtree(self.staging_dir)
                logger.debug("Cleaned up staging directory")
            except OSError as e:
                return e
        return None
