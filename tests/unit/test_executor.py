"""
Unit tests for the backup orchestrator (wpbackup/backup/executor.py).

Tests BackupOrchestrator for driving complete backup runs.
"""

import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from wpbackup.backup.compression import SiteArchiver
from wpbackup.backup.errors import (
    BackupCancelled,
    CleanupFailed,
    ListingError,
    ProducerError,
    RunLocked,
    StageFailed,
    TransportError,
    UploadFailed,
)
from wpbackup.backup.executor import Stage, generate_snapshot_id
from wpbackup.utils.lock import RunLock


class TestGenerateSnapshotId:
    """Test snapshot id generation."""

    def test_format(self):
        assert generate_snapshot_id(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)) == '20240102T030405'

    @freeze_time("2024-03-15 08:30:00")
    def test_uses_current_utc_time(self):
        assert generate_snapshot_id() == '20240315T083000'

    def test_sorts_in_time_order(self):
        earlier = generate_snapshot_id(datetime(2024, 9, 30, 23, 59, 59))
        later = generate_snapshot_id(datetime(2024, 10, 1, 0, 0, 0))

        assert earlier < later


class TestBackupOrchestrator:
    """Test successful runs."""

    def test_successful_backup(self, make_orchestrator, put_snapshots, bucket_keys):
        put_snapshots(['20240101T000000', '20240102T000000', '20240103T000000'])
        orchestrator = make_orchestrator(retention_count=2)

        result = orchestrator.execute()

        assert result.snapshot_id == '20240104T120000'
        assert result.stage == Stage.DONE
        assert orchestrator.stage == Stage.DONE
        assert result.uploaded_keys == ['20240104T120000/wordpress.sql', '20240104T120000/wordpress.zip']
        assert result.rotation.expired == ['20240101T000000/', '20240102T000000/']
        assert bucket_keys() == [
            '20240103T000000/wordpress.sql',
            '20240103T000000/wordpress.zip',
            '20240104T120000/wordpress.sql',
            '20240104T120000/wordpress.zip',
        ]

    def test_new_snapshot_listed_after_upload(self, make_orchestrator, s3_storage):
        result = make_orchestrator().execute()

        assert f'{result.snapshot_id}/' in s3_storage.list('', '/').common_prefixes

    def test_staging_directory_removed_after_success(self, make_orchestrator, tmp_path):
        orchestrator = make_orchestrator()

        orchestrator.execute()

        assert orchestrator.staging_dir is not None
        assert not os.path.exists(orchestrator.staging_dir)
        assert os.listdir(tmp_path / 'staging-base') == []

    def test_stages_run_in_order(self, make_orchestrator, fake_dumper):
        calls = []
        archiver = MagicMock()
        uploader = MagicMock()
        retention = MagicMock()
        fake_dumper.dump = MagicMock(side_effect=lambda staging: calls.append('dump'))
        archiver.archive.side_effect = lambda source, output: calls.append('archive')
        uploader.upload.side_effect = lambda staging, snapshot: calls.append('upload') or []
        retention.rotate.side_effect = lambda keep: calls.append(('rotate', keep))

        make_orchestrator(archiver=archiver, uploader=uploader, retention=retention, retention_count=5).execute()

        assert calls == ['dump', 'archive', 'upload', ('rotate', 5)]

    def test_archive_written_into_staging(self, make_orchestrator, site_dir):
        archiver = MagicMock()
        uploader = MagicMock()
        uploader.upload.return_value = []
        orchestrator = make_orchestrator(archiver=archiver, uploader=uploader, retention=MagicMock())

        orchestrator.execute()

        source, output = archiver.archive.call_args[0]
        assert source == str(site_dir)
        assert output == os.path.join(orchestrator.staging_dir, 'wordpress.zip')
        assert uploader.upload.call_args[0] == (orchestrator.staging_dir, '20240104T120000')


class TestBackupOrchestratorFailures:
    """Test failure semantics and staging cleanup."""

    @pytest.mark.parametrize("stage", [Stage.DUMPING, Stage.ARCHIVING, Stage.UPLOADING, Stage.ROTATING])
    def test_staging_removed_whichever_stage_fails(self, make_orchestrator, make_dumper, stage):
        archiver = MagicMock()
        uploader = MagicMock()
        uploader.upload.return_value = []
        retention = MagicMock()
        dumper = make_dumper()
        error = RuntimeError(f"{stage.value} exploded")

        if stage == Stage.DUMPING:
            dumper.error = ProducerError("mysqldump failed")
            error = dumper.error
        elif stage == Stage.ARCHIVING:
            archiver.archive.side_effect = error
        elif stage == Stage.UPLOADING:
            uploader.upload.side_effect = error
        else:
            retention.rotate.side_effect = error

        orchestrator = make_orchestrator(dumper=dumper, archiver=archiver, uploader=uploader, retention=retention)

        with pytest.raises(StageFailed) as exc_info:
            orchestrator.execute()

        assert exc_info.value.stage == stage
        assert exc_info.value.cause is error
        assert orchestrator.stage == Stage.FAILED
        assert not os.path.exists(orchestrator.staging_dir)

    def test_later_stages_skipped_after_failure(self, make_orchestrator):
        archiver = MagicMock()
        archiver.archive.side_effect = ProducerError("disk full")
        uploader = MagicMock()
        retention = MagicMock()

        with pytest.raises(StageFailed):
            make_orchestrator(archiver=archiver, uploader=uploader, retention=retention).execute()

        uploader.upload.assert_not_called()
        retention.rotate.assert_not_called()

    def test_file_archive_upload_failure(self, make_orchestrator, s3_storage, bucket_keys):
        real_put = s3_storage.put

        def put(key, body, size=None, cancellation_check=None):
            if key.endswith('wordpress.zip'):
                raise TransportError("connection reset", operation='put', key=key)
            return real_put(key, body, size=size, cancellation_check=cancellation_check)

        retention = MagicMock()
        orchestrator = make_orchestrator(retention=retention)

        with patch.object(s3_storage, 'put', side_effect=put):
            with pytest.raises(StageFailed) as exc_info:
                orchestrator.execute()

        assert exc_info.value.stage == Stage.UPLOADING
        assert isinstance(exc_info.value.cause, UploadFailed)
        assert exc_info.value.cause.artifact == 'file-archive'
        assert 'file-archive' in str(exc_info.value)
        retention.rotate.assert_not_called()
        # Partial snapshot stays in the bucket
        assert bucket_keys() == ['20240104T120000/wordpress.sql']
        assert not os.path.exists(orchestrator.staging_dir)

    def test_rotation_failure_fails_run(self, make_orchestrator, s3_storage):
        orchestrator = make_orchestrator()

        with patch.object(s3_storage, 'list', side_effect=ListingError("throttled")):
            with pytest.raises(StageFailed) as exc_info:
                orchestrator.execute()

        assert exc_info.value.stage == Stage.ROTATING
        assert str(exc_info.value) == 'rotating failed: throttled'

    def test_missing_dump_reported_by_upload(self, make_orchestrator):
        dumper = MagicMock()
        dumper.dump.return_value = 'wordpress.sql'

        with pytest.raises(StageFailed) as exc_info:
            make_orchestrator(dumper=dumper).execute()

        assert exc_info.value.stage == Stage.UPLOADING
        assert exc_info.value.cause.artifact == 'database-dump'

    def test_staging_removal_failure_fails_completed_run(self, make_orchestrator, bucket_keys):
        orchestrator = make_orchestrator()

        with patch('wpbackup.backup.executor.shutil.rmtree', side_effect=OSError("Device or resource busy")):
            with pytest.raises(CleanupFailed) as exc_info:
                orchestrator.execute()

        assert exc_info.value.path == orchestrator.staging_dir
        assert 'Device or resource busy' in str(exc_info.value)
        assert orchestrator.stage == Stage.FAILED
        # Uploads and rotation already happened
        assert '20240104T120000/wordpress.zip' in bucket_keys()

    def test_staging_removal_failure_keeps_stage_error(self, make_orchestrator, make_dumper):
        orchestrator = make_orchestrator(dumper=make_dumper(error=ProducerError("mysqldump failed")))

        with patch('wpbackup.backup.executor.shutil.rmtree', side_effect=OSError("Device or resource busy")):
            with pytest.raises(StageFailed) as exc_info:
                orchestrator.execute()

        assert exc_info.value.stage == Stage.DUMPING

    def test_unexpected_interrupt_still_cleans_up(self, make_orchestrator):
        dumper = MagicMock()
        dumper.dump.side_effect = KeyboardInterrupt()
        orchestrator = make_orchestrator(dumper=dumper)

        with pytest.raises(KeyboardInterrupt):
            orchestrator.execute()

        assert not os.path.exists(orchestrator.staging_dir)


class TestBackupOrchestratorCancellation:
    """Test cancellation handling."""

    def test_cancel_between_stages(self, make_orchestrator, make_dumper):
        archiver = MagicMock()
        orchestrator = make_orchestrator(archiver=archiver)
        dumper = make_dumper()
        original_dump = dumper.dump

        def dump_then_cancel(output_dir):
            orchestrator.cancel()
            return original_dump(output_dir)

        dumper.dump = dump_then_cancel
        orchestrator.dumper = dumper

        with pytest.raises(StageFailed) as exc_info:
            orchestrator.execute()

        assert exc_info.value.stage == Stage.ARCHIVING
        assert isinstance(exc_info.value.cause, BackupCancelled)
        archiver.archive.assert_not_called()
        assert not os.path.exists(orchestrator.staging_dir)

    def test_cancel_during_archive(self, make_orchestrator):
        orchestrator = make_orchestrator(archiver=SiteArchiver('zip'))
        def exclude_nothing_then_cancel(path):
            orchestrator.cancel()
            return False

        with patch.object(orchestrator.archiver, '_should_exclude', side_effect=exclude_nothing_then_cancel):
            with pytest.raises(StageFailed) as exc_info:
                orchestrator.execute()

        assert exc_info.value.stage == Stage.ARCHIVING
        assert isinstance(exc_info.value.cause, BackupCancelled)
        assert orchestrator.archiver.cancellation_check == orchestrator.check_cancelled
        assert not os.path.exists(orchestrator.staging_dir)

    def test_cancelled_before_start(self, make_orchestrator, fake_dumper):
        orchestrator = make_orchestrator()
        orchestrator.cancel()

        with pytest.raises(StageFailed) as exc_info:
            orchestrator.execute()

        assert exc_info.value.stage == Stage.DUMPING
        assert fake_dumper.calls == []

    def test_cancellation_reaches_uploader(self, make_orchestrator, s3_storage, bucket_keys):
        orchestrator = make_orchestrator()
        real_put = s3_storage.put

        def put_then_cancel(key, body, size=None, cancellation_check=None):
            real_put(key, body, size=size, cancellation_check=cancellation_check)
            orchestrator.cancel()

        with patch.object(s3_storage, 'put', side_effect=put_then_cancel):
            with pytest.raises(StageFailed) as exc_info:
                orchestrator.execute()

        assert exc_info.value.stage == Stage.UPLOADING
        assert isinstance(exc_info.value.cause, BackupCancelled)
        assert bucket_keys() == ['20240104T120000/wordpress.sql']


class TestBackupOrchestratorRunLock:
    """Test run-level mutual exclusion."""

    def test_lock_released_after_run(self, make_orchestrator, tmp_path):
        lock = RunLock(str(tmp_path / 'wp_backup.lock'))

        make_orchestrator(run_lock=lock).execute()

        assert not lock.is_held

    def test_concurrent_run_rejected(self, make_orchestrator, fake_dumper, tmp_path):
        lock_path = str(tmp_path / 'wp_backup.lock')
        holder = RunLock(lock_path)
        holder.acquire()
        orchestrator = make_orchestrator(run_lock=RunLock(lock_path))

        try:
            with pytest.raises(StageFailed) as exc_info:
                orchestrator.execute()
        finally:
            holder.release()

        assert exc_info.value.stage == Stage.INIT
        assert isinstance(exc_info.value.cause, RunLocked)
        assert orchestrator.staging_dir is None
        assert fake_dumper.calls == []

    def test_lock_released_after_failure(self, make_orchestrator, make_dumper, tmp_path):
        lock = RunLock(str(tmp_path / 'wp_backup.lock'))

        with pytest.raises(StageFailed):
            make_orchestrator(run_lock=lock, dumper=make_dumper(error=ProducerError("boom"))).execute()

        assert not lock.is_held
