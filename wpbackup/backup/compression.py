"""
Archiving of the site's file tree.

Supports multiple formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import logging
import os
import tarfile
import zipfile
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, List, Optional

from .errors import BackupCancelled, ProducerError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


class CompressionError(ProducerError):
    """Raised when archive creation fails."""
    pass


def archive_extension(compression_format: str) -> str:
    """
    Map a compression format to its file extension.

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )
    return EXTENSIONS[compression_format]


class SiteArchiver:
    """
    Produces one compressed file from a directory.

    The directory's contents are stored under its basename, so extracting
    the archive recreates the directory.

    Zip archives follow symlinked directories (skipping links back into their
    own ancestors) and leave out anything that is not a regular file, such as
    dangling symlinks. Tar archives store symlinks as link entries.
    """

    def __init__(
        self,
        compression_format: str = 'zip',
        exclude_patterns: Optional[List[str]] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Initialize archiver.

        Args:
            compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')
            exclude_patterns: Glob patterns to leave out (e.g. *.log, cache)
            cancellation_check: Called before each archive entry, raises to abort
        """
        archive_extension(compression_format)
        self.compression_format = compression_format
        self.exclude_patterns = exclude_patterns or []
        self.cancellation_check = cancellation_check

    def _should_exclude(self, path: Path) -> bool:
        """Check a path against the exclude patterns by full path and by name."""
        path_str = str(path)
        for pattern in self.exclude_patterns:
            if fnmatch(path_str, pattern) or fnmatch(path.name, pattern):
                return True
        return False

    def archive(self, source_dir: str, output_file: str) -> str:
        """
        Archive ``source_dir`` into ``output_file``.

        Args:
            source_dir: Directory to archive
            output_file: Path of the archive to create

        Returns:
            The archive path

        Raises:
            CompressionError: If archive creation fails
            BackupCancelled: If cancellation_check aborts the archive
        """
        source = Path(source_dir).expanduser()
        if not source.is_dir():
            raise CompressionError(f"Source directory does not exist: {source_dir}")

        try:
            if self.compression_format == 'zip':
                self._create_zip(source, output_file)
            else:
                self._create_tar(source, output_file)
        except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
            _remove_partial(output_file)
            raise CompressionError(f"Failed to archive {source_dir}: {e}") from e
        except BackupCancelled:
            _remove_partial(output_file)
            raise

        logger.info(f"Archived {source_dir} to {output_file} ({get_archive_size(output_file)} bytes)")
        return output_file

    def _check_cancelled(self):
        if self.cancellation_check:
            self.cancellation_check()

    def _create_zip(self, source: Path, archive_path: str):
        # Real paths of each walked directory and its ancestors
        chains = {str(source): {os.path.realpath(source)}}

        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for root, dirs, files in os.walk(source, followlinks=True):
                root_path = Path(root)
                chain = chains.pop(root)
                kept = []
                for name in dirs:
                    child = root_path / name
                    if self._should_exclude(child):
                        continue
                    real_child = os.path.realpath(child)
                    if real_child in chain:
                        logger.warning(f"Skipping {child}: symlink loop to {real_child}")
                        continue
                    chains[str(child)] = chain | {real_child}
                    kept.append(name)
                dirs[:] = kept

                for name in files:
                    self._check_cancelled()
                    item = root_path / name
                    if self._should_exclude(item):
                        continue
                    if not item.is_file():
                        logger.warning(f"Skipping {item}: not a regular file")
                        continue
                    zipf.write(item, item.relative_to(source.parent))

    def _create_tar(self, source: Path, archive_path: str):
        def exclude_filter(tarinfo):
            self._check_cancelled()
            if self._should_exclude(source.parent / tarinfo.name):
                return None
            return tarinfo

        with tarfile.open(archive_path, TAR_MODES[self.compression_format]) as tar:
            tar.add(source, arcname=source.name, recursive=True, filter=exclude_filter)


def _remove_partial(output_file: str):
    if os.path.exists(output_file):
        os.remove(output_file)


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}") from e
