"""
Upload of a snapshot's artifacts to the object store.

Artifacts are uploaded one at a time in manifest order. A failure stops the
remaining uploads and leaves the already uploaded artifacts in place.
"""

import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .compression import archive_extension
from .errors import ArtifactMissing, TransportError, UploadFailed
from .storage import S3Storage

logger = logging.getLogger(__name__)

DATABASE_DUMP = 'database-dump'
FILE_ARCHIVE = 'file-archive'


@dataclass(frozen=True)
class Artifact:
    """A named file every snapshot contains."""
    name: str
    filename: str


def build_manifest(site_name: str = 'wordpress', compression_format: str = 'zip') -> Tuple[Artifact, ...]:
    """
    Build the artifact manifest for a site.

    Args:
        site_name: Base name of the artifact files
        compression_format: Archive format, selects the archive extension

    Returns:
        Artifacts in upload order: database dump first, then the file archive
    """
    return (
        Artifact(DATABASE_DUMP, f"{site_name}.sql"),
        Artifact(FILE_ARCHIVE, f"{site_name}.{archive_extension(compression_format)}"),
    )


def snapshot_key(snapshot_id: str, artifact: Artifact) -> str:
    return f"{snapshot_id}/{artifact.filename}"


class Uploader:
    """Uploads the manifest from a staging directory under a snapshot prefix."""

    def __init__(
        self,
        storage: S3Storage,
        manifest: Sequence[Artifact],
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        self.storage = storage
        self.manifest = tuple(manifest)
        self.cancellation_check = cancellation_check

    def upload(self, staging_dir: str, snapshot_id: str) -> List[str]:
        """
        Upload every artifact of the manifest.

        Args:
            staging_dir: Directory holding the artifact files
            snapshot_id: Snapshot prefix the artifacts are stored under

        Returns:
            Keys uploaded, in manifest order

        Raises:
            ArtifactMissing: If an artifact file is absent
            UploadFailed: If the object store rejects an artifact
        """
        uploaded = []

        for artifact in self.manifest:
            if self.cancellation_check:
                self.cancellation_check()

            path = os.path.join(staging_dir, artifact.filename)
            key = snapshot_key(snapshot_id, artifact)

            try:
                f = open(path, 'rb')
            except FileNotFoundError as e:
                raise ArtifactMissing(artifact.name, path) from e

            with f:
                size = os.fstat(f.fileno()).st_size
                logger.info(f"Uploading {artifact.name} to {self.storage.url(key)} ({size} bytes)")
                try:
                    self.storage.put(key, f, size=size, cancellation_check=self.cancellation_check)
                except TransportError as e:
                    raise UploadFailed(artifact.name, e) from e

            uploaded.append(key)

        return uploaded
