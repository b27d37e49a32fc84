"""
Error kinds raised by the backup pipeline.

Every failure is a BackupError so the command line has a single place to
report it. Underlying causes are chained with ``raise ... from``.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for backup pipeline failures."""
    pass


class ArtifactMissing(BackupError):
    """Raised when an expected artifact is not present in the staging directory."""

    def __init__(self, artifact: str, path: str):
        self.artifact = artifact
        self.path = path
        super().__init__(f"Artifact {artifact} not found: {path}")


class TransportError(BackupError):
    """Raised when an object store call fails."""

    def __init__(self, message: str, operation: str, key: Optional[str] = None):
        self.operation = operation
        self.key = key
        super().__init__(message)


class ListingError(BackupError):
    """Raised when prefix enumeration fails."""

    def __init__(self, message: str, prefix: str = ''):
        self.prefix = prefix
        super().__init__(message)


class ProducerError(BackupError):
    """Raised when the database dump or the file archive cannot be produced."""
    pass


class UploadFailed(BackupError):
    """Raised when one artifact of the manifest could not be uploaded."""

    def __init__(self, artifact: str, cause: Exception):
        self.artifact = artifact
        self.cause = cause
        super().__init__(f"Failed to upload {artifact}: {cause}")


class BackupCancelled(BackupError):
    """Raised when a run is cancelled before it completes."""
    pass


class RunLocked(BackupError):
    """Raised when another backup run already holds the run lock."""
    pass


class StageFailed(BackupError):
    """Wraps the error that terminated a pipeline stage."""

    def __init__(self, stage, cause: Exception):
        self.stage = stage
        self.cause = cause
        stage_name = getattr(stage, 'value', stage)
        super().__init__(f"{stage_name} failed: {cause}")


class CleanupFailed(BackupError):
    """Raised when the staging directory of a completed run cannot be removed."""

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to remove staging directory {path}: {cause}")
