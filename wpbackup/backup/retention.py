"""
Retention policy enforcement for snapshot prefixes.

Keeps the ``keep`` most recent snapshot prefixes in the bucket and deletes
every object under the older ones. Rotation is not transactional: objects
deleted before a failure stay deleted.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .storage import S3Storage

logger = logging.getLogger(__name__)

DELIMITER = '/'


@dataclass
class RotationResult:
    """Outcome of a rotation run."""
    prefixes: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    deleted_keys: List[str] = field(default_factory=list)


def select_expired_prefixes(prefixes: Sequence[str], keep: int) -> List[str]:
    """
    Select the prefixes that fall outside the retention count.

    Args:
        prefixes: Snapshot prefixes as reported by the store
        keep: Number of most recent prefixes to keep

    Returns:
        All prefixes except the ``keep`` most recent, oldest first

    Raises:
        ValueError: If keep is negative
    """
    if keep < 0:
        raise ValueError(f"Retention count must be non-negative, got {keep}")

    ordered = sorted(prefixes)
    if len(ordered) <= keep:
        return []
    return ordered[:len(ordered) - keep]


class RetentionEngine:
    """
    Deletes snapshot prefixes beyond the retention count.

    Prefixes and objects are processed one at a time; the first error aborts
    the rotation and is raised unchanged.
    """

    def __init__(self, storage: S3Storage, cancellation_check: Optional[Callable[[], None]] = None):
        self.storage = storage
        self.cancellation_check = cancellation_check

    def list_snapshots(self) -> List[str]:
        """Return the snapshot prefixes in the bucket, oldest first."""
        return sorted(self.storage.list('', DELIMITER).common_prefixes)

    def rotate(self, keep: int) -> RotationResult:
        """
        Enforce the retention count on the bucket.

        Args:
            keep: Number of most recent snapshot prefixes to keep

        Returns:
            RotationResult describing what was listed and deleted

        Raises:
            ValueError: If keep is negative
            ListingError: If a listing fails
            TransportError: If a delete fails
        """
        if keep < 0:
            raise ValueError(f"Retention count must be non-negative, got {keep}")

        result = RotationResult()
        result.prefixes = self.list_snapshots()
        result.expired = select_expired_prefixes(result.prefixes, keep)

        logger.info(
            f"Found {len(result.prefixes)} snapshots in {self.storage.url()}, "
            f"keeping {keep}, rotating out {len(result.expired)}"
        )

        for prefix in result.expired:
            for key in self._objects_under(prefix):
                if self.cancellation_check:
                    self.cancellation_check()
                logger.info(f"Delete object: {self.storage.url(key)}")
                self.storage.delete(key)
                result.deleted_keys.append(key)

        return result

    def _objects_under(self, prefix: str) -> List[str]:
        """
        List the keys stored under a snapshot prefix.

        Well-formed prefixes end with the delimiter and are listed recursively.
        Anything else is listed with the delimiter so only the keys reported
        directly under it are touched.
        """
        if prefix.endswith(DELIMITER):
            return self.storage.list(prefix, delimiter=None).keys

        logger.warning(f"Malformed snapshot prefix {prefix!r}, deleting only keys directly under it")
        return self.storage.list(prefix, DELIMITER).keys
