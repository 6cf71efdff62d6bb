"""
Retention policy enforcement for stored backups.

Keeps the newest N archive objects under the backup prefix and deletes the
rest in one batch request.
"""

import logging
from typing import List, Sequence

from ..models import BackupObject
from .storage import S3Storage


logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = '.tar'


def select_expired(objects: Sequence[BackupObject], keep: int) -> List[BackupObject]:
    """
    Pick the objects that exceed the retention count.

    Args:
        objects: Stored backup objects
        keep: Number of newest objects to keep; below 1 disables retention

    Returns:
        Oldest objects beyond the newest `keep`, oldest first
    """
    if keep < 1:
        return []

    excess = len(objects) - keep
    if excess <= 0:
        return []

    return sorted(objects, key=lambda obj: obj.last_modified)[:excess]


class RetentionManager:
    """
    Prunes old archive backups from object storage.
    """

    def __init__(self, storage: S3Storage):
        self.storage = storage

    def list_backups(self, prefix: str = '') -> List[BackupObject]:
        """Archive objects stored directly under prefix."""
        return [
            obj for obj in self.storage.list_objects(prefix, recursive=False)
            if obj.key.endswith(ARCHIVE_SUFFIX)
        ]

    def prune(self, keep: int, prefix: str = '') -> List[BackupObject]:
        """
        Delete the oldest backups beyond `keep`.

        Returns:
            Deleted (or, in dry-run, would-be deleted) objects

        Raises:
            StorageError: If listing or deletion fails
        """
        if keep < 1:
            logger.info("Cleaning old backups is not enabled")
            return []

        expired = select_expired(self.list_backups(prefix), keep)
        if not expired:
            logger.info(f"No backups beyond the newest {keep} to delete")
            return []

        logger.info(f"Delete {len(expired)} old backups from s3")
        for obj in expired:
            logger.debug(f"Expired backup: {obj.key} ({obj.last_modified.isoformat()})")
        self.storage.delete_objects(expired)
        return expired
