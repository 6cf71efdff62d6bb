"""
Transfer strategies moving backup data between the data directory and S3.

- tree: mirror the metadata/ and shadow/ directories object by object
- archive: ship shadow/ and metadata/ as one hardlink-aware tar object
"""

import os
import logging
import tempfile
from typing import Dict, Optional, Type

from ..config import Config
from ..exceptions import BackupError, PreconditionError
from .archive import ArchiveError, tar_dirs, untar
from .retention import RetentionManager
from .storage import S3Storage, StorageError


logger = logging.getLogger(__name__)


class ByteCounter:
    """Write-only stream that keeps nothing but the number of bytes written."""

    def __init__(self):
        self.size = 0

    def write(self, data: bytes) -> int:
        self.size += len(data)
        return len(data)


class TransferStrategy:
    """Moves backup data to and from object storage."""

    name = ''

    def __init__(self, storage: S3Storage, config: Config):
        self.storage = storage
        self.config = config

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def upload(self, data_path: str):
        raise NotImplementedError

    def download(self, data_path: str, archive_name: Optional[str] = None):
        raise NotImplementedError


class TreeStrategy(TransferStrategy):
    name = 'tree'

    def upload(self, data_path: str):
        for directory in ('metadata', 'shadow'):
            logger.info(f"Upload {directory}")
            try:
                self.storage.upload_directory(os.path.join(data_path, directory), directory)
            except StorageError as e:
                raise BackupError(f"Can't upload {directory}: {e}") from e

    def download(self, data_path: str, archive_name: Optional[str] = None):
        if archive_name:
            logger.warning(f"Ignoring archive name {archive_name} with tree strategy")
        for directory in ('metadata', 'shadow'):
            logger.info(f"Download {directory}")
            try:
                self.storage.download_tree(directory, os.path.join(data_path, 'backup', directory))
            except StorageError as e:
                raise BackupError(f"Can't download {directory} from s3: {e}") from e


class ArchiveStrategy(TransferStrategy):
    name = 'archive'

    @staticmethod
    def _archive(fileobj, data_path: str) -> Dict[str, int]:
        logger.info("Archive data")
        try:
            return tar_dirs(
                fileobj,
                os.path.join(data_path, 'shadow'),
                os.path.join(data_path, 'metadata')
            )
        except ArchiveError as e:
            raise BackupError(f"Error archiving data: {e}") from e

    def upload(self, data_path: str):
        if self.dry_run:
            sink = ByteCounter()
            stats = self._archive(sink, data_path)
            logger.info(
                f"[dry-run] would upload archive ({stats['files']} files, "
                f"{stats['links']} hard links, {sink.size / 1024 / 1024:.2f} MB)"
            )
        else:
            self._upload_archive(data_path)

        try:
            RetentionManager(self.storage).prune(self.config.backup.backups_to_keep)
        except StorageError as e:
            raise BackupError(f"Can't remove old backups: {e}") from e

    def _upload_archive(self, data_path: str):
        with tempfile.NamedTemporaryFile(prefix='clickhouse-backup-', suffix='.tar', delete=False) as f:
            archive_path = f.name

        try:
            with open(archive_path, 'wb') as f:
                stats = self._archive(f, data_path)

            logger.info(
                f"Upload archive {os.path.basename(archive_path)} "
                f"({stats['files']} files, {stats['links']} hard links, "
                f"{os.path.getsize(archive_path) / 1024 / 1024:.2f} MB)"
            )
            try:
                self.storage.upload_file(archive_path, os.path.basename(archive_path))
            except StorageError as e:
                raise BackupError(f"Can't upload archive to s3: {e}") from e
        finally:
            os.remove(archive_path)

    def download(self, data_path: str, archive_name: Optional[str] = None):
        if not archive_name:
            raise PreconditionError("An archive name is required to download with the archive strategy")

        backup_dir = os.path.join(data_path, 'backup')
        try:
            self.storage.download_tree('metadata', os.path.join(backup_dir, 'metadata'))
        except StorageError as e:
            raise BackupError(f"Can't download metadata from s3: {e}") from e

        try:
            archive_path = self.storage.download_archive(archive_name, backup_dir)
        except StorageError as e:
            raise BackupError(f"Error downloading archive {archive_name} from s3: {e}") from e

        if self.dry_run:
            logger.info(f"[dry-run] would extract {archive_path} into {backup_dir}")
            return

        try:
            with open(archive_path, 'rb') as f:
                untar(f, backup_dir)
        except (ArchiveError, OSError) as e:
            raise BackupError(f"Error extracting archive {archive_name}: {e}") from e
        finally:
            if os.path.exists(archive_path):
                os.remove(archive_path)


STRATEGIES: Dict[str, Type[TransferStrategy]] = {
    TreeStrategy.name: TreeStrategy,
    ArchiveStrategy.name: ArchiveStrategy,
}


def get_strategy(name: str, storage: S3Storage, config: Config) -> TransferStrategy:
    """
    Create the transfer strategy registered under name.

    Raises:
        PreconditionError: If no strategy has that name
    """
    try:
        strategy_class = STRATEGIES[name]
    except KeyError:
        raise PreconditionError(
            f"Unsupported backup strategy: {name}. Valid options: {list(STRATEGIES)}"
        )
    return strategy_class(storage, config)
