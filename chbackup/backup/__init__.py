"""
Backup module for clickhouse-backup.

This module handles the core backup functionality including:
- Hardlink-aware archiving of shadow directories
- Table selection for freeze and restore
- ClickHouse and S3 clients
- Transfer strategies (tree and archive)
- Workflow orchestration
- Retention policy enforcement
"""

from .archive import tar_dirs, untar, IdentityTracker, ArchiveError
from .selection import select_for_freeze, select_for_restore
from .clickhouse import ClickHouse, ClickHouseError
from .storage import S3Storage, StorageError
from .transfer import TreeStrategy, ArchiveStrategy, get_strategy
from .retention import RetentionManager
from .executor import BackupWorkflow

__all__ = [
    'tar_dirs',
    'untar',
    'IdentityTracker',
    'ArchiveError',
    'select_for_freeze',
    'select_for_restore',
    'ClickHouse',
    'ClickHouseError',
    'S3Storage',
    'StorageError',
    'TreeStrategy',
    'ArchiveStrategy',
    'get_strategy',
    'RetentionManager',
    'BackupWorkflow'
]
