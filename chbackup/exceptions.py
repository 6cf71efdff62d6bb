"""Workflow level exceptions for clickhouse-backup."""


class BackupError(Exception):
    """Raised when a backup or restore command fails."""
    pass


class PreconditionError(BackupError):
    """Raised before any mutation when a command cannot safely start."""
    pass


class RestoreError(BackupError):
    """Raised when restoring a table's data fails."""

    def __init__(self, message: str, table=None):
        super().__init__(message)
        self.table = table
