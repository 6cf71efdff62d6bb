from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class Table:
    """Live table in the source database"""
    database: str
    name: str

    @property
    def full_name(self) -> str:
        return f'{self.database}.{self.name}'


@dataclass(frozen=True)
class BackupPartition:
    """One frozen part directory inside the backup shadow tree"""
    name: str
    path: str


@dataclass
class BackupTable:
    """One freeze snapshot (increment) of a table"""
    database: str
    name: str
    increment: int
    partitions: List[BackupPartition] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f'{self.database}.{self.name}'

    @property
    def key(self) -> str:
        return f'{self.full_name}-{self.increment}'


@dataclass(frozen=True)
class RestoreTable:
    """CREATE statement rebuilt from a backed up ATTACH definition"""
    database: str
    name: str
    query: str

    @property
    def full_name(self) -> str:
        return f'{self.database}.{self.name}'


@dataclass
class TableCreationResult:
    """Outcome of recreating one table definition"""
    table: RestoreTable
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class BackupObject:
    """Object stored in cold storage"""
    key: str
    last_modified: datetime
    size: int = 0
    etag: str = ''
