"""
Backup workflow - orchestrates the clickhouse-backup commands.

Commands:
1. freeze         snapshot tables into shadow/ (fail-fast)
2. upload         ship metadata/ and shadow/ with the configured strategy
3. download       fetch a backup into backup/
4. create-tables  replay backed up table definitions (best-effort)
5. restore        copy parts to detached/ and ATTACH them (fail-fast)
6. clean          empty shadow/
"""

import os
import re
import shutil
import logging
from contextlib import contextmanager
from typing import Callable, Collection, Iterator, List, Optional, Sequence
from urllib.parse import unquote

from ..config import Config
from ..exceptions import BackupError, PreconditionError, RestoreError
from ..models import BackupTable, RestoreTable, Table, TableCreationResult
from .clickhouse import ClickHouse, ClickHouseError, quote_identifier
from .selection import select_for_freeze, select_for_restore, unique_tables
from .storage import S3Storage
from .transfer import get_strategy


logger = logging.getLogger(__name__)

SYSTEM_DATABASE = 'system'

_ATTACH_RE = re.compile(
    r'^\s*ATTACH\s+'
    r'(?P<kind>(?:MATERIALIZED\s+|LIVE\s+)?VIEW|TABLE|DICTIONARY)\s+'
    r'(?P<name>`(?:[^`\\]|\\.)+`|"(?:[^"\\]|\\.)+"|\w+)'
    r'(?P<rest>.*)\Z',
    re.IGNORECASE | re.DOTALL
)
_DISTRIBUTED_RE = re.compile(r'ENGINE\s*=\s*Distributed\b', re.IGNORECASE)


class TableDefinitionError(BackupError):
    """Raised when a backed up table definition cannot be turned into DDL."""
    pass


def build_restore_table(database: str, table_name: str, definition: str) -> RestoreTable:
    """
    Rewrite an ATTACH definition from the metadata directory into CREATE.

    Unqualified names are qualified with the database; the "_" placeholder
    used by Atomic databases is replaced by the table name.

    Raises:
        TableDefinitionError: If the definition is not an ATTACH statement
    """
    match = _ATTACH_RE.match(definition)
    if not match:
        raise TableDefinitionError(
            f"Definition of {database}.{table_name} is not an ATTACH statement"
        )

    name, rest = match.group('name'), match.group('rest')
    if not rest.lstrip().startswith('.'):
        if name == '_':
            name = quote_identifier(table_name)
        name = f"{quote_identifier(database)}.{name}"

    query = f"CREATE {match.group('kind')} {name}{rest}"
    return RestoreTable(database=database, name=table_name, query=query)


def is_distributed(table: RestoreTable) -> bool:
    return bool(_DISTRIBUTED_RE.search(table.query))


def log_creation_results(results: Sequence[TableCreationResult]):
    """Log the outcome of a create-tables run."""
    failed = [result for result in results if not result.ok]
    for result in failed:
        logger.error(f"Table creation failed for {result.table.full_name}: {result.error}")
    logger.info(f"Created {len(results) - len(failed)} tables, {len(failed)} failed")


class BackupWorkflow:
    """
    Runs clickhouse-backup commands against one configuration.
    """

    def __init__(
        self,
        config: Config,
        clickhouse_factory: Callable[..., ClickHouse] = ClickHouse,
        storage_factory: Callable[..., S3Storage] = S3Storage
    ):
        """
        Initialize backup workflow.

        Args:
            config: Configuration of this invocation
            clickhouse_factory: Builds the database client from (config.clickhouse, dry_run)
            storage_factory: Builds the storage client from (config.s3, dry_run)
        """
        self.config = config
        self.clickhouse_factory = clickhouse_factory
        self.storage_factory = storage_factory

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @contextmanager
    def _clickhouse(self) -> Iterator[ClickHouse]:
        ch = self.clickhouse_factory(self.config.clickhouse, dry_run=self.dry_run)
        ch.connect()
        try:
            yield ch
        finally:
            ch.close()

    def _storage(self) -> S3Storage:
        storage = self.storage_factory(self.config.s3, dry_run=self.dry_run)
        storage.connect()
        return storage

    def resolve_data_path(self) -> str:
        """clickhouse.data_path from the config, else asked from the server."""
        if self.config.clickhouse.data_path:
            return self.config.clickhouse.data_path
        with self._clickhouse() as ch:
            data_path = ch.get_data_path()
        logger.info(f"Found clickhouse data path: {data_path}")
        return data_path

    def tables(self) -> List[Table]:
        with self._clickhouse() as ch:
            return ch.get_tables()

    def freeze(self, patterns: Sequence[str] = ()) -> List[Table]:
        """
        Freeze every table matching patterns.

        Returns:
            Frozen tables

        Raises:
            PreconditionError: If shadow/ is not empty or cannot be read
            BackupError: On the first table that fails to freeze
        """
        with self._clickhouse() as ch:
            shadow_path = os.path.join(ch.get_data_path(), 'shadow')
            self._check_shadow_empty(shadow_path)

            selected = unique_tables(select_for_freeze(ch.get_tables(), patterns))
            if not selected:
                logger.info("There are no tables in clickhouse to freeze, create something first")
                return []

            for table in selected:
                try:
                    ch.freeze_table(table)
                except ClickHouseError as e:
                    raise BackupError(f"Can't freeze {table.full_name}: {e}") from e

        logger.info(f"Froze {len(selected)} tables")
        return selected

    @staticmethod
    def _check_shadow_empty(shadow_path: str):
        try:
            entries = os.listdir(shadow_path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise PreconditionError(f"Can't read {shadow_path} directory: {e}") from e
        if entries:
            raise PreconditionError(f"{shadow_path} is not empty, won't execute freeze")

    def create_tables(self) -> List[TableCreationResult]:
        """
        Recreate databases and tables from backup/metadata.

        Distributed tables are created after every other table. A table that
        fails does not stop the others.

        Returns:
            One result per table definition found

        Raises:
            BackupError: If the metadata directory cannot be read
        """
        with self._clickhouse() as ch:
            metadata_path = os.path.join(ch.get_data_path(), 'backup', 'metadata')
            logger.info(f"Will analyze restored metadata from here: {metadata_path}")

            try:
                database_dirs = sorted(os.listdir(metadata_path))
            except OSError as e:
                raise BackupError(f"Can't read metadata directory {metadata_path}: {e}") from e

            results = []
            distributed = []
            for database_dir in database_dirs:
                database_path = os.path.join(metadata_path, database_dir)
                database = unquote(database_dir)
                if not os.path.isdir(database_path) or database == SYSTEM_DATABASE:
                    continue

                logger.info(f"Found metadata files for database: {database}")
                try:
                    ch.create_database(database)
                except ClickHouseError as e:
                    logger.warning(f"Can't create database {database}: {e}")

                for restore_table, error in self._read_definitions(database, database_path):
                    if error is not None:
                        results.append(TableCreationResult(restore_table, error))
                    elif is_distributed(restore_table):
                        logger.info(f"{restore_table.full_name} is a distributed table, saving for later")
                        distributed.append(restore_table)
                    else:
                        results.append(self._create_table(ch, restore_table))

            if distributed:
                logger.info("Creating distributed tables")
            for restore_table in distributed:
                results.append(self._create_table(ch, restore_table))

        log_creation_results(results)
        return results

    @staticmethod
    def _read_definitions(database: str, database_path: str):
        try:
            filenames = sorted(f for f in os.listdir(database_path) if f.endswith('.sql'))
        except OSError as e:
            raise BackupError(f"Can't read database directory {database_path}: {e}") from e

        for filename in filenames:
            table_name = unquote(filename[:-len('.sql')])
            table_path = os.path.join(database_path, filename)
            try:
                with open(table_path, 'r', encoding='utf-8') as f:
                    definition = f.read()
                yield build_restore_table(database, table_name, definition), None
            except (OSError, UnicodeDecodeError, TableDefinitionError) as e:
                yield RestoreTable(database=database, name=table_name, query=''), e

    @staticmethod
    def _create_table(ch: ClickHouse, table: RestoreTable) -> TableCreationResult:
        try:
            ch.create_table(table)
        except ClickHouseError as e:
            return TableCreationResult(table, e)
        return TableCreationResult(table)

    def restore(
        self,
        patterns: Sequence[str] = (),
        increments: Collection[int] = (),
        move: bool = False
    ) -> List[BackupTable]:
        """
        Copy backed up parts into detached/ and attach them.

        Args:
            patterns: Glob patterns for "database.table"
            increments: Increments to restore; empty restores all
            move: Move parts out of the backup instead of copying

        Returns:
            Restored backup tables

        Raises:
            RestoreError: On the first table that fails to copy or attach
        """
        with self._clickhouse() as ch:
            selected = select_for_restore(ch.get_backup_tables(), patterns, increments)
            if not selected:
                logger.info("Backup doesn't have tables to restore, nothing to do")
                return []

            for table in selected:
                try:
                    ch.copy_data(table, move)
                except ClickHouseError as e:
                    raise RestoreError(
                        f"Can't restore {table.full_name} increment {table.increment}: {e}", table
                    ) from e
                try:
                    ch.attach_partitions(table)
                except ClickHouseError as e:
                    raise RestoreError(
                        f"Can't attach partitions for table {table.full_name} "
                        f"increment {table.increment}: {e}", table
                    ) from e

        logger.info(f"Restored {len(selected)} tables")
        return selected

    def upload(self):
        """
        Upload metadata/ and shadow/ using the configured strategy.

        Raises:
            StorageError: If S3 is unreachable
            BackupError: If the transfer fails
        """
        data_path = self.resolve_data_path()
        strategy = get_strategy(self.config.backup.strategy, self._storage(), self.config)
        logger.info(f"Upload with {strategy.name} strategy from {data_path}")
        strategy.upload(data_path)

    def download(self, archive_name: Optional[str] = None):
        """
        Download a backup into backup/.

        Raises:
            PreconditionError: If the archive strategy is used without archive_name
            StorageError: If S3 is unreachable
            BackupError: If the transfer fails
        """
        if self.config.backup.strategy == 'archive' and not archive_name:
            raise PreconditionError("An archive name is required to download with the archive strategy")

        data_path = self.resolve_data_path()
        strategy = get_strategy(self.config.backup.strategy, self._storage(), self.config)
        logger.info(f"Download with {strategy.name} strategy into {data_path}")
        strategy.download(data_path, archive_name)

    def clean(self):
        """Remove everything inside shadow/."""
        shadow_path = os.path.join(self.resolve_data_path(), 'shadow')
        if not os.path.exists(shadow_path):
            logger.info(f"{shadow_path} directory does not exist, nothing to do")
            return

        logger.info(f"Remove contents from directory {shadow_path}")
        if self.dry_run:
            logger.info(f"[dry-run] would remove contents of {shadow_path}")
            return

        try:
            with os.scandir(shadow_path) as it:
                for entry in it:
                    if entry.is_dir(follow_symlinks=False):
                        shutil.rmtree(entry.path)
                    else:
                        os.remove(entry.path)
        except OSError as e:
            raise BackupError(f"Can't remove contents from directory {shadow_path}: {e}") from e
