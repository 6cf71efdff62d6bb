"""
ClickHouse client used by the backup workflow.

Wraps clickhouse-driver with the handful of statements the backup needs
and knows the on-disk layout of the data directory:

    <data_path>/shadow/                          FREEZE output
    <data_path>/data/<db>/<table>/detached/      parts waiting for ATTACH
    <data_path>/backup/shadow/<increment>/data/<db>/<table>/<part>
"""

import os
import shutil
import logging
from typing import Dict, List, Optional
from urllib.parse import unquote

from clickhouse_driver import Client
from clickhouse_driver.errors import Error as DriverError

from ..config import ClickHouseConfig
from ..models import BackupPartition, BackupTable, RestoreTable, Table


logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10
SEND_RECEIVE_TIMEOUT = 300

# Counter file FREEZE keeps next to the numbered increments
INCREMENT_FILE = 'increment.txt'


class ClickHouseError(Exception):
    """Raised when a ClickHouse operation fails."""
    pass


def quote_identifier(name: str) -> str:
    return '`' + name.replace('\\', '\\\\').replace('`', '\\`') + '`'


def quote_string(value: str) -> str:
    return "'" + value.replace('\\', '\\\\').replace("'", "\\'") + "'"


def escape_for_file_name(name: str) -> str:
    """Directory name clickhouse uses on disk for a database or table."""
    return ''.join(
        c if c.isascii() and (c.isalnum() or c == '_') else ''.join(f'%{b:02X}' for b in c.encode('utf-8'))
        for c in name
    )


class ClickHouse:
    """
    Handler for ClickHouse connections and data directory operations.
    """

    def __init__(self, config: ClickHouseConfig, dry_run: bool = False):
        self.config = config
        self.dry_run = dry_run
        self.client: Optional[Client] = None
        self._data_path: Optional[str] = config.data_path or None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def connect(self):
        """
        Open a connection and check that the server answers.

        Raises:
            ClickHouseError: If the server is unreachable
        """
        self.client = Client(
            host=self.config.host,
            port=self.config.port,
            user=self.config.username,
            password=self.config.password,
            connect_timeout=CONNECT_TIMEOUT,
            send_receive_timeout=SEND_RECEIVE_TIMEOUT
        )
        try:
            self.client.execute('SELECT 1')
        except (DriverError, OSError, EOFError) as e:
            self.client = None
            raise ClickHouseError(
                f"Can't connect to clickhouse at {self.config.host}:{self.config.port}: {e}"
            ) from e
        logger.debug(f"Connected to clickhouse at {self.config.host}:{self.config.port}")

    def close(self):
        if self.client is not None:
            self.client.disconnect()
            self.client = None

    def _query(self, query: str) -> list:
        if self.client is None:
            raise ClickHouseError("Not connected to clickhouse")
        try:
            return self.client.execute(query)
        except (DriverError, OSError, EOFError) as e:
            raise ClickHouseError(f"Query failed: {query.strip()[:200]}: {e}") from e

    def _execute(self, query: str):
        """Run a mutating statement, or only log it in dry-run."""
        if self.dry_run:
            logger.info(f"[dry-run] {query.strip()}")
            return
        logger.debug(query.strip())
        self._query(query)

    def get_data_path(self) -> str:
        """
        Find the clickhouse data directory.

        Uses clickhouse.data_path from the configuration when set.

        Raises:
            ClickHouseError: If the path cannot be determined
        """
        if self._data_path:
            return self._data_path

        rows = self._query(
            "SELECT metadata_path FROM system.tables "
            "WHERE database = 'system' AND metadata_path != '' LIMIT 1"
        )
        if not rows or '/metadata/' not in rows[0][0]:
            raise ClickHouseError(
                "Can't get data path from clickhouse, set clickhouse.data_path in config"
            )
        self._data_path = rows[0][0].split('/metadata/')[0]
        return self._data_path

    def get_tables(self) -> List[Table]:
        """List MergeTree family tables, ordered by database and name."""
        rows = self._query(
            "SELECT database, name FROM system.tables "
            "WHERE is_temporary = 0 AND engine LIKE '%MergeTree' "
            "ORDER BY database, name"
        )
        return [Table(database=database, name=name) for database, name in rows]

    def get_backup_tables(self) -> Dict[str, BackupTable]:
        """
        Scan the downloaded shadow tree for frozen parts.

        Returns:
            BackupTable per "db.table-increment", ordered by database, table
            and increment; partitions ordered by part name

        Raises:
            ClickHouseError: If the backup shadow directory cannot be read
        """
        backup_shadow = os.path.join(self.get_data_path(), 'backup', 'shadow')
        try:
            entries = os.listdir(backup_shadow)
        except OSError as e:
            raise ClickHouseError(f"Can't read backup shadow directory {backup_shadow}: {e}") from e

        increments = []
        for entry in entries:
            if entry.isdigit():
                increments.append((int(entry), entry))
            elif entry != INCREMENT_FILE:
                logger.warning(f"Skipping unexpected entry in {backup_shadow}: {entry}")

        tables = {}
        for increment, increment_dir in sorted(increments):
            data_dir = os.path.join(backup_shadow, increment_dir, 'data')
            if not os.path.isdir(data_dir):
                continue

            for database in sorted(os.listdir(data_dir)):
                database_dir = os.path.join(data_dir, database)
                if not os.path.isdir(database_dir):
                    continue
                for table_name in sorted(os.listdir(database_dir)):
                    table_dir = os.path.join(database_dir, table_name)
                    if not os.path.isdir(table_dir):
                        continue
                    partitions = [
                        BackupPartition(name=part, path=os.path.join(table_dir, part))
                        for part in sorted(os.listdir(table_dir))
                        if os.path.isdir(os.path.join(table_dir, part))
                    ]
                    if not partitions:
                        continue
                    table = BackupTable(
                        database=unquote(database),
                        name=unquote(table_name),
                        increment=increment,
                        partitions=partitions
                    )
                    tables[table.key] = table

        return dict(sorted(
            tables.items(),
            key=lambda item: (item[1].database, item[1].name, item[1].increment)
        ))

    def freeze_table(self, table: Table):
        """Snapshot a table into the shadow directory."""
        logger.info(f"Freeze {table.full_name}")
        self._execute(
            f"ALTER TABLE {quote_identifier(table.database)}.{quote_identifier(table.name)} FREEZE"
        )

    def create_database(self, database: str):
        self._execute(f"CREATE DATABASE IF NOT EXISTS {quote_identifier(database)}")

    def create_table(self, table: RestoreTable):
        logger.info(f"Create table {table.full_name}")
        self._execute(table.query)

    def detached_path(self, table: BackupTable) -> str:
        return os.path.join(
            self.get_data_path(), 'data',
            escape_for_file_name(table.database), escape_for_file_name(table.name), 'detached'
        )

    def copy_data(self, table: BackupTable, move: bool = False):
        """
        Put the table's backed up parts into its detached directory.

        Args:
            table: Backup snapshot to restore
            move: Move parts instead of copying them (less disk, destroys the backup copy)

        Raises:
            ClickHouseError: If any part cannot be copied
        """
        detached = self.detached_path(table)
        verb = 'Move' if move else 'Copy'
        logger.info(f"{verb} {len(table.partitions)} parts of {table.key} to {detached}")

        for partition in table.partitions:
            target = os.path.join(detached, partition.name)
            if self.dry_run:
                logger.info(f"[dry-run] {verb.lower()} {partition.path} -> {target}")
                continue
            try:
                os.makedirs(detached, exist_ok=True)
                if move:
                    shutil.move(partition.path, target)
                else:
                    shutil.copytree(partition.path, target)
            except (OSError, shutil.Error) as e:
                raise ClickHouseError(
                    f"Can't {verb.lower()} {partition.path} to {target}: {e}"
                ) from e

    def attach_partitions(self, table: BackupTable):
        """Attach every detached part of the snapshot."""
        name = f"{quote_identifier(table.database)}.{quote_identifier(table.name)}"
        for partition in table.partitions:
            self._execute(f"ALTER TABLE {name} ATTACH PART {quote_string(partition.name)}")
