"""
Shared pytest fixtures for clickhouse-backup tests.

This module provides fixtures for:
- Configuration pointing at a temporary data directory
- A frozen shadow tree with hard-linked part files
- Backed up metadata definitions
- Mock fixtures for external services (S3, ClickHouse)
"""

import os
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from chbackup.config import Config, ClickHouseConfig, S3Config, BackupConfig
from chbackup.backup.clickhouse import ClickHouse
from chbackup.backup.storage import S3Storage


@pytest.fixture
def data_path(tmp_path):
    """Empty clickhouse data directory."""
    path = tmp_path / 'clickhouse'
    path.mkdir()
    return path


@pytest.fixture
def config(data_path):
    """
    Configuration for tests.

    Uses the temporary data directory and the 'test-bucket' bucket.
    """
    return Config(
        clickhouse=ClickHouseConfig(data_path=str(data_path)),
        s3=S3Config(
            access_key='test_access_key',
            secret_key='test_secret_key',
            bucket='test-bucket',
            region='us-east-1',
            path='backups'
        ),
        backup=BackupConfig(strategy='tree', backups_to_keep=0)
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def storage(mock_s3, config):
    """S3Storage bound to the moto bucket."""
    return S3Storage(config.s3)


def write_part(part_dir, files):
    part_dir.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        (part_dir / name).write_bytes(content)


@pytest.fixture
def shadow_tree(data_path):
    """
    Create a shadow directory as left by two FREEZE runs.

    Increment 2 hard-links every file of increment 1 and adds one new part:

        shadow/1/data/salesdb/orders/202401_1_1_0/{checksums.txt,data.bin}
        shadow/2/data/salesdb/orders/202401_1_1_0/...   (hard links)
        shadow/2/data/salesdb/orders/202402_2_2_0/{checksums.txt,data.bin}
    """
    shadow = data_path / 'shadow'
    first = shadow / '1' / 'data' / 'salesdb' / 'orders' / '202401_1_1_0'
    write_part(first, {'checksums.txt': b'checksums-1', 'data.bin': b'\x00\x01' * 512})

    second = shadow / '2' / 'data' / 'salesdb' / 'orders' / '202401_1_1_0'
    second.mkdir(parents=True)
    for name in ('checksums.txt', 'data.bin'):
        os.link(first / name, second / name)

    write_part(
        shadow / '2' / 'data' / 'salesdb' / 'orders' / '202402_2_2_0',
        {'checksums.txt': b'checksums-2', 'data.bin': b'\x02\x03' * 256}
    )
    (shadow / 'increment.txt').write_text('2')
    return shadow


@pytest.fixture
def metadata_tree(data_path):
    """Metadata directory with ATTACH definitions."""
    metadata = data_path / 'metadata'
    (metadata / 'salesdb').mkdir(parents=True)
    (metadata / 'system').mkdir()
    (metadata / 'salesdb' / 'orders.sql').write_text(
        "ATTACH TABLE orders\n(\n    `id` UInt64,\n    `day` Date\n)\n"
        "ENGINE = MergeTree\nPARTITION BY toYYYYMM(day)\nORDER BY id\n"
    )
    (metadata / 'system' / 'query_log.sql').write_text(
        "ATTACH TABLE query_log (`event_date` Date) ENGINE = MergeTree ORDER BY event_date\n"
    )
    return metadata


@pytest.fixture
def mock_clickhouse(data_path):
    """
    MagicMock ClickHouse client.

    get_data_path() returns the temporary data directory.
    """
    ch = MagicMock(spec=ClickHouse)
    ch.get_data_path.return_value = str(data_path)
    ch.get_tables.return_value = []
    ch.get_backup_tables.return_value = {}
    return ch


@pytest.fixture
def mock_storage():
    """MagicMock S3Storage with empty listings."""
    storage = MagicMock(spec=S3Storage)
    storage.list_objects.return_value = []
    return storage
