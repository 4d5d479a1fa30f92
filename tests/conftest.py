"""
Shared pytest fixtures for omnibackup tests.

This module provides fixtures for:
- Run logger capturing log entries
- Source/target configurations
- Mock fixtures for external services (S3, SSH, scheduler)
- Temporary file fixtures
"""

import logging
import sqlite3
from contextlib import closing
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from omnibackup.backup.definitions import SourceConfig, StrategyConfig, TargetConfig
from omnibackup.utils.logsink import RunLogger


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so no test can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def run_logger():
    """
    RunLogger with every severity enabled.

    Messages are kept in ``run_logger.entries`` for assertions.
    """
    return RunLogger(logging.getLogger('omnibackup.tests'))


@pytest.fixture
def make_source_config():
    """Factory for SourceConfig with sensible defaults."""
    def _make(provider='file', name='source', source='', include=None, exclude=None):
        return SourceConfig(provider=provider, name=name, source=source, include=include, exclude=exclude)
    return _make


@pytest.fixture
def make_target_config():
    """Factory for TargetConfig with a days strategy by default."""
    def _make(provider='directory', name='target', target='', strategy='days', revisions='3'):
        strategy_config = StrategyConfig(strategy, revisions) if strategy else None
        return TargetConfig(provider=provider, name=name, target=target, strategy=strategy_config)
    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('omnibackup.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()

    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data_dir


@pytest.fixture
def sqlite_databases(tmp_path):
    """
    Create two SQLite databases and one unrelated file.

    Creates:
    - dbs/app.db (table items with 3 rows)
    - dbs/audit.db (table events with 1 row)
    - dbs/readme.txt
    """
    db_dir = tmp_path / 'dbs'
    db_dir.mkdir()

    with closing(sqlite3.connect(db_dir / 'app.db')) as conn:
        conn.execute('CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)')
        conn.executemany('INSERT INTO items (name) VALUES (?)', [('a',), ('b',), ('c',)])
        conn.commit()

    with closing(sqlite3.connect(db_dir / 'audit.db')) as conn:
        conn.execute('CREATE TABLE events (id INTEGER PRIMARY KEY, kind TEXT)')
        conn.execute("INSERT INTO events (kind) VALUES ('login')")
        conn.commit()

    (db_dir / 'readme.txt').write_text('not a database')

    return db_dir


@pytest.fixture
def archive_files(tmp_path):
    """Two small archive files as produced by the archiving phase."""
    archive_dir = tmp_path / 'archives'
    archive_dir.mkdir()

    first = archive_dir / 'db_app.sql_20240110020000.zip'
    second = archive_dir / 'files_data_20240110020000.zip'
    first.write_bytes(b'first archive')
    second.write_bytes(b'second archive')

    return [str(first), str(second)]


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import omnibackup.scheduler as scheduler_module

    scheduler_module.scheduler = None

    with patch('omnibackup.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
