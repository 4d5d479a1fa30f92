"""
Database source providers.

Supports:
- MsSqlSource: server-side BACKUP DATABASE per online database
- MySqlSource: mysqldump per database
- PostgreSqlSource: pg_dump (tar format) per database
- OracleSource: RMAN full/archive/control backup of the instance
- Db2Source: db2 BACKUP DATABASE per included database
- SqliteSource: online backup API per database file

Server databases are configured with a connection string such as
``host=db1;port=5432;user=backup;password=secret;bin=/usr/lib/postgresql/16/bin``.
"""

import fnmatch
import os
import sqlite3
import subprocess
from contextlib import closing
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from omnibackup.utils.connection import ConnectionString
from omnibackup.utils.logsink import RunLogger
from .definitions import SourceConfig
from .models import BackupArtifact
from .sources import SourceProvider


DEFAULT_TIMEOUT = 120


class DatabaseSource(SourceProvider):
    """
    Base class for database servers.

    Subclasses define how databases are enumerated (a query through
    SQLAlchemy) and how each one is dumped (usually an external binary).
    """

    # Name of the dump binary, resolved against ``bin`` or PATH
    dump_binary_name: Optional[str] = None
    # SQLAlchemy driver used for enumeration queries
    drivername: Optional[str] = None
    # Database to connect to for enumeration
    default_database: Optional[str] = None

    def __init__(self, config: SourceConfig, logger: RunLogger):
        super().__init__(config, logger)
        self.connection = ConnectionString(config.source)
        self.dump_binary = self._resolve_dump_binary()

    @property
    def host(self) -> Optional[str]:
        return self.connection.get('host')

    @property
    def port(self) -> Optional[str]:
        return self.connection.get('port')

    @property
    def user(self) -> Optional[str]:
        return self.connection.get('user')

    @property
    def password(self) -> Optional[str]:
        return self.connection.get('password')

    @property
    def bin(self) -> Optional[str]:
        return self.connection.get('bin')

    @property
    def timeout(self) -> int:
        return self.connection.get_int('timeout', DEFAULT_TIMEOUT)

    def _resolve_dump_binary(self) -> Optional[str]:
        name = self.dump_binary_name
        if not name:
            return None
        if os.name == 'nt':
            name += '.exe'
        # Without bin the binary is expected on PATH
        if self.bin:
            return os.path.join(self.bin, name)
        return name

    # Enumeration

    def connect_args(self) -> Dict[str, object]:
        return {'connect_timeout': self.timeout}

    def credentials(self) -> Tuple[Optional[str], Optional[str]]:
        """User and password sent when connecting; (None, None) for trusted connections."""
        return self.user or None, self.password or None

    def engine_url(self) -> URL:
        port = self.connection.get_int('port', 0) or None
        username, password = self.credentials()
        return URL.create(
            self.drivername,
            username=username,
            password=password,
            host=self.host or None,
            port=port,
            database=self.default_database
        )

    def create_engine(self) -> Engine:
        return create_engine(self.engine_url(), connect_args=self.connect_args(), poolclass=NullPool)

    def query_names(self, sql: str) -> Optional[List[str]]:
        """
        Run a query returning one name per row.

        Args:
            sql: Query text

        Returns:
            First column of every row, or None if the server could not be queried
        """
        engine = None
        try:
            engine = self.create_engine()
            with engine.connect() as conn:
                rows = conn.execute(text(sql)).fetchall()
            return [row[0] for row in rows]
        except (SQLAlchemyError, ImportError) as e:
            self.logger.error(self.name, 'Could not connect to database. Error: %s', e)
            return None
        finally:
            if engine is not None:
                engine.dispose()

    # Dumping

    def run_dump(self, args: Sequence[str], output_path: str, output_to_file: bool,
                 env: Optional[Dict[str, str]] = None) -> bool:
        """
        Execute the dump binary.

        Args:
            args: Arguments passed to the binary
            output_path: Backup file to create
            output_to_file: If True, stdout is written to output_path; otherwise
                the binary writes the backup itself and stdout is logged
            env: Extra environment variables for the process

        Returns:
            True if the binary exited with status 0
        """
        if self.dump_binary is None:
            return False

        if os.path.isabs(self.dump_binary) and not os.path.isfile(self.dump_binary):
            self.logger.error(
                self.name,
                'Could not access binary for creating backups at path %s.',
                self.dump_binary
            )
            return False

        process_env = None
        if env:
            process_env = os.environ.copy()
            process_env.update(env)

        command = [self.dump_binary] + list(args)

        try:
            if output_to_file:
                with open(output_path, 'wb') as output:
                    result = subprocess.run(
                        command,
                        stdin=subprocess.DEVNULL,
                        stdout=output,
                        stderr=subprocess.PIPE,
                        env=process_env
                    )
            else:
                result = subprocess.run(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=process_env
                )
                for line in (result.stdout or b'').decode('utf-8', errors='replace').splitlines():
                    self.logger.verbose(self.name, line)
        except OSError as e:
            self.logger.error(self.name, 'Could not run %s. Error: %s', self.dump_binary, e)
            return False

        if result.returncode != 0:
            error = (result.stderr or b'').decode('utf-8', errors='replace').strip() or 'unknown'
            self.logger.error(self.name, 'Could not backup database. Error: %s.', error)
            return False

        return True

    def dump_each(self, workspace_dir: str, databases: List[str]) -> List[BackupArtifact]:
        """Dump every database; a failing database does not stop the others."""
        artifacts = []

        for database in databases:
            artifact = self.dump_database(workspace_dir, database)
            if artifact is not None and artifact.is_created:
                artifacts.append(artifact)

        return artifacts

    def dump_database(self, workspace_dir: str, database: str) -> Optional[BackupArtifact]:
        """
        Dump one database into the workspace.

        Required for every subclass that keeps the default ``dump_each``;
        sources that back up all databases in one statement override
        ``dump_each`` or ``load`` instead.

        Args:
            workspace_dir: Run workspace
            database: Database name

        Returns:
            Artifact, marked created only if the dump succeeded

        Raises:
            NotImplementedError: If the subclass provides no per-database dump
        """
        raise NotImplementedError(f"{type(self).__name__} does not dump single databases")

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        databases = self.filtered()

        if not databases:
            self.logger.info(self.name, 'No databases found.')
            return self._report([])

        return self._report(self.dump_each(workspace_dir, databases))


class MsSqlSource(DatabaseSource):
    """
    Backs up MS-SQL databases with BACKUP DATABASE.

    The server writes the backup file itself, so the workspace must be
    reachable from the database server.
    """

    drivername = 'mssql+pymssql'
    default_database = 'master'

    LIST_SQL = (
        "SELECT name FROM master..sysdatabases "
        "WHERE databasepropertyex(name, 'Status') = 'ONLINE'"
    )
    BACKUP_SQL = (
        "DECLARE @database sysname = :database; "
        "DECLARE @path nvarchar(4000) = :path; "
        "BACKUP DATABASE @database TO DISK = @path WITH FORMAT"
    )

    @property
    def integrated_security(self) -> bool:
        return self.connection.get_bool('integratedsecurity')

    def connect_args(self) -> Dict[str, object]:
        return {'login_timeout': self.timeout}

    def credentials(self) -> Tuple[Optional[str], Optional[str]]:
        if self.integrated_security:
            return None, None
        return super().credentials()

    def discover(self) -> Optional[List[str]]:
        return self.query_names(self.LIST_SQL)

    def dump_each(self, workspace_dir: str, databases: List[str]) -> List[BackupArtifact]:
        artifacts = []
        engine = None

        try:
            engine = self.create_engine()
            with engine.connect().execution_options(isolation_level='AUTOCOMMIT') as conn:
                for database in databases:
                    artifact = BackupArtifact.create(workspace_dir, f"{database}.bak")
                    succeeded = True

                    try:
                        conn.execute(text(self.BACKUP_SQL), {'database': database, 'path': artifact.path})
                    except SQLAlchemyError as e:
                        succeeded = False
                        self.logger.error(
                            self.name,
                            'Could not create backup for database %s. Error: %s',
                            database, e
                        )

                    if succeeded and os.path.exists(artifact.path):
                        artifacts.append(artifact.mark_created())
        except (SQLAlchemyError, ImportError) as e:
            self.logger.error(self.name, 'Could not connect to database. Error: %s', e)
        finally:
            if engine is not None:
                engine.dispose()

        return artifacts


class MySqlSource(DatabaseSource):
    """Backs up MySQL/MariaDB databases with mysqldump."""

    dump_binary_name = 'mysqldump'
    drivername = 'mysql+pymysql'

    def discover(self) -> Optional[List[str]]:
        return self.query_names('SHOW DATABASES')

    def dump_args(self, database: str) -> List[str]:
        args = []
        if self.host:
            args.append(f"--host={self.host}")
        if self.port:
            args.append(f"--port={self.port}")
        if self.user:
            args.append(f"--user={self.user}")
        if self.password:
            args.append(f"--password={self.password}")
        args.extend(['--databases', database])
        return args

    def dump_database(self, workspace_dir: str, database: str) -> Optional[BackupArtifact]:
        artifact = BackupArtifact.create(workspace_dir, f"{database}.sql")

        if self.run_dump(self.dump_args(database), artifact.path, True) and os.path.exists(artifact.path):
            artifact.mark_created()

        return artifact


class PostgreSqlSource(DatabaseSource):
    """Backs up PostgreSQL databases with pg_dump in tar format."""

    dump_binary_name = 'pg_dump'
    drivername = 'postgresql+psycopg2'
    default_database = 'postgres'

    LIST_SQL = 'SELECT datname FROM pg_database WHERE datistemplate = false'

    def discover(self) -> Optional[List[str]]:
        return self.query_names(self.LIST_SQL)

    def dump_args(self, database: str, output_path: str) -> List[str]:
        args = []
        if self.host:
            args.extend(['--host', self.host])
        if self.port:
            args.extend(['--port', self.port])
        if self.user:
            args.extend(['--username', self.user])
        args.extend(['--no-password', '--format', 'tar', '--blobs', '--file', output_path, database])
        return args

    def dump_database(self, workspace_dir: str, database: str) -> Optional[BackupArtifact]:
        artifact = BackupArtifact.create(workspace_dir, f"{database}.backup")
        env = {'PGPASSWORD': self.password} if self.password else None

        if self.run_dump(self.dump_args(database, artifact.path), artifact.path, False, env) \
                and os.path.exists(artifact.path):
            artifact.mark_created()

        return artifact


class OracleSource(DatabaseSource):
    """
    Backs up an Oracle instance with RMAN.

    An instance holds one database; its backup consists of three files
    (full, archive log, control file) collected in one artifact directory.
    """

    dump_binary_name = 'rman'
    expected_files = 3

    def discover(self) -> Optional[List[str]]:
        # Not meaningful for a single-instance engine
        return None

    def command_lines(self, directory: str, database: str) -> List[str]:
        full = os.path.join(directory, '%d_%I.full')
        archive = os.path.join(directory, '%d_%I.archive')
        control = os.path.join(directory, '%d_%I.control')
        return [
            "SQL 'ALTER SYSTEM ARCHIVE LOG CURRENT';",
            'RUN',
            '{',
            f"SET COMMAND ID TO '{database}OnlineBackupFull';",
            f"BACKUP FULL DATABASE TAG '{database}_FULL' FORMAT '{full}';",
            "SQL 'ALTER SYSTEM ARCHIVE LOG CURRENT';",
            f"BACKUP TAG '{database}_ARCHIVE' FORMAT '{archive}' ARCHIVELOG ALL DELETE ALL INPUT;",
            f"BACKUP TAG '{database}_CONTROL' CURRENT CONTROLFILE FORMAT '{control}';",
            '}',
        ]

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        database = self.host or self.name
        artifact = BackupArtifact.create(workspace_dir, database)

        try:
            os.makedirs(artifact.path)
            command_file = os.path.join(workspace_dir, f"{artifact.identifier}_cmd")
            with open(command_file, 'w') as f:
                f.write('\n'.join(self.command_lines(artifact.path, database)) + '\n')
        except OSError as e:
            self.logger.error(self.name, 'Could not prepare RMAN backup. Error: %s', e)
            return self._report([])

        target = f"{self.user or ''}/{self.password or '_'}@{self.host or ''}"
        succeeded = self.run_dump(['target', target, 'cmdfile', command_file], artifact.path, False)

        if succeeded and len(os.listdir(artifact.path)) == self.expected_files:
            return self._report([artifact.mark_created()])

        return self._report([])


class Db2Source(DatabaseSource):
    """
    Backs up IBM DB2 databases with the db2 command line processor.

    DB2 offers no reliable way to list the databases of an instance, so
    ``include`` is mandatory.
    """

    dump_binary_name = 'db2'

    def discover(self) -> Optional[List[str]]:
        return None

    def dump_database(self, workspace_dir: str, database: str) -> Optional[BackupArtifact]:
        artifact = BackupArtifact.create(workspace_dir, f"{database}.backup")

        try:
            os.makedirs(artifact.path)
        except OSError as e:
            self.logger.error(self.name, 'Could not create backup directory for %s. Error: %s', database, e)
            return None

        args = ['BACKUP', 'DATABASE', database, 'TO', artifact.path, 'WITHOUT', 'PROMPTING']
        if self.run_dump(args, artifact.path, False) and os.path.isdir(artifact.path):
            artifact.mark_created()

        return artifact

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        if not self.included:
            self.logger.error(self.name, 'No includes are configured. This provider will not work without includes.')
            return self._report([])

        databases = [database for database in self.included if database not in (self.excluded or [])]
        return self._report(self.dump_each(workspace_dir, databases))


class SqliteSource(SourceProvider):
    """
    Backs up SQLite database files.

    The source is a database file, a directory, or a directory followed by a
    file pattern (``/var/lib/app/*.db``).
    """

    def __init__(self, config: SourceConfig, logger: RunLogger):
        super().__init__(config, logger)
        self.path = os.path.expanduser(config.source)

        # The last path component is a filter only if it holds a wildcard
        pattern = os.path.basename(self.path)
        self.pattern = pattern if any(c in pattern for c in '*?[') else None

        self.directory = self.path
        if not os.path.isdir(self.directory):
            self.directory = os.path.dirname(self.path)

    def discover(self) -> Optional[List[str]]:
        if os.path.isfile(self.path):
            return [os.path.basename(self.path)]

        if not os.path.isdir(self.directory):
            self.logger.error(self.name, 'Could not find SQLite databases at %s.', self.path)
            return None

        names = sorted(
            entry.name for entry in os.scandir(self.directory)
            if entry.is_file()
        )
        if self.pattern:
            names = [name for name in names if fnmatch.fnmatch(name, self.pattern)]
        return names

    def backup_database(self, workspace_dir: str, database: str) -> Optional[BackupArtifact]:
        source_path = os.path.abspath(os.path.join(self.directory, database))
        artifact = BackupArtifact.create(workspace_dir, database)

        try:
            source_uri = Path(source_path).as_uri() + '?mode=ro'
            with closing(sqlite3.connect(source_uri, uri=True)) as source, \
                    closing(sqlite3.connect(artifact.path)) as backup:
                source.backup(backup)
        except sqlite3.Error as e:
            self.logger.error(self.name, 'Could not backup SQLite database %s. Error: %s', database, e)
            return None

        if os.path.exists(artifact.path):
            artifact.mark_created()

        return artifact

    def load(self, workspace_dir: str) -> List[BackupArtifact]:
        databases = self.filtered()

        if not databases:
            self.logger.info(self.name, 'No databases found.')
            return self._report([])

        artifacts = []
        for database in databases:
            artifact = self.backup_database(workspace_dir, database)
            if artifact is not None and artifact.is_created:
                artifacts.append(artifact)

        return self._report(artifacts)
