"""
Database backup producer.

Dumps the mail server's MySQL database with mysqldump, annotates the run
with catalog statistics and restores dumps through the mysql client.
"""

import os
import re
import logging
import subprocess
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from mailvault.models import BackupRecord, BackupScope, BackupTask

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = 'secure_email_system'

DUMP_OPTIONS = [
    '--single-transaction',
    '--routines',
    '--triggers',
    '--events',
    '--hex-blob',
    '--complete-insert',
]

TIMESTAMP_COLUMNS = ('created_at', 'updated_at')

# A leading hyphen would be read as an option by the client binaries
_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_$][A-Za-z0-9_$-]*$')


class DatabaseBackupError(Exception):
    """Raised when a database dump or restore fails."""
    pass


def validate_identifier(name: str) -> str:
    """
    Ensure a database or table name is a plain identifier.

    Raises:
        DatabaseBackupError: If the name contains anything beyond
            letters, digits, underscore, dollar and hyphen, or starts
            with a hyphen
    """
    if not name or not _IDENTIFIER_RE.match(name):
        raise DatabaseBackupError(f"Invalid database identifier: {name!r}")
    return name


def extract_database_name(database_url: Optional[str]) -> str:
    """
    Extract the schema name from a SQLAlchemy database URL.

    Falls back to the default mail database name when the URL is empty,
    unparseable, or has no database component.
    """
    name = None
    if database_url:
        try:
            name = make_url(database_url).database
        except ArgumentError:
            logger.warning("Cannot parse database URL, using default database name")

    return name or DEFAULT_DATABASE_NAME


def build_row_filter(since: datetime, columns=TIMESTAMP_COLUMNS) -> str:
    """Row predicate selecting rows whose timestamp columns are after since."""
    stamp = since.strftime('%Y-%m-%d %H:%M:%S')
    return ' OR '.join(f"{column} > '{stamp}'" for column in columns)


class DatabaseCatalog:
    """
    Read-only catalog queries against the mail database.

    Uses a SQLAlchemy engine on the same URL the dump runs against.
    """

    def __init__(self, database_url: str, engine=None):
        self.database_url = database_url
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_engine(self.database_url, pool_pre_ping=True)
        return self._engine

    def list_tables(self, schema: str) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
                    "WHERE TABLE_SCHEMA = :schema ORDER BY TABLE_NAME"
                ),
                {'schema': schema}
            )
            return [row[0] for row in rows]

    def count_tables(self, schema: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                text("SELECT COUNT(*) FROM INFORMATION_SCHEMA.TABLES WHERE TABLE_SCHEMA = :schema"),
                {'schema': schema}
            ).scalar() or 0

    def timestamp_columns(self, schema: str) -> Dict[str, Tuple[str, ...]]:
        """Map each table with created_at and/or updated_at to the columns it has."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT TABLE_NAME, COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS "
                    "WHERE TABLE_SCHEMA = :schema AND COLUMN_NAME IN (:created, :updated) "
                    "ORDER BY TABLE_NAME, COLUMN_NAME"
                ),
                {'schema': schema, 'created': TIMESTAMP_COLUMNS[0], 'updated': TIMESTAMP_COLUMNS[1]}
            )
            columns = {}
            for table, column in rows:
                columns.setdefault(table, []).append(column)
            return {table: tuple(found) for table, found in columns.items()}

    def count_rows(self, schema: str, table: str) -> int:
        validate_identifier(schema)
        validate_identifier(table)
        with self.engine.connect() as conn:
            return conn.execute(text(f"SELECT COUNT(*) FROM `{schema}`.`{table}`")).scalar() or 0


class DatabaseBackupProducer:
    """
    Produces SQL dumps of the mail database.

    Argument sets by scope:
    - SYSTEM: every database (--all-databases)
    - CUSTOM with a reference time: tables with created_at and/or
      updated_at get a --where row filter on the columns they have, the
      rest are dumped whole, into the same file
    - anything else: the mail database

    The database name is only checked when a command is built, so a
    producer can exist for runs that never touch the database.
    """

    def __init__(
        self,
        database_url: str,
        bin_path: str = '/usr/bin',
        timeout: Optional[int] = 3600,
        catalog: Optional[DatabaseCatalog] = None,
        log: Optional[Callable[[str], None]] = None
    ):
        self.database_url = database_url
        self.bin_path = bin_path
        self.timeout = timeout
        self.catalog = catalog or DatabaseCatalog(database_url)
        self._run_log = log

        try:
            self._url = make_url(database_url)
        except ArgumentError as e:
            raise DatabaseBackupError(f"Invalid backup database URL: {e}")

        self.database_name = extract_database_name(database_url)

    @classmethod
    def from_config(cls, config, log=None) -> 'DatabaseBackupProducer':
        return cls(
            database_url=config['BACKUP_DATABASE_URL'],
            bin_path=config.get('BACKUP_MYSQL_BIN_PATH', '/usr/bin'),
            timeout=config.get('BACKUP_COMMAND_TIMEOUT', 3600),
            log=log
        )

    def _log(self, message: str, level: int = logging.INFO):
        logger.log(level, message)
        if self._run_log:
            self._run_log(message)

    def _connection_args(self) -> List[str]:
        args = [
            '-h', self._url.host or 'localhost',
            '-P', str(self._url.port or 3306),
        ]
        if self._url.username:
            args += ['-u', self._url.username]
        return args

    def _environment(self) -> dict:
        # Password goes through the environment, never the argument list
        env = dict(os.environ)
        if self._url.password:
            env['MYSQL_PWD'] = str(self._url.password)
        return env

    def build_dump_commands(self, task: BackupTask, since: Optional[datetime] = None) -> List[List[str]]:
        """
        Build the mysqldump invocations for a task.

        Returns:
            List of argument lists, run in order and appended to one file
        """
        base = [os.path.join(self.bin_path, 'mysqldump')] + DUMP_OPTIONS + self._connection_args()

        if task.backup_scope == BackupScope.SYSTEM:
            return [base + ['--all-databases']]

        database = validate_identifier(self.database_name)

        if task.backup_scope == BackupScope.CUSTOM and since is not None:
            stamped = self.catalog.timestamp_columns(database)
            unfiltered = [t for t in self.catalog.list_tables(database) if t not in stamped]

            commands = []
            if unfiltered:
                commands.append(base + [database] + [validate_identifier(t) for t in unfiltered])

            # --where applies to every table of an invocation: one per column set
            for columns in (TIMESTAMP_COLUMNS, TIMESTAMP_COLUMNS[:1], TIMESTAMP_COLUMNS[1:]):
                tables = [t for t, found in stamped.items() if found == columns]
                if tables:
                    commands.append(
                        base + [f'--where={build_row_filter(since, columns)}', database]
                        + [validate_identifier(t) for t in tables]
                    )
            if commands:
                return commands

        return [base + [database]]

    def produce(
        self,
        task: BackupTask,
        record: BackupRecord,
        since: Optional[datetime] = None,
        mode: Optional[str] = None,
        output_dir: Optional[str] = None
    ) -> str:
        """
        Dump the database for a task.

        Returns:
            Path of the .sql dump

        Raises:
            DatabaseBackupError: If a dump command fails, times out, or the
                dump binary cannot be started
        """
        if output_dir is None:
            if not record.backup_path:
                raise DatabaseBackupError("No output directory for database backup")
            output_dir = os.path.dirname(record.backup_path)

        mode = (mode or task.backup_type.value).lower()
        timestamp = datetime.utcnow().strftime('%Y%m%d_%H%M%S')
        dump_path = os.path.join(output_dir, f"database_{mode}_{timestamp}.sql")

        try:
            commands = self.build_dump_commands(task, since)
        except SQLAlchemyError as e:
            raise DatabaseBackupError(f"Failed to read table catalog: {e}")

        os.makedirs(output_dir, exist_ok=True)
        env = self._environment()

        with open(dump_path, 'wb') as dump_file:
            for command in commands:
                self._log(f"Running {os.path.basename(command[0])} ({len(command)} arguments)")
                self._run(command, env, stdout=dump_file)

        record.backup_path = dump_path
        record.backup_size = os.path.getsize(dump_path)
        self._log(f"Database dump created: {os.path.basename(dump_path)} ({record.backup_size} bytes)")

        self.collect_statistics(record)
        return dump_path

    def _run(self, command: List[str], env: dict, stdout=None, stdin=None) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                command,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise DatabaseBackupError(f"Executable not found: {command[0]} ({e})")
        except subprocess.TimeoutExpired:
            raise DatabaseBackupError(f"{os.path.basename(command[0])} timed out after {self.timeout} seconds")

        if result.returncode != 0:
            stderr = (result.stderr or b'').decode('utf-8', errors='replace').strip()
            raise DatabaseBackupError(
                f"{os.path.basename(command[0])} exited with code {result.returncode}: {stderr}"
            )

        return result

    def collect_statistics(self, record: BackupRecord):
        """
        Store table and row counts of the mail database on the record.

        Catalog failures are logged and leave the counters untouched;
        a failing row count for one table is skipped.
        """
        try:
            tables = self.catalog.list_tables(self.database_name)
            record.database_tables = self.catalog.count_tables(self.database_name)
        except SQLAlchemyError as e:
            self._log(f"Failed to read database statistics: {e}", logging.WARNING)
            return

        total_rows = 0
        for table in tables:
            try:
                total_rows += self.catalog.count_rows(self.database_name, table)
            except (SQLAlchemyError, DatabaseBackupError) as e:
                self._log(f"Failed to count rows in {table}: {e}", logging.WARNING)

        record.database_records = total_rows
        self._log(f"Database statistics: {record.database_tables} tables, {total_rows} rows")

    def restore(self, record: BackupRecord, artifact_path: Optional[str] = None):
        """
        Restore a dump by piping it into the mysql client.

        Args:
            record: Record of the run being restored
            artifact_path: Plain .sql file (defaults to record.backup_path)

        Raises:
            DatabaseBackupError: If the dump is missing or empty, or the
                client exits non-zero
        """
        dump_path = artifact_path or record.backup_path

        if not dump_path or not os.path.exists(dump_path):
            raise DatabaseBackupError(f"Database dump not found: {dump_path}")

        if os.path.getsize(dump_path) == 0:
            raise DatabaseBackupError(f"Database dump is empty: {dump_path}")

        database = validate_identifier(self.database_name)
        command = [os.path.join(self.bin_path, 'mysql')] + self._connection_args() + [database]

        self._log(f"Restoring database {self.database_name} from {os.path.basename(dump_path)}")
        with open(dump_path, 'rb') as dump_file:
            self._run(command, self._environment(), stdin=dump_file)

        record.increment_restored_count()
        self._log("Database restore completed")
