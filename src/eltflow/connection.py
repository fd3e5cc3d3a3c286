"""
Warehouse connections and connection pooling.

The executor treats a connection as an opaque capability offering ``execute``
and ``query``. Workers borrow connections from a bounded ConnectionPool for the
duration of one node and always hand them back.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from concurrent.futures import CancelledError
from contextlib import contextmanager
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterator, List, Optional

from eltflow.exceptions import ConfigError, WarehouseError
from eltflow.materialize import AnsiDialect, Dialect, SqliteDialect


class WarehouseConnection(ABC):
    """Base class for warehouse connections.

    Models are built into ``database``/``schema``. Driver errors surface as
    WarehouseError.
    """

    dialect: Dialect = AnsiDialect()

    def __init__(self, database: Optional[str] = None, schema: Optional[str] = None):
        self.database = database
        self.schema = schema
        self.logger = logging.getLogger(self.__class__.__name__)
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @abstractmethod
    def connect(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def execute(self, sql: str) -> None:
        """Run a statement that returns no rows."""
        pass

    @abstractmethod
    def query(self, sql: str) -> List[tuple]:
        """Run a statement and return all rows."""
        pass

    def __enter__(self):
        if not self._is_connected:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SqliteConnection(WarehouseConnection):
    """SQLite-backed warehouse, used for local development and tests.

    Extra database files can be attached under a schema alias, so sources can
    live in e.g. a ``raw`` schema while models build into ``main``. SQLite views
    cannot read across database files, so a view model selecting from an
    attached schema is built as a table.
    """

    dialect = SqliteDialect()

    def __init__(
        self,
        path: str = ':memory:',
        schema: str = 'main',
        attach: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ):
        super().__init__(database=None, schema=schema)
        self.path = str(path)
        self.attach = dict(attach or {})
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> None:
        try:
            # Autocommit: every DDL statement takes effect immediately
            self._conn = sqlite3.connect(
                self.path, timeout=self.timeout, check_same_thread=False, isolation_level=None
            )
            for alias, db_path in self.attach.items():
                self._conn.execute('ATTACH DATABASE ? AS ?', (str(db_path), alias))
        except sqlite3.Error as e:
            raise WarehouseError(f'Failed to open SQLite database {self.path}: {e}') from e
        self._is_connected = True
        self.logger.debug(f'Connected to SQLite database {self.path}')

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._is_connected = False

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise WarehouseError('Connection is not open')
        return self._conn

    def execute(self, sql: str) -> None:
        try:
            self._require().execute(sql)
        except sqlite3.Error as e:
            raise WarehouseError(str(e)) from e

    def query(self, sql: str) -> List[tuple]:
        try:
            return self._require().execute(sql).fetchall()
        except sqlite3.Error as e:
            raise WarehouseError(str(e)) from e


class SnowflakeConnection(WarehouseConnection):
    """Snowflake warehouse connection.

    Requires the ``snowflake`` extra (snowflake-connector-python).
    """

    dialect = AnsiDialect()

    def __init__(
        self,
        account: str,
        user: str,
        warehouse: str,
        database: str,
        schema: str,
        role: Optional[str] = None,
        connection_params: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(database=database, schema=schema)
        self.account = account
        self.user = user
        self.warehouse = warehouse
        self.role = role
        self.connection_params = dict(connection_params or {})
        self._conn = None

    def connect(self) -> None:
        try:
            import snowflake.connector
        except ImportError:
            raise ConfigError(
                'snowflake-connector-python is required for snowflake targets. '
                'Install with: pip install "eltflow[snowflake]"'
            ) from None

        conn_params = {
            'account': self.account,
            'user': self.user,
            'warehouse': self.warehouse,
            'database': self.database,
            'schema': self.schema,
            'login_timeout': 60,
            'network_timeout': 600,
            **self.connection_params,
        }
        if self.role:
            conn_params['role'] = self.role

        try:
            self._conn = snowflake.connector.connect(**conn_params)
        except snowflake.connector.errors.Error as e:
            raise WarehouseError(f'Failed to connect to Snowflake: {e}') from e
        self._is_connected = True
        self.logger.info(f'Connected to Snowflake {self.database}.{self.schema}')

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._is_connected = False

    def _cursor(self):
        if self._conn is None:
            raise WarehouseError('Connection is not open')
        return self._conn.cursor()

    def execute(self, sql: str) -> None:
        import snowflake.connector

        cursor = self._cursor()
        try:
            cursor.execute(sql)
        except snowflake.connector.errors.Error as e:
            raise WarehouseError(str(e)) from e
        finally:
            cursor.close()

    def query(self, sql: str) -> List[tuple]:
        import snowflake.connector

        cursor = self._cursor()
        try:
            cursor.execute(sql)
            return list(cursor.fetchall())
        except snowflake.connector.errors.Error as e:
            raise WarehouseError(str(e)) from e
        finally:
            cursor.close()


ConnectionFactory = Callable[[], WarehouseConnection]


class ConnectionPool:
    """
    Bounded pool of warehouse connections shared by the workers of one run.

    Connections are created lazily up to ``pool_size`` and reused afterwards.
    """

    POLL_INTERVAL = 0.1  # Seconds between cancellation checks while waiting

    def __init__(self, factory: ConnectionFactory, pool_size: int = 1):
        if pool_size < 1:
            raise ValueError(f'pool_size must be >= 1, got {pool_size}')
        self.factory = factory
        self.pool_size = pool_size
        self._pool: Queue[WarehouseConnection] = Queue(maxsize=pool_size)
        self._created: List[WarehouseConnection] = []
        self._lock = threading.Lock()
        self._closed = False
        self.logger = logging.getLogger(__name__)

    @classmethod
    def wrap(cls, connection: WarehouseConnection) -> 'ConnectionPool':
        """Pool of exactly one, already existing, connection."""
        pool = cls(lambda: connection, pool_size=1)
        pool._created.append(connection)
        if not connection.is_connected:
            connection.connect()
        pool._pool.put(connection)
        return pool

    def _prototype(self) -> WarehouseConnection:
        with self._lock:
            if self._created:
                return self._created[0]
        with self.acquire() as conn:
            return conn

    @property
    def dialect(self) -> Dialect:
        return self._prototype().dialect

    @property
    def database(self) -> Optional[str]:
        return self._prototype().database

    @property
    def schema(self) -> Optional[str]:
        return self._prototype().schema

    @property
    def size(self) -> int:
        """Number of connections created so far."""
        return len(self._created)

    def _create(self) -> Optional[WarehouseConnection]:
        with self._lock:
            if len(self._created) >= self.pool_size:
                return None
            conn = self.factory()
            if not conn.is_connected:
                conn.connect()
            self._created.append(conn)
            self.logger.debug(f'Opened connection {len(self._created)}/{self.pool_size}')
            return conn

    def _get(self, cancel_event: Optional[threading.Event], timeout: Optional[float]) -> WarehouseConnection:
        if self._closed:
            raise WarehouseError('Connection pool is closed')

        try:
            return self._pool.get(block=False)
        except Empty:
            pass

        conn = self._create()
        if conn is not None:
            return conn

        waited = 0.0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError('Cancelled while waiting for a connection')
            try:
                return self._pool.get(timeout=self.POLL_INTERVAL)
            except Empty:
                waited += self.POLL_INTERVAL
                if timeout is not None and waited >= timeout:
                    raise WarehouseError(f'Timed out after {timeout}s waiting for a connection') from None

    @contextmanager
    def acquire(
        self, cancel_event: Optional[threading.Event] = None, timeout: Optional[float] = None
    ) -> Iterator[WarehouseConnection]:
        """Borrow a connection; it is returned to the pool on every exit path."""
        conn = self._get(cancel_event, timeout)
        try:
            yield conn
        finally:
            self._pool.put(conn)

    def close(self) -> None:
        """Close every connection the pool created."""
        with self._lock:
            self._closed = True
            for conn in self._created:
                try:
                    conn.close()
                except WarehouseError as e:
                    self.logger.warning(f'Failed to close connection: {e}')
            self._created.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def connection_factory(output: Dict[str, Any], project_root: Optional[Path] = None) -> ConnectionFactory:
    """Build a connection factory from a profiles.yml output block.

    Raises:
        ConfigError: If the output type is unknown or required fields are missing
    """
    output = dict(output)
    conn_type = output.pop('type')

    if conn_type == 'sqlite':
        path = output.get('path', ':memory:')
        if path != ':memory:' and project_root is not None and not Path(path).is_absolute():
            path = str(project_root / path)
        attach = {}
        for alias, db_path in (output.get('attach') or {}).items():
            if project_root is not None and not Path(db_path).is_absolute():
                db_path = str(project_root / db_path)
            attach[alias] = db_path
        schema = output.get('schema', 'main')
        timeout = float(output.get('timeout', 30.0))
        return lambda: SqliteConnection(path, schema=schema, attach=attach, timeout=timeout)

    if conn_type == 'snowflake':
        required = ['account', 'user', 'warehouse', 'database', 'schema']
        missing = [k for k in required if not output.get(k)]
        if missing:
            raise ConfigError(f'Snowflake output is missing: {", ".join(missing)}')
        params = {k: output.pop(k) for k in required}
        role = output.pop('role', None)
        output.pop('threads', None)
        return lambda: SnowflakeConnection(**params, role=role, connection_params=output)

    raise ConfigError(f'Unsupported output type "{conn_type}" (expected sqlite or snowflake)')
