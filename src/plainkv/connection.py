"""
Connection handling for the SQLite-backed store.

A store owns one ``ConnectionManager``, which owns one ``ConnectionPool``.
Pools are never shared between store instances.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from .exceptions import DatabaseConnectionError, InvalidTableNameError

logger = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = "KeyValueTBL"
DEFAULT_POOL_SIZE = 10
DEFAULT_MAX_LIFETIME = 180.0  # seconds

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_PRAGMA_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\(([A-Za-z0-9_.+-]*)\)$")
_TXLOCK_MODES = ("deferred", "immediate", "exclusive")


def validate_table_name(name: str) -> str:
    """Only plain identifiers are ever interpolated into statements."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise InvalidTableNameError(f"Invalid table name: {name!r}")
    return name


def create_table_sql(table: str) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            Bucket VARCHAR(50),
            KeyID VARCHAR(300),
            Value MEDIUMBLOB,
            PRIMARY KEY (Bucket, KeyID)
        )
    """


@dataclass(frozen=True)
class ConnectionDescriptor:
    """
    A parsed data source name.

    The DSN is a database path optionally followed by query parameters::

        local.dat
        local.dat?_pragma=journal_mode(WAL)&_pragma=busy_timeout(5000)
        file:local.dat?mode=ro&_txlock=immediate

    ``_pragma=name(value)`` runs ``PRAGMA name=value`` on every new
    connection and ``_txlock`` picks the BEGIN mode of explicit
    transactions. Any other parameter is passed through to SQLite, which
    requires the ``file:`` URI form.
    """

    database: str
    uri: bool = False
    pragmas: Tuple[Tuple[str, str], ...] = ()
    txlock: str = "deferred"
    is_memory: bool = False

    @classmethod
    def parse(cls, dsn: str) -> "ConnectionDescriptor":
        if not isinstance(dsn, str) or not dsn.strip():
            raise DatabaseConnectionError(f"Malformed connection descriptor: {dsn!r}")

        path, _, query = dsn.partition("?")
        if not path:
            raise DatabaseConnectionError(f"Malformed connection descriptor: {dsn!r}")

        pragmas: List[Tuple[str, str]] = []
        passthrough: List[Tuple[str, str]] = []
        txlock = "deferred"
        for name, value in parse_qsl(query, keep_blank_values=True):
            if name == "_pragma":
                match = _PRAGMA_RE.match(value)
                if not match:
                    raise DatabaseConnectionError(f"Malformed pragma in descriptor: {value!r}")
                pragmas.append((match.group(1), match.group(2)))
            elif name == "_txlock":
                txlock = value.lower()
                if txlock not in _TXLOCK_MODES:
                    raise DatabaseConnectionError(f"Unknown _txlock mode: {value!r}")
            else:
                passthrough.append((name, value))

        uri = path.startswith("file:")
        if passthrough and not uri:
            names = ", ".join(sorted({name for name, _ in passthrough}))
            raise DatabaseConnectionError(f"Unknown descriptor parameters: {names}")

        database = path
        if uri and passthrough:
            database = f"{path}?{urlencode(passthrough)}"

        is_memory = path == ":memory:" or (uri and ("mode", "memory") in passthrough)
        return cls(
            database=database,
            uri=uri,
            pragmas=tuple(pragmas),
            txlock=txlock,
            is_memory=is_memory,
        )


@dataclass
class _PooledConnection:
    connection: sqlite3.Connection
    created_at: float = field(default_factory=time.monotonic)


class ConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are created lazily up to ``pool_size`` and reused. A
    connection older than ``max_lifetime`` seconds is closed instead of
    being handed out again. Connections run in autocommit mode so that
    transactions are driven explicitly with BEGIN/COMMIT/ROLLBACK.
    """

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        pool_size: int = DEFAULT_POOL_SIZE,
        max_lifetime: Optional[float] = DEFAULT_MAX_LIFETIME,
        acquire_timeout: float = 30.0,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self._descriptor = descriptor
        self._pool_size = pool_size
        self._max_lifetime = max_lifetime
        self._acquire_timeout = acquire_timeout
        self._idle: Queue[_PooledConnection] = Queue()
        self._checked_out: Dict[int, _PooledConnection] = {}
        self._lock = threading.Lock()
        self._total_connections = 0
        self._closed = False

    @property
    def size(self) -> int:
        return self._pool_size

    def _create_connection(self) -> _PooledConnection:
        """Open and configure a new connection."""
        try:
            conn = sqlite3.connect(
                self._descriptor.database,
                uri=self._descriptor.uri,
                check_same_thread=False,  # connections move between threads
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise DatabaseConnectionError(
                f"Failed to open database {self._descriptor.database!r}: {e}"
            ) from e

        try:
            for name, value in self._descriptor.pragmas:
                conn.execute(f"PRAGMA {name}={value}")
        except sqlite3.Error as e:
            conn.close()
            raise DatabaseConnectionError(f"Failed to apply pragma: {e}") from e

        logger.debug("Opened connection to %s", self._descriptor.database)
        return _PooledConnection(conn)

    def _expired(self, pooled: _PooledConnection) -> bool:
        if not self._max_lifetime:
            return False
        return time.monotonic() - pooled.created_at >= self._max_lifetime

    def _discard(self, pooled: _PooledConnection) -> None:
        with self._lock:
            self._total_connections -= 1
        pooled.connection.close()

    def acquire(self) -> sqlite3.Connection:
        """Acquire a connection, creating one if the pool has room.

        Raises:
            DatabaseConnectionError: If the pool is closed, exhausted past
                the acquire timeout, or a new connection cannot be opened
        """
        deadline = time.monotonic() + self._acquire_timeout
        while True:
            if self._closed:
                raise DatabaseConnectionError("Connection pool is closed")

            try:
                pooled = self._idle.get_nowait()
            except Empty:
                pooled = None

            if pooled is None:
                with self._lock:
                    can_grow = self._total_connections < self._pool_size
                    if can_grow:
                        self._total_connections += 1
                if can_grow:
                    try:
                        pooled = self._create_connection()
                    except DatabaseConnectionError:
                        with self._lock:
                            self._total_connections -= 1
                        raise
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise DatabaseConnectionError(
                            "Connection pool exhausted (timeout after %.1fs)" % self._acquire_timeout
                        )
                    try:
                        pooled = self._idle.get(timeout=remaining)
                    except Empty:
                        continue

            if self._expired(pooled):
                logger.debug("Closing connection past its lifetime")
                self._discard(pooled)
                continue

            with self._lock:
                self._checked_out[id(pooled.connection)] = pooled
            return pooled.connection

    def release(self, conn: sqlite3.Connection) -> None:
        """Return a connection to the pool, rolling back anything left open."""
        with self._lock:
            pooled = self._checked_out.pop(id(conn), None)
        if pooled is None:
            return

        if conn.in_transaction:
            conn.execute("ROLLBACK")

        with self._lock:
            if not self._closed and not self._expired(pooled):
                self._idle.put(pooled)
                return
        self._discard(pooled)

    def shutdown(self) -> None:
        """Close every idle connection and refuse further acquisitions.

        Connections still checked out are closed when they are released.
        """
        with self._lock:
            self._closed = True
        closed_count = 0
        while True:
            try:
                pooled = self._idle.get_nowait()
            except Empty:
                break
            self._discard(pooled)
            closed_count += 1
        logger.info("Closed %d connections from pool", closed_count)


class ConnectionManager:
    """Owns the lazily opened connection pool of one store instance.

    Operations announce themselves with ``in_use()``; the pool is only
    closed on request (autoclose, ``retire()``) once no operation is
    running. ``close()`` closes it unconditionally.
    """

    def __init__(
        self,
        dsn: str,
        table_name: str = DEFAULT_TABLE_NAME,
        pool_size: int = DEFAULT_POOL_SIZE,
        max_lifetime: Optional[float] = DEFAULT_MAX_LIFETIME,
    ):
        self.dsn = dsn
        self._table_name = validate_table_name(table_name)
        self._pool_size = pool_size
        self._max_lifetime = max_lifetime
        self._pool: Optional[ConnectionPool] = None
        self._descriptor: Optional[ConnectionDescriptor] = None
        self._lock = threading.Lock()
        self._users = 0
        self._retired = False

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    @property
    def users(self) -> int:
        """Number of operations currently holding the pool open."""
        return self._users

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def descriptor(self) -> Optional[ConnectionDescriptor]:
        return self._descriptor

    def open(self) -> None:
        """Open the pool and make sure the table exists. Idempotent."""
        with self._lock:
            self._open_locked()

    def _open_locked(self) -> None:
        if self._pool is not None:
            return

        descriptor = ConnectionDescriptor.parse(self.dsn)
        pool_size, max_lifetime = self._pool_size, self._max_lifetime
        if descriptor.is_memory:
            # Every connection to :memory: is a separate database.
            pool_size, max_lifetime = 1, None

        pool = ConnectionPool(descriptor, pool_size=pool_size, max_lifetime=max_lifetime)
        conn = pool.acquire()
        try:
            conn.execute(create_table_sql(self._table_name))
        except sqlite3.Error as e:
            pool.release(conn)
            pool.shutdown()
            raise DatabaseConnectionError(f"Failed to create table: {e}") from e
        pool.release(conn)

        self._descriptor = descriptor
        self._pool = pool
        logger.debug("Opened store %s (table %s)", self.dsn, self._table_name)

    def close(self) -> None:
        """Shut the pool down. Idempotent."""
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._pool is None:
            return
        self._pool.shutdown()
        self._pool = None
        logger.debug("Closed store %s", self.dsn)

    def _should_close(self, autoclose: bool, idle: Optional[Callable[[], bool]]) -> bool:
        if self._users or not (autoclose or self._retired):
            return False
        return idle is None or idle()

    @contextmanager
    def in_use(
        self,
        autoclose: bool = False,
        idle: Optional[Callable[[], bool]] = None,
    ) -> Iterator[None]:
        """Keep the pool open, opening it first, for the length of one operation.

        Args:
            autoclose: Close the pool when this is the last operation to leave
            idle: Asked before closing; returning False keeps the pool open
        """
        with self._lock:
            self._open_locked()
            self._users += 1
        try:
            yield
        finally:
            with self._lock:
                self._users -= 1
                if self._should_close(autoclose, idle):
                    self._close_locked()

    def close_if_idle(
        self,
        autoclose: bool = False,
        idle: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Close the pool now if autoclose applies and no operation is running."""
        with self._lock:
            if self._should_close(autoclose, idle):
                self._close_locked()

    def retire(self, idle: Optional[Callable[[], bool]] = None) -> None:
        """Close the pool as soon as no operation is running, and after
        every operation from then on."""
        with self._lock:
            self._retired = True
            if self._should_close(False, idle):
                self._close_locked()

    def acquire(self) -> sqlite3.Connection:
        pool = self._pool
        if pool is None:
            raise DatabaseConnectionError("Store is not open")
        return pool.acquire()

    def release(self, conn: sqlite3.Connection) -> None:
        pool = self._pool
        if pool is None:
            # The pool was shut down while this connection was out.
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()
            return
        pool.release(conn)

    def set_table_name(self, name: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Switch tables, creating the new one on ``conn`` when given.

        When the pool is not open yet the table is created by ``open()``.
        """
        validate_table_name(name)
        if conn is not None:
            conn.execute(create_table_sql(name))
        self._table_name = name
