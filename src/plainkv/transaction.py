"""
Transaction management for the key-value store.

Every operation runs inside a ``UnitOfWork``. While an explicit
transaction is active, that transaction is the unit of work for every
call; otherwise each call gets a fresh implicit one which commits when the
call succeeds and rolls back when it raises.
"""

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, List, Optional, Sequence

from .connection import ConnectionManager
from .exceptions import ConcurrentUseError, TransactionError

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Transaction state enumeration."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class UnitOfWork:
    """A connection with an open transaction on it."""

    def __init__(self, connection: sqlite3.Connection, explicit: bool) -> None:
        self.id = str(uuid.uuid4())
        self.connection = connection
        self.explicit = explicit
        self.state = TransactionState.INACTIVE

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self.connection.execute(sql, params)

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        return self.connection.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        return self.connection.execute(sql, params).fetchall()

    def begin(self, mode: str = "DEFERRED") -> None:
        self.connection.execute(f"BEGIN {mode}")
        self.state = TransactionState.ACTIVE

    def commit(self) -> None:
        self.connection.execute("COMMIT")
        self.state = TransactionState.COMMITTED

    def rollback(self) -> None:
        # SQLite may already have rolled back on its own, e.g. after SQLITE_FULL.
        if self.connection.in_transaction:
            self.connection.execute("ROLLBACK")
        self.state = TransactionState.ROLLED_BACK


class TransactionController:
    """
    Tracks the explicit transaction of one store instance.

    At most one explicit transaction is active at a time. The transaction
    connection is not safe for concurrent use, so while one is active a
    second overlapping call on the same instance raises
    ``ConcurrentUseError`` instead of interleaving statements.
    """

    def __init__(self, connections: ConnectionManager) -> None:
        self._connections = connections
        self._current: Optional[UnitOfWork] = None
        self._guard = threading.Lock()

    @property
    def state(self) -> TransactionState:
        if self._current is None:
            return TransactionState.INACTIVE
        return self._current.state

    @property
    def in_transaction(self) -> bool:
        return self._current is not None

    @property
    def current_transaction_id(self) -> Optional[str]:
        return self._current.id if self._current else None

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._guard.acquire(blocking=False):
            raise ConcurrentUseError("Store is in use by another call during a transaction")
        try:
            yield
        finally:
            self._guard.release()

    def begin(self) -> str:
        """
        Begin an explicit transaction and return its ID.

        Raises:
            TransactionError: If a transaction is already active or SQLite
                refuses to start one
        """
        with self._exclusive():
            if self._current is not None:
                raise TransactionError("A transaction is already active")

            conn = self._connections.acquire()
            unit = UnitOfWork(conn, explicit=True)
            descriptor = self._connections.descriptor
            mode = descriptor.txlock.upper() if descriptor else "DEFERRED"
            try:
                unit.begin(mode)
            except sqlite3.Error as e:
                self._connections.release(conn)
                raise TransactionError(f"Failed to begin transaction: {e}") from e

            self._current = unit
            logger.debug("Began transaction %s", unit.id)
            return unit.id

    def commit(self) -> None:
        """Commit the active transaction; a no-op when there is none."""
        with self._exclusive():
            unit = self._current
            if unit is None:
                return
            try:
                unit.commit()
            except sqlite3.Error as e:
                # Still active: the caller decides whether to roll back.
                raise TransactionError(f"Failed to commit transaction: {e}") from e
            self._finish(unit)
            logger.debug("Committed transaction %s", unit.id)

    def rollback(self) -> None:
        """Roll back the active transaction; a no-op when there is none."""
        with self._exclusive():
            unit = self._current
            if unit is None:
                return
            try:
                unit.rollback()
            except sqlite3.Error as e:
                raise TransactionError(f"Failed to roll back transaction: {e}") from e
            self._finish(unit)
            logger.debug("Rolled back transaction %s", unit.id)

    def discard(self) -> None:
        """Drop a dangling transaction without committing it."""
        unit = self._current
        if unit is None:
            return
        logger.warning("Discarding uncommitted transaction %s", unit.id)
        try:
            unit.rollback()
        finally:
            self._finish(unit)

    def _finish(self, unit: UnitOfWork) -> None:
        self._current = None
        self._connections.release(unit.connection)

    @contextmanager
    def unit_of_work(self, write: bool = False) -> Iterator[UnitOfWork]:
        """
        Yield the unit of work a single store operation should run in.

        Args:
            write: Whether the operation writes. Implicit write units start
                with BEGIN IMMEDIATE so read-modify-write sequences cannot
                interleave with another writer.
        """
        if self._current is not None:
            with self._exclusive():
                unit = self._current
                if unit is None:
                    raise TransactionError("Transaction ended by a concurrent call")
                yield unit
            return

        conn = self._connections.acquire()
        unit = UnitOfWork(conn, explicit=False)
        try:
            unit.begin("IMMEDIATE" if write else "DEFERRED")
            try:
                yield unit
            except BaseException:
                unit.rollback()
                raise
            unit.commit()
        finally:
            self._connections.release(conn)
