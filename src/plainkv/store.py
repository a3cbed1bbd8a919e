"""
Main PlainKV class implementation for the bucketed key-value store.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

from .connection import (
    DEFAULT_MAX_LIFETIME,
    DEFAULT_POOL_SIZE,
    DEFAULT_TABLE_NAME,
    ConnectionManager,
    validate_table_name,
)
from .counters import CounterStore
from .keys import (
    BytesLike,
    check_data_bucket,
    check_data_key,
    tally_key,
    validate_record,
)
from .metadata import MetadataStore
from .storage import KeyEnumerator, RecordStore
from .transaction import TransactionController, TransactionState, UnitOfWork


class PlainKV:
    """
    A bucketed key-value store on top of SQLite.

    Values are opaque bytes stored under string keys inside the current
    bucket. Each key may carry a content type, and each bucket can hold
    integer counters. Without an explicit transaction every call is its
    own unit of work; between ``begin()`` and ``commit()``/``rollback()``
    all calls share one transaction.

    Example usage:
        kv = PlainKV("local.dat?_pragma=journal_mode(WAL)")
        kv.open()

        kv.set_bucket("pages")
        kv.set("index", b"<h1>hello</h1>")
        kv.set_mime("index", "text/html")

        kv.begin()
        kv.tally_incr("hits")
        kv.delete("old-page")
        kv.commit()

        kv.close()

    The instance is not meant to be shared by threads while a transaction
    is active; overlapping calls then raise ``ConcurrentUseError``.
    """

    def __init__(
        self,
        dsn: str,
        autoclose: bool = False,
        table_name: str = DEFAULT_TABLE_NAME,
        pool_size: int = DEFAULT_POOL_SIZE,
        max_lifetime: Optional[float] = DEFAULT_MAX_LIFETIME,
    ) -> None:
        """
        Initialize the store. Nothing is opened until the first call.

        Args:
            dsn: Database path, optionally with ``_pragma``/``_txlock``
                 query parameters
            autoclose: Close the connection pool after every call made
                 outside an explicit transaction
            table_name: Record table to use
            pool_size: Maximum number of pooled connections
            max_lifetime: Seconds after which a pooled connection is
                 replaced; ``None`` keeps connections forever
        """
        self._connections = ConnectionManager(
            dsn,
            table_name=table_name,
            pool_size=pool_size,
            max_lifetime=max_lifetime,
        )
        self._transactions = TransactionController(self._connections)
        self._records = RecordStore(table_name)
        self._keys = KeyEnumerator(table_name)
        self._metadata = MetadataStore(self._records)
        self._counters = CounterStore(self._records)
        self._bucket = "default"
        self._autoclose = autoclose

    # Connection lifecycle

    @property
    def dsn(self) -> str:
        return self._connections.dsn

    @property
    def is_open(self) -> bool:
        return self._connections.is_open

    def open(self) -> None:
        """
        Open the connection pool and create the table if needed.

        Calling it again while open does nothing.

        Raises:
            DatabaseConnectionError: If the DSN is malformed or the
                database cannot be opened
        """
        self._connections.open()

    def close(self) -> None:
        """
        Close the store.

        A transaction still active is rolled back, never committed.
        Calling it again while closed does nothing.
        """
        try:
            self._transactions.discard()
        finally:
            self._connections.close()

    # Transactions

    def begin(self) -> str:
        """
        Begin a transaction.

        Returns:
            The transaction ID

        Raises:
            TransactionError: If a transaction is already active or the
                database refuses to start one
        """
        with self._connections.in_use(autoclose=self._autoclose, idle=self._idle):
            return self._transactions.begin()

    def commit(self) -> None:
        """
        Commit the current transaction.

        Does nothing when no transaction is active.

        Raises:
            TransactionError: If the database refuses the commit; the
                transaction stays active so it can be rolled back
        """
        self._transactions.commit()
        self._maybe_autoclose()

    def rollback(self) -> None:
        """
        Rollback the current transaction.

        Does nothing when no transaction is active.
        """
        self._transactions.rollback()
        self._maybe_autoclose()

    @contextmanager
    def transaction(self) -> Iterator[str]:
        """Run a block in a transaction: commit on success, roll back on error."""
        tx_id = self.begin()
        try:
            yield tx_id
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def has_active_transaction(self) -> bool:
        return self._transactions.in_transaction

    def get_current_transaction_id(self) -> Optional[str]:
        return self._transactions.current_transaction_id

    @property
    def transaction_state(self) -> TransactionState:
        return self._transactions.state

    def close_when_idle(self) -> None:
        """
        Close the store once no call is running.

        Calls made afterwards reopen it and close it again when they finish.
        An active transaction keeps it open until commit or rollback.
        """
        self._connections.retire(idle=self._idle)

    def _idle(self) -> bool:
        return not self._transactions.in_transaction

    def _maybe_autoclose(self) -> None:
        self._connections.close_if_idle(autoclose=self._autoclose, idle=self._idle)

    @contextmanager
    def _operation(self, write: bool = False) -> Iterator[UnitOfWork]:
        # Concurrent calls keep the pool open until the last one finishes.
        with self._connections.in_use(autoclose=self._autoclose, idle=self._idle):
            with self._transactions.unit_of_work(write=write) as uow:
                yield uow

    # Configuration

    @property
    def bucket(self) -> str:
        return self._bucket

    def set_bucket(self, bucket: str) -> None:
        """
        Set the current bucket used by every following call.

        Raises:
            ReservedBucketError: For the bucket that holds mime types
        """
        self._bucket = check_data_bucket(bucket)

    @property
    def table_name(self) -> str:
        return self._connections.table_name

    def set_table_name(self, table_name: str) -> None:
        """
        Switch to another record table, creating it if needed.

        Raises:
            InvalidTableNameError: If the name is not a plain identifier
        """
        validate_table_name(table_name)
        if self._connections.is_open:
            with self._operation(write=True) as uow:
                self._connections.set_table_name(table_name, uow.connection)
        else:
            self._connections.set_table_name(table_name)
        self._records.table_name = table_name
        self._keys.table_name = table_name

    # Records

    def get(self, key: str) -> bytes:
        """
        Get the value for a key in the current bucket.

        Returns:
            The stored bytes, or ``b""`` if the key does not exist
        """
        with self._operation() as uow:
            return self._records.get(uow, self._bucket, key)

    def set(self, key: str, value: BytesLike) -> None:
        """
        Create or replace the value of a key in the current bucket.

        Raises:
            BucketIdTooLongError: If the bucket name exceeds 50 bytes
            KeyTooLongError: If the key exceeds 300 bytes
            ValueTooLongError: If the value exceeds 16,777,215 bytes
            ReservedKeyError: If the key uses the counter prefix
        """
        check_data_key(key)
        validate_record(self._bucket, key, value)
        with self._operation(write=True) as uow:
            self._records.set(uow, self._bucket, key, value)

    def delete(self, key: str) -> None:
        """Delete a key and its mime type. Deleting a missing key is not an error."""
        with self._operation(write=True) as uow:
            self._records.delete(uow, self._bucket, key)

    def list_keys(self, pattern: str = "") -> List[str]:
        """
        List the keys of the current bucket that start with ``pattern``.

        Counters are not listed. The order is unspecified.
        """
        with self._operation() as uow:
            return self._keys.list_keys(uow, self._bucket, pattern)

    # Mime types

    def get_mime(self, key: str) -> str:
        """Content type of a key, ``text/html`` when none was set."""
        with self._operation() as uow:
            return self._metadata.get_mime(uow, key)

    def set_mime(self, key: str, mime: str) -> None:
        check_data_key(key)
        with self._operation(write=True) as uow:
            self._metadata.set_mime(uow, key, mime)

    # Tallies

    def tally(self, key: str, offset: int = 0) -> int:
        """
        Get the current tally of a key.

        A tally that does not exist yet is created with ``offset``, which
        is then returned.
        """
        validate_record(self._bucket, tally_key(key), b"")
        with self._operation(write=True) as uow:
            return self._counters.tally(uow, self._bucket, key, offset)

    def tally_incr(self, key: str) -> int:
        """Increment the tally and return the new value."""
        validate_record(self._bucket, tally_key(key), b"")
        with self._operation(write=True) as uow:
            return self._counters.incr(uow, self._bucket, key)

    def tally_decr(self, key: str) -> int:
        """Decrement the tally and return the new value. There is no floor."""
        validate_record(self._bucket, tally_key(key), b"")
        with self._operation(write=True) as uow:
            return self._counters.decr(uow, self._bucket, key)

    def tally_reset(self, key: str) -> None:
        """Set the tally back to zero."""
        validate_record(self._bucket, tally_key(key), b"")
        with self._operation(write=True) as uow:
            self._counters.reset(uow, self._bucket, key)

    def __enter__(self):
        """Context manager entry."""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
