"""
Async PlainKV implementation on aiosqlite.
"""

import asyncio
import logging
import sqlite3
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import aiosqlite

from .connection import (
    DEFAULT_TABLE_NAME,
    ConnectionDescriptor,
    create_table_sql,
    validate_table_name,
)
from .exceptions import DatabaseConnectionError, TransactionError
from .keys import (
    DEFAULT_MIME,
    MIME_BUCKET,
    BytesLike,
    check_data_bucket,
    check_data_key,
    decode_tally,
    encode_tally,
    tally_key,
    validate_record,
)
from .storage import list_keys_params, statements_for, value_from_row

logger = logging.getLogger(__name__)


class AsyncPlainKV:
    """
    An async bucketed key-value store.

    Same operations as ``PlainKV`` on a single aiosqlite connection.
    Calls are serialized by an ``asyncio.Lock``; while a transaction is
    active every call, from any task, runs inside it.

    Example usage:
        async with AsyncPlainKV("local.dat") as kv:
            await kv.set("key", b"value")
            async with kv.transaction():
                await kv.tally_incr("hits")
    """

    def __init__(self, dsn: str, table_name: str = DEFAULT_TABLE_NAME) -> None:
        self.dsn = dsn
        self._table_name = validate_table_name(table_name)
        self._db: Optional[aiosqlite.Connection] = None
        self._descriptor: Optional[ConnectionDescriptor] = None
        self._bucket = "default"
        self._transaction_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def table_name(self) -> str:
        return self._table_name

    def set_bucket(self, bucket: str) -> None:
        self._bucket = check_data_bucket(bucket)

    async def set_table_name(self, table_name: str) -> None:
        """Switch to another record table, creating it if the store is open."""
        validate_table_name(table_name)
        if self._db is not None:
            async with self._operation(write=True) as db:
                await db.execute(create_table_sql(table_name))
        self._table_name = table_name

    async def open(self) -> None:
        """Open the connection and create the table if needed. Idempotent."""
        async with self._lock:
            if self._db is not None:
                return

            descriptor = ConnectionDescriptor.parse(self.dsn)
            try:
                db = await aiosqlite.connect(
                    descriptor.database,
                    uri=descriptor.uri,
                    isolation_level=None,
                )
            except sqlite3.Error as e:
                raise DatabaseConnectionError(
                    f"Failed to open database {descriptor.database!r}: {e}"
                ) from e

            try:
                for name, value in descriptor.pragmas:
                    await db.execute(f"PRAGMA {name}={value}")
                await db.execute(create_table_sql(self._table_name))
            except sqlite3.Error as e:
                await db.close()
                raise DatabaseConnectionError(f"Failed to initialize database: {e}") from e

            self._db = db
            self._descriptor = descriptor
            logger.debug("Opened async store %s", self.dsn)

    async def close(self) -> None:
        """Close the connection, rolling back an active transaction."""
        async with self._lock:
            if self._db is None:
                return
            try:
                if self._transaction_id is not None:
                    logger.warning("Discarding uncommitted transaction %s", self._transaction_id)
                    if self._db.in_transaction:
                        await self._db.execute("ROLLBACK")
            finally:
                self._transaction_id = None
                await self._db.close()
                self._db = None
                logger.debug("Closed async store %s", self.dsn)

    # Transactions

    def has_active_transaction(self) -> bool:
        return self._transaction_id is not None

    def get_current_transaction_id(self) -> Optional[str]:
        return self._transaction_id

    async def begin(self) -> str:
        """Begin a transaction and return its ID."""
        await self.open()
        async with self._lock:
            if self._transaction_id is not None:
                raise TransactionError("A transaction is already active")
            mode = self._descriptor.txlock.upper()
            try:
                await self._db.execute(f"BEGIN {mode}")
            except sqlite3.Error as e:
                raise TransactionError(f"Failed to begin transaction: {e}") from e
            self._transaction_id = str(uuid.uuid4())
            logger.debug("Began transaction %s", self._transaction_id)
            return self._transaction_id

    async def commit(self) -> None:
        """Commit the current transaction; a no-op when there is none."""
        async with self._lock:
            if self._transaction_id is None:
                return
            try:
                await self._db.execute("COMMIT")
            except sqlite3.Error as e:
                raise TransactionError(f"Failed to commit transaction: {e}") from e
            logger.debug("Committed transaction %s", self._transaction_id)
            self._transaction_id = None

    async def rollback(self) -> None:
        """Rollback the current transaction; a no-op when there is none."""
        async with self._lock:
            if self._transaction_id is None:
                return
            try:
                if self._db.in_transaction:
                    await self._db.execute("ROLLBACK")
            except sqlite3.Error as e:
                raise TransactionError(f"Failed to roll back transaction: {e}") from e
            logger.debug("Rolled back transaction %s", self._transaction_id)
            self._transaction_id = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[str]:
        tx_id = await self.begin()
        try:
            yield tx_id
        except BaseException:
            await self.rollback()
            raise
        await self.commit()

    @asynccontextmanager
    async def _operation(self, write: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        await self.open()
        async with self._lock:
            db = self._db
            if db is None:
                raise DatabaseConnectionError("Store is not open")
            if self._transaction_id is not None:
                yield db
                return

            await db.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield db
            except BaseException:
                if db.in_transaction:
                    await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    # Statement helpers, always called with the lock held

    async def _get(self, db: aiosqlite.Connection, bucket: str, key: str) -> bytes:
        sql = statements_for(self._table_name).select_value
        async with db.execute(sql, (bucket, key)) as cursor:
            return value_from_row(await cursor.fetchone())

    async def _set(self, db: aiosqlite.Connection, bucket: str, key: str, value: BytesLike) -> None:
        data = validate_record(bucket, key, value)
        await db.execute(statements_for(self._table_name).upsert, (bucket, key, data))

    async def _tally(self, db: aiosqlite.Connection, key: str, offset: int) -> int:
        name = tally_key(key)
        raw = await self._get(db, self._bucket, name)
        if not raw:
            await self._set(db, self._bucket, name, encode_tally(offset))
            return offset
        return decode_tally(raw, key)

    async def _step(self, key: str, delta: int) -> int:
        validate_record(self._bucket, tally_key(key), b"")
        async with self._operation(write=True) as db:
            value = await self._tally(db, key, 0) + delta
            await self._set(db, self._bucket, tally_key(key), encode_tally(value))
            return value

    # Records

    async def get(self, key: str) -> bytes:
        async with self._operation() as db:
            return await self._get(db, self._bucket, key)

    async def set(self, key: str, value: BytesLike) -> None:
        check_data_key(key)
        validate_record(self._bucket, key, value)
        async with self._operation(write=True) as db:
            await self._set(db, self._bucket, key, value)

    async def delete(self, key: str) -> None:
        sql = statements_for(self._table_name).delete
        async with self._operation(write=True) as db:
            await db.execute(sql, (self._bucket, key))
            await db.execute(sql, (MIME_BUCKET, key))

    async def list_keys(self, pattern: str = "") -> List[str]:
        sql = statements_for(self._table_name).list_keys
        async with self._operation() as db:
            async with db.execute(sql, list_keys_params(self._bucket, pattern)) as cursor:
                return [row[0] for row in await cursor.fetchall()]

    # Mime types

    async def get_mime(self, key: str) -> str:
        async with self._operation() as db:
            raw = await self._get(db, MIME_BUCKET, key)
        return raw.decode("utf-8", errors="replace") if raw else DEFAULT_MIME

    async def set_mime(self, key: str, mime: str) -> None:
        check_data_key(key)
        async with self._operation(write=True) as db:
            await self._set(db, MIME_BUCKET, key, mime.encode("utf-8"))

    # Tallies

    async def tally(self, key: str, offset: int = 0) -> int:
        validate_record(self._bucket, tally_key(key), b"")
        async with self._operation(write=True) as db:
            return await self._tally(db, key, offset)

    async def tally_incr(self, key: str) -> int:
        return await self._step(key, 1)

    async def tally_decr(self, key: str) -> int:
        return await self._step(key, -1)

    async def tally_reset(self, key: str) -> None:
        validate_record(self._bucket, tally_key(key), b"")
        async with self._operation(write=True) as db:
            await self._set(db, self._bucket, tally_key(key), encode_tally(0))

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
