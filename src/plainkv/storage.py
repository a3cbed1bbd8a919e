"""
Record storage for the key-value store.

``RecordStore`` and ``KeyEnumerator`` issue parameterized statements
against the record table through whatever unit of work they are handed;
they never open, commit or roll back anything themselves.
"""

from functools import lru_cache
from typing import List, NamedTuple

from .connection import validate_table_name
from .keys import MIME_BUCKET, TALLY_PREFIX, BytesLike, validate_record
from .transaction import UnitOfWork


class Statements(NamedTuple):
    """SQL for one record table. The table name is the only interpolated part."""
    select_value: str
    upsert: str
    delete: str
    list_keys: str


@lru_cache(maxsize=32)
def statements_for(table: str) -> Statements:
    table = validate_table_name(table)
    return Statements(
        select_value=f"SELECT Value FROM {table} WHERE Bucket = ? AND KeyID = ?",
        upsert=(
            f"INSERT INTO {table} (Bucket, KeyID, Value) VALUES (?, ?, ?) "
            f"ON CONFLICT(Bucket, KeyID) DO UPDATE SET Value = excluded.Value"
        ),
        delete=f"DELETE FROM {table} WHERE Bucket = ? AND KeyID = ?",
        # substr() keeps the match exact; LIKE folds ASCII case and treats % and _ as wildcards.
        list_keys=(
            f"SELECT KeyID FROM {table} "
            f"WHERE Bucket = ? AND substr(KeyID, 1, ?) = ? AND substr(KeyID, 1, ?) != ?"
        ),
    )


def value_from_row(row) -> bytes:
    """Turn a fetched Value column into bytes; a missing row reads as empty."""
    if row is None or row[0] is None:
        return b""
    value = row[0]
    if isinstance(value, str):
        # Rows written as TEXT by other tools.
        return value.encode("utf-8")
    return bytes(value)


def list_keys_params(bucket: str, prefix: str) -> tuple:
    return (bucket, len(prefix), prefix, len(TALLY_PREFIX), TALLY_PREFIX)


class RecordStore:
    """Bucket-scoped get/set/delete on the record table."""

    def __init__(self, table_name: str) -> None:
        self.table_name = table_name

    @property
    def statements(self) -> Statements:
        return statements_for(self.table_name)

    def get(self, uow: UnitOfWork, bucket: str, key: str) -> bytes:
        """
        Get the value stored under ``(bucket, key)``.

        Returns:
            The stored bytes, or ``b""`` if there is no such record
        """
        return value_from_row(uow.fetchone(self.statements.select_value, (bucket, key)))

    def set(self, uow: UnitOfWork, bucket: str, key: str, value: BytesLike) -> None:
        """
        Create or replace the record ``(bucket, key)``.

        Raises:
            BucketIdTooLongError, KeyTooLongError, ValueTooLongError: Before
                any statement is issued
        """
        data = validate_record(bucket, key, value)
        uow.execute(self.statements.upsert, (bucket, key, data))

    def delete(self, uow: UnitOfWork, bucket: str, key: str) -> None:
        """Delete the record and the mime record of the same key."""
        uow.execute(self.statements.delete, (bucket, key))
        uow.execute(self.statements.delete, (MIME_BUCKET, key))


class KeyEnumerator:
    """Prefix listing of the keys in a bucket."""

    def __init__(self, table_name: str) -> None:
        self.table_name = table_name

    def list_keys(self, uow: UnitOfWork, bucket: str, prefix: str = "") -> List[str]:
        """Keys in ``bucket`` starting with ``prefix``, counters excluded, unordered."""
        sql = statements_for(self.table_name).list_keys
        return [row[0] for row in uow.fetchall(sql, list_keys_params(bucket, prefix))]
