"""
PlainKV

A bucketed key-value store on SQLite with content-type metadata,
integer tallies and explicit or per-call transactions.
"""

from .store import PlainKV
from .async_store import AsyncPlainKV
from .connection import ConnectionDescriptor, ConnectionManager, ConnectionPool
from .transaction import TransactionState
from .keys import DEFAULT_BUCKET, DEFAULT_MIME, MIME_BUCKET
from .exceptions import (
    StoreError,
    ValidationError,
    BucketIdTooLongError,
    KeyTooLongError,
    ValueTooLongError,
    ReservedBucketError,
    ReservedKeyError,
    InvalidTableNameError,
    DatabaseConnectionError,
    TransactionError,
    ConcurrentUseError,
)

__version__ = "0.1.0"
__all__ = [
    "PlainKV",
    "AsyncPlainKV",
    "ConnectionDescriptor",
    "ConnectionManager",
    "ConnectionPool",
    "TransactionState",
    "DEFAULT_BUCKET",
    "DEFAULT_MIME",
    "MIME_BUCKET",
    "StoreError",
    "ValidationError",
    "BucketIdTooLongError",
    "KeyTooLongError",
    "ValueTooLongError",
    "ReservedBucketError",
    "ReservedKeyError",
    "InvalidTableNameError",
    "DatabaseConnectionError",
    "TransactionError",
    "ConcurrentUseError",
]
