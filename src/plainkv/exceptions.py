"""
Custom exceptions for the bucketed key-value store.
"""


class StoreError(Exception):
    """Base exception for all store-related errors."""
    pass


class ValidationError(StoreError, ValueError):
    """Exception raised when an argument is rejected before touching the database."""
    pass


class BucketIdTooLongError(ValidationError):
    """Exception raised when a bucket name exceeds 50 bytes."""

    def __init__(self, message: str = "bucket id too long") -> None:
        super().__init__(message)


class KeyTooLongError(ValidationError):
    """Exception raised when a key exceeds 300 bytes."""

    def __init__(self, message: str = "key too long") -> None:
        super().__init__(message)


class ValueTooLongError(ValidationError):
    """Exception raised when a value exceeds 16,777,215 bytes."""

    def __init__(self, message: str = "value too large") -> None:
        super().__init__(message)


class ReservedBucketError(ValidationError):
    """Exception raised when a caller picks the bucket reserved for mime records."""
    pass


class ReservedKeyError(ValidationError):
    """Exception raised when a data key uses the reserved counter prefix."""
    pass


class InvalidTableNameError(ValidationError):
    """Exception raised for table names that are not plain SQL identifiers."""
    pass


class DatabaseConnectionError(StoreError):
    """Exception raised when the database cannot be opened or the DSN is malformed."""
    pass


class TransactionError(StoreError):
    """Exception raised for transaction-related errors."""
    pass


class ConcurrentUseError(TransactionError):
    """Exception raised when an active transaction is used from two calls at once."""
    pass
