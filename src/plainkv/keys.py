"""
Naming rules shared by the sync and async stores.

Every record lives in one table keyed by ``(Bucket, KeyID)``. Mime types
and counters are ordinary records distinguished only by where they live:
mime types in a reserved bucket, counters under a reserved key prefix.
"""

import logging
import re
from typing import Union

from .exceptions import (
    BucketIdTooLongError,
    KeyTooLongError,
    ReservedBucketError,
    ReservedKeyError,
    ValueTooLongError,
)

logger = logging.getLogger(__name__)

BytesLike = Union[bytes, bytearray, memoryview]

DEFAULT_BUCKET = "default"
MIME_BUCKET = "--mime--"
DEFAULT_MIME = "text/html"

# Same prefix the record format has always used on disk.
TALLY_PREFIX = "_______#tally-"

MAX_BUCKET_BYTES = 50
MAX_KEY_BYTES = 300
MAX_VALUE_BYTES = 16_777_215

_TALLY_RE = re.compile(r"[+-]?[0-9]+")


def normalize_bucket(bucket: str) -> str:
    """Map the empty bucket name onto ``"default"``."""
    return bucket or DEFAULT_BUCKET


def check_bucket_length(bucket: str) -> None:
    if len(bucket.encode("utf-8")) > MAX_BUCKET_BYTES:
        raise BucketIdTooLongError()


def check_data_bucket(bucket: str) -> str:
    """Normalize a caller-chosen bucket and refuse the reserved mime bucket."""
    bucket = normalize_bucket(bucket)
    if bucket == MIME_BUCKET:
        raise ReservedBucketError(f"bucket '{MIME_BUCKET}' is reserved for mime types")
    return bucket


def check_data_key(key: str) -> None:
    """Refuse keys that would shadow a counter record."""
    if key.startswith(TALLY_PREFIX):
        raise ReservedKeyError(f"keys starting with '{TALLY_PREFIX}' are reserved")


def validate_record(bucket: str, key: str, value: BytesLike) -> bytes:
    """
    Check the size bounds of a record about to be written.

    Returns:
        The value as ``bytes``, ready to bind as a BLOB

    Raises:
        TypeError: If value is not bytes-like
        BucketIdTooLongError, KeyTooLongError, ValueTooLongError
    """
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise TypeError(f"value must be bytes-like, not {type(value).__name__}")
    check_bucket_length(bucket)
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise KeyTooLongError()
    value = bytes(value)
    if len(value) > MAX_VALUE_BYTES:
        raise ValueTooLongError()
    return value


def tally_key(key: str) -> str:
    """Name of the record holding the counter for ``key``."""
    return TALLY_PREFIX + key


def encode_tally(value: int) -> bytes:
    return str(value).encode("ascii")


def decode_tally(raw: bytes, key: str = "") -> int:
    """Parse a stored counter; anything that is not an integer reads as 0."""
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError:
        text = ""
    if _TALLY_RE.fullmatch(text):
        return int(text)
    logger.warning("Counter %r holds non-numeric value %r, treating as 0", key, raw[:32])
    return 0
