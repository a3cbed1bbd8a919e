"""
Integer counters ("tallies") stored as decimal strings.
"""

from .keys import decode_tally, encode_tally, tally_key
from .storage import RecordStore
from .transaction import UnitOfWork


class CounterStore:
    """
    Read-then-write counters kept beside the data records of a bucket.

    Each mutation is a read followed by a write. Both statements run in the
    unit of work they are given, so they are only atomic against other
    writers when that unit holds the write lock (implicit write units do,
    explicit ones do after their first write).
    """

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    def tally(self, uow: UnitOfWork, bucket: str, key: str, offset: int = 0) -> int:
        """Current value of the counter, created with ``offset`` if absent."""
        name = tally_key(key)
        raw = self._records.get(uow, bucket, name)
        if not raw:
            self._records.set(uow, bucket, name, encode_tally(offset))
            return offset
        return decode_tally(raw, key)

    def _step(self, uow: UnitOfWork, bucket: str, key: str, delta: int) -> int:
        value = self.tally(uow, bucket, key, 0) + delta
        self._records.set(uow, bucket, tally_key(key), encode_tally(value))
        return value

    def incr(self, uow: UnitOfWork, bucket: str, key: str) -> int:
        return self._step(uow, bucket, key, 1)

    def decr(self, uow: UnitOfWork, bucket: str, key: str) -> int:
        return self._step(uow, bucket, key, -1)

    def reset(self, uow: UnitOfWork, bucket: str, key: str) -> None:
        self._records.set(uow, bucket, tally_key(key), encode_tally(0))
