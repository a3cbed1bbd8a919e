"""
Content-type metadata stored as records in the reserved mime bucket.
"""

from .keys import DEFAULT_MIME, MIME_BUCKET
from .storage import RecordStore
from .transaction import UnitOfWork


class MetadataStore:
    """
    Mime types keyed by the same key space as the data records.

    Nothing ties a mime record to its data record except the key;
    ``RecordStore.delete`` removes both, everything else keeps them apart.
    """

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    def get_mime(self, uow: UnitOfWork, key: str) -> str:
        raw = self._records.get(uow, MIME_BUCKET, key)
        if not raw:
            return DEFAULT_MIME
        return raw.decode("utf-8", errors="replace")

    def set_mime(self, uow: UnitOfWork, key: str, mime: str) -> None:
        self._records.set(uow, MIME_BUCKET, key, mime.encode("utf-8"))
