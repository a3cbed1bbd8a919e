"""
Store manager for handling PlainKV instances per bucket.
"""
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Iterator, List

from django.conf import settings

from plainkv import PlainKV
from plainkv.keys import check_bucket_length


def _new_store(bucket: str) -> PlainKV:
    check_bucket_length(bucket)
    store = PlainKV(
        settings.PLAINKV_DSN,
        table_name=getattr(settings, 'PLAINKV_TABLE_NAME', 'KeyValueTBL'),
        pool_size=getattr(settings, 'PLAINKV_POOL_SIZE', 10),
    )
    store.set_bucket(bucket)
    return store


class StoreManager:
    """Manages PlainKV instances, one shared instance per recently used bucket."""

    _stores: 'OrderedDict[str, PlainKV]' = OrderedDict()
    _lock = threading.Lock()

    @classmethod
    def max_stores(cls) -> int:
        return getattr(settings, 'PLAINKV_MAX_STORES', 64)

    @classmethod
    def get_store(cls, bucket: str) -> PlainKV:
        """Get or create the shared store for a bucket.

        Shared stores are only used for single operations, never for
        explicit transactions. The least recently used stores are closed
        once more than ``PLAINKV_MAX_STORES`` buckets are cached.
        """
        evicted: List[PlainKV] = []
        with cls._lock:
            store = cls._stores.get(bucket)
            if store is not None:
                cls._stores.move_to_end(bucket)
                return store

            store = _new_store(bucket)
            cls._stores[bucket] = store
            while len(cls._stores) > cls.max_stores():
                evicted.append(cls._stores.popitem(last=False)[1])

        # Requests may still be using an evicted store.
        for old in evicted:
            old.close_when_idle()
        return store

    @classmethod
    @contextmanager
    def session(cls, bucket: str) -> Iterator[PlainKV]:
        """A private store for one request, closed afterwards."""
        store = _new_store(bucket)
        try:
            yield store
        finally:
            store.close()

    @classmethod
    def close_store(cls, bucket: str) -> None:
        """Close and remove a store instance."""
        with cls._lock:
            store = cls._stores.pop(bucket, None)
        if store is not None:
            store.close()

    @classmethod
    def close_all_stores(cls) -> None:
        """Close all store instances."""
        for bucket in list(cls._stores.keys()):
            cls.close_store(bucket)


# Global store manager instance
store_manager = StoreManager()
