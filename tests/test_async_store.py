"""
Tests for async PlainKV implementation.
"""

import os
import shutil
import sys
import tempfile

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from plainkv import AsyncPlainKV
from plainkv.exceptions import (
    DatabaseConnectionError,
    KeyTooLongError,
    ReservedBucketError,
    ReservedKeyError,
    TransactionError,
    ValueTooLongError,
)


class AsyncStoreTestCase:
    """Base class giving each test its own database file."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, 'async.db')

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestAsyncStoreBasicOperations(AsyncStoreTestCase):
    """Test basic async store operations."""

    @pytest.mark.asyncio
    async def test_async_store_initialization(self):
        store = AsyncPlainKV(self.db_path)
        assert not store.is_open
        await store.open()
        await store.open()
        assert store.is_open
        await store.close()
        await store.close()
        assert not store.is_open

    @pytest.mark.asyncio
    async def test_async_set_get_delete(self):
        async with AsyncPlainKV(self.db_path) as store:
            assert await store.get('key') == b''
            await store.set('key', b'value')
            assert await store.get('key') == b'value'
            await store.delete('key')
            assert await store.get('key') == b''

    @pytest.mark.asyncio
    async def test_async_validation(self):
        async with AsyncPlainKV(self.db_path) as store:
            with pytest.raises(KeyTooLongError):
                await store.set('k' * 301, b'x')
            with pytest.raises(ValueTooLongError):
                await store.set('big', b'x' * 16_777_216)
            with pytest.raises(ReservedKeyError):
                await store.set('_______#tally-x', b'1')
            with pytest.raises(ReservedBucketError):
                store.set_bucket('--mime--')
            assert await store.list_keys() == []

    @pytest.mark.asyncio
    async def test_async_buckets(self):
        async with AsyncPlainKV(self.db_path) as store:
            store.set_bucket('one')
            await store.set('key', b'1')
            store.set_bucket('')
            assert store.bucket == 'default'
            assert await store.get('key') == b''

    @pytest.mark.asyncio
    async def test_async_mime(self):
        async with AsyncPlainKV(self.db_path) as store:
            assert await store.get_mime('doc') == 'text/html'
            await store.set('doc', b'{}')
            await store.set_mime('doc', 'application/json')
            assert await store.get_mime('doc') == 'application/json'
            await store.delete('doc')
            assert await store.get_mime('doc') == 'text/html'

    @pytest.mark.asyncio
    async def test_async_list_keys(self):
        async with AsyncPlainKV(self.db_path) as store:
            for key in ('sample_1', 'sample_2', 'other'):
                await store.set(key, b'x')
            await store.tally('sample_count', 1)
            assert set(await store.list_keys('sample')) == {'sample_1', 'sample_2'}

    @pytest.mark.asyncio
    async def test_async_tally(self):
        async with AsyncPlainKV(self.db_path) as store:
            assert await store.tally('k', 5) == 5
            values = [await store.tally_incr('k') for _ in range(10)]
            assert values == list(range(6, 16))
            assert await store.tally_decr('k') == 14
            await store.tally_reset('k')
            assert await store.tally('k', 3) == 0

    @pytest.mark.asyncio
    async def test_async_set_table_name(self):
        async with AsyncPlainKV(self.db_path) as store:
            await store.set('key', b'main')
            await store.set_table_name('Other')
            assert await store.get('key') == b''
            await store.set_table_name('KeyValueTBL')
            assert await store.get('key') == b'main'

    @pytest.mark.asyncio
    async def test_async_malformed_descriptor(self):
        store = AsyncPlainKV(self.db_path + '?_pragma=bad')
        with pytest.raises(DatabaseConnectionError):
            await store.open()
        assert not store.is_open


class TestAsyncStoreTransactions(AsyncStoreTestCase):
    """Test async transaction lifecycle operations."""

    @pytest.mark.asyncio
    async def test_async_begin_commit(self):
        async with AsyncPlainKV(self.db_path) as store:
            tx_id = await store.begin()
            assert store.has_active_transaction()
            assert store.get_current_transaction_id() == tx_id
            await store.set('key', b'value')
            await store.commit()
            assert not store.has_active_transaction()

        async with AsyncPlainKV(self.db_path) as store:
            assert await store.get('key') == b'value'

    @pytest.mark.asyncio
    async def test_async_commit_and_rollback_without_transaction(self):
        async with AsyncPlainKV(self.db_path) as store:
            await store.commit()
            await store.rollback()
            assert not store.has_active_transaction()

    @pytest.mark.asyncio
    async def test_async_double_begin(self):
        async with AsyncPlainKV(self.db_path) as store:
            await store.begin()
            with pytest.raises(TransactionError):
                await store.begin()
            await store.rollback()

    @pytest.mark.asyncio
    async def test_async_rollback_restores_state(self):
        async with AsyncPlainKV(self.db_path) as store:
            await store.set('a', b'1')
            await store.tally('t', 3)

            await store.begin()
            await store.set('a', b'2')
            await store.set('b', b'new')
            await store.tally_incr('t')
            await store.delete('a')
            await store.rollback()

            assert await store.get('a') == b'1'
            assert await store.get('b') == b''
            assert await store.tally('t') == 3

    @pytest.mark.asyncio
    async def test_async_transaction_context_manager(self):
        async with AsyncPlainKV(self.db_path) as store:
            async with store.transaction():
                await store.set('kept', b'1')

            with pytest.raises(RuntimeError):
                async with store.transaction():
                    await store.set('lost', b'2')
                    raise RuntimeError('boom')

            assert await store.get('kept') == b'1'
            assert await store.get('lost') == b''

    @pytest.mark.asyncio
    async def test_async_close_discards_transaction(self):
        store = AsyncPlainKV(self.db_path)
        await store.begin()
        await store.set('lost', b'1')
        await store.close()
        assert not store.has_active_transaction()

        async with AsyncPlainKV(self.db_path) as other:
            assert await other.get('lost') == b''
