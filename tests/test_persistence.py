"""
Tests for the connection layer and on-disk persistence.
"""

import os
import shutil
import sqlite3
import sys
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from plainkv import ConnectionDescriptor, ConnectionManager, ConnectionPool, PlainKV
from plainkv.exceptions import DatabaseConnectionError, InvalidTableNameError


class TestConnectionDescriptor:
    """Test DSN parsing."""

    def test_plain_path(self):
        descriptor = ConnectionDescriptor.parse('local.dat')
        assert descriptor.database == 'local.dat'
        assert not descriptor.uri
        assert descriptor.pragmas == ()
        assert descriptor.txlock == 'deferred'
        assert not descriptor.is_memory

    def test_pragmas(self):
        descriptor = ConnectionDescriptor.parse(
            'local.dat?_pragma=journal_mode(WAL)&_pragma=busy_timeout(5000)'
        )
        assert descriptor.database == 'local.dat'
        assert descriptor.pragmas == (('journal_mode', 'WAL'), ('busy_timeout', '5000'))

    def test_txlock(self):
        descriptor = ConnectionDescriptor.parse('local.dat?_txlock=IMMEDIATE')
        assert descriptor.txlock == 'immediate'

    def test_memory(self):
        assert ConnectionDescriptor.parse(':memory:').is_memory
        assert ConnectionDescriptor.parse('file:mem1?mode=memory&cache=shared').is_memory

    def test_uri_passthrough(self):
        descriptor = ConnectionDescriptor.parse('file:data.db?mode=ro&_pragma=foreign_keys(1)')
        assert descriptor.uri
        assert descriptor.database == 'file:data.db?mode=ro'
        assert descriptor.pragmas == (('foreign_keys', '1'),)

    @pytest.mark.parametrize('dsn', [
        '',
        '   ',
        '?_pragma=journal_mode(WAL)',
        'local.dat?_pragma=journal_mode',
        'local.dat?_pragma=journal_mode(WAL);DROP',
        'local.dat?_txlock=sometimes',
        'local.dat?mode=ro',
    ])
    def test_malformed(self, dsn):
        with pytest.raises(DatabaseConnectionError):
            ConnectionDescriptor.parse(dsn)


class TestConnectionPool:
    """Test the connection pool."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.descriptor = ConnectionDescriptor.parse(os.path.join(self.temp_dir, 'pool.db'))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_connections_are_reused(self):
        pool = ConnectionPool(self.descriptor, pool_size=2)
        conn = pool.acquire()
        pool.release(conn)
        assert pool.acquire() is conn
        pool.shutdown()

    def test_connections_are_autocommit(self):
        pool = ConnectionPool(self.descriptor, pool_size=1)
        conn = pool.acquire()
        assert conn.isolation_level is None
        pool.release(conn)
        pool.shutdown()

    def test_pool_exhaustion(self):
        pool = ConnectionPool(self.descriptor, pool_size=1, acquire_timeout=0.1)
        conn = pool.acquire()
        with pytest.raises(DatabaseConnectionError):
            pool.acquire()
        pool.release(conn)
        pool.shutdown()

    def test_expired_connections_are_replaced(self):
        pool = ConnectionPool(self.descriptor, pool_size=1, max_lifetime=0.01)
        first = pool.acquire()
        time.sleep(0.05)
        pool.release(first)
        second = pool.acquire()
        assert second is not first
        pool.release(second)
        pool.shutdown()

    def test_release_rolls_back_open_transaction(self):
        pool = ConnectionPool(self.descriptor, pool_size=1)
        conn = pool.acquire()
        conn.execute("BEGIN")
        pool.release(conn)
        assert not conn.in_transaction
        pool.shutdown()

    def test_acquire_after_shutdown(self):
        pool = ConnectionPool(self.descriptor, pool_size=1)
        pool.shutdown()
        with pytest.raises(DatabaseConnectionError):
            pool.acquire()

    def test_release_after_shutdown_closes_connection(self):
        pool = ConnectionPool(self.descriptor, pool_size=1)
        conn = pool.acquire()
        pool.shutdown()
        pool.release(conn)
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")

    def test_release_racing_shutdown_leaves_nothing_idle(self):
        pool = ConnectionPool(self.descriptor, pool_size=8)
        conns = [pool.acquire() for _ in range(8)]

        with ThreadPoolExecutor(max_workers=9) as executor:
            futures = [executor.submit(pool.release, conn) for conn in conns]
            futures.append(executor.submit(pool.shutdown))
            for future in futures:
                future.result()

        for conn in conns:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute("SELECT 1")

    def test_pool_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ConnectionPool(self.descriptor, pool_size=0)

    def test_pragmas_are_applied(self):
        descriptor = ConnectionDescriptor.parse(
            os.path.join(self.temp_dir, 'wal.db') + '?_pragma=journal_mode(WAL)'
        )
        pool = ConnectionPool(descriptor, pool_size=1)
        conn = pool.acquire()
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        pool.release(conn)
        pool.shutdown()
        assert mode.lower() == 'wal'


class TestConnectionManager:
    """Test the connection manager."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, 'manager.db')

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_open_is_idempotent(self):
        manager = ConnectionManager(self.db_path)
        manager.open()
        manager.open()
        assert manager.is_open
        manager.close()
        manager.close()
        assert not manager.is_open

    def test_acquire_requires_open(self):
        manager = ConnectionManager(self.db_path)
        with pytest.raises(DatabaseConnectionError):
            manager.acquire()

    def test_malformed_descriptor(self):
        manager = ConnectionManager(self.db_path + '?_pragma=oops')
        with pytest.raises(DatabaseConnectionError):
            manager.open()
        assert not manager.is_open

    def test_unreachable_database(self):
        manager = ConnectionManager(os.path.join(self.temp_dir, 'no', 'such', 'dir.db'))
        with pytest.raises(DatabaseConnectionError):
            manager.open()
        assert not manager.is_open

    def test_invalid_table_name(self):
        with pytest.raises(InvalidTableNameError):
            ConnectionManager(self.db_path, table_name='drop table')

    def test_autoclose_waits_for_last_user(self):
        manager = ConnectionManager(self.db_path)
        with manager.in_use(autoclose=True):
            with manager.in_use(autoclose=True):
                assert manager.users == 2
            # The outer operation still holds the pool.
            assert manager.is_open
            conn = manager.acquire()
            manager.release(conn)
        assert manager.users == 0
        assert not manager.is_open

    def test_autoclose_respects_idle_check(self):
        manager = ConnectionManager(self.db_path)
        with manager.in_use(autoclose=True, idle=lambda: False):
            pass
        assert manager.is_open
        manager.close_if_idle(autoclose=True)
        assert not manager.is_open

    def test_retire_closes_once_idle(self):
        manager = ConnectionManager(self.db_path)
        with manager.in_use():
            manager.retire()
            assert manager.is_open
        assert not manager.is_open

        with manager.in_use():
            assert manager.is_open
        assert not manager.is_open


class TestPersistence:
    """Test data surviving across store instances."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, 'persist.db')

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_data_survives_reopen(self):
        with PlainKV(self.db_path) as store:
            store.set_bucket('pages')
            store.set('index', b'<h1>hi</h1>')
            store.set_mime('index', 'text/html; charset=utf-8')
            store.tally('views', 10)

        with PlainKV(self.db_path) as store:
            store.set_bucket('pages')
            assert store.get('index') == b'<h1>hi</h1>'
            assert store.get_mime('index') == 'text/html; charset=utf-8'
            assert store.tally_incr('views') == 11

    def test_wal_descriptor(self):
        dsn = self.db_path + '?_pragma=journal_mode(WAL)'
        with PlainKV(dsn) as store:
            store.set('key', b'value')

        conn = sqlite3.connect(self.db_path)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode.lower() == 'wal'

    def test_text_values_written_by_other_tools(self):
        with PlainKV(self.db_path):
            pass

        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT INTO KeyValueTBL (Bucket, KeyID, Value) VALUES ('default', 'txt', 'hello')"
        )
        conn.commit()
        conn.close()

        with PlainKV(self.db_path) as store:
            assert store.get('txt') == b'hello'

    def test_immediate_txlock(self):
        dsn = self.db_path + '?_txlock=immediate'
        with PlainKV(dsn) as store, PlainKV(self.db_path + '?_pragma=busy_timeout(0)') as other:
            store.begin()
            # The write lock is taken at BEGIN, before any statement.
            with pytest.raises(sqlite3.OperationalError):
                other.set('key', b'value')
            store.rollback()
