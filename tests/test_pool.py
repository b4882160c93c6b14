"""Tests for the bounded connection pool.

``psycopg_pool.ConnectionPool`` is swapped for ``FakePsycopgPool``, which
keeps the parts of its contract the wrapper relies on: ``open`` pre-warms,
``getconn`` blocks then raises ``PoolTimeout``, ``close`` fails waiters with
``PoolClosed`` and ``putconn`` replaces broken connections.
"""

import itertools
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import psycopg_pool
import pytest

from authcore.config import Settings
from authcore.storage.errors import PoolClosed, PoolError, PoolExhausted
from authcore.storage.pool import ConnectionPool, connection_kwargs


class FakeConnection:
    _ids = itertools.count(1)

    def __init__(self):
        self.id = next(self._ids)
        self.closed = False
        self.broken = False

    def close(self):
        self.closed = True


class FakePsycopgPool:
    instances = []

    def __init__(self, conninfo, *, kwargs, min_size, max_size, timeout, check, name, open):
        self.conninfo = conninfo
        self.init_kwargs = dict(
            kwargs=kwargs, min_size=min_size, max_size=max_size, timeout=timeout, check=check, name=name, open=open
        )
        self.opened = []
        self.fail_open = False
        self.fail_putconn = False
        self._idle = []
        self._waiting = 0
        self._closed = True
        self._cond = threading.Condition()
        FakePsycopgPool.instances.append(self)

    def _connect(self):
        conn = FakeConnection()
        self.opened.append(conn)
        return conn

    def open(self, wait=False, timeout=30.0):
        if self.fail_open:
            raise psycopg_pool.PoolTimeout("pool initialization incomplete")
        with self._cond:
            self._closed = False
            self._idle = [self._connect() for _ in range(self.init_kwargs["min_size"])]

    def getconn(self, timeout=None):
        deadline = time.monotonic() + timeout
        with self._cond:
            self._waiting += 1
            try:
                while True:
                    if self._closed:
                        raise psycopg_pool.PoolClosed("the pool is closed")
                    if self._idle:
                        return self._idle.pop(0)
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise psycopg_pool.PoolTimeout("couldn't get a connection")
                    self._cond.wait(remaining)
            finally:
                self._waiting -= 1

    def putconn(self, conn):
        if self.fail_putconn:
            raise RuntimeError("putconn failed")
        with self._cond:
            if self._closed:
                conn.close()
                return
            if conn.broken:
                conn.close()
                conn = self._connect()
            self._idle.append(conn)
            self._cond.notify()

    def close(self, timeout=5.0):
        with self._cond:
            self._closed = True
            for conn in self._idle:
                conn.close()
            self._idle = []
            self._cond.notify_all()

    def get_stats(self):
        with self._cond:
            return {
                "pool_min": self.init_kwargs["min_size"],
                "pool_max": self.init_kwargs["max_size"],
                "pool_size": len([c for c in self.opened if not c.closed]),
                "pool_available": len(self._idle),
                "requests_waiting": self._waiting,
            }


class FailingOpenPool(FakePsycopgPool):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_open = True


def make_pool(capacity=2, timeout=0.1, pool_class=FakePsycopgPool):
    return ConnectionPool("postgresql://db/auth", capacity=capacity, timeout=timeout, pool_class=pool_class)


class TestLifecycle:
    """Pre-warm, borrow/release, and construction checks."""

    def test_builds_fixed_size_checked_pool(self):
        pool = make_pool(capacity=3, timeout=2.0)
        inner = pool._pool

        assert inner.init_kwargs["min_size"] == 3
        assert inner.init_kwargs["max_size"] == 3
        assert inner.init_kwargs["timeout"] == 2.0
        assert inner.init_kwargs["check"] is psycopg_pool.ConnectionPool.check_connection
        assert inner.init_kwargs["open"] is False
        assert len(inner.opened) == 3
        assert pool.stats() == {
            "capacity": 3,
            "size": 3,
            "idle": 3,
            "leased": 0,
            "waiting": 0,
            "closed": False,
        }

    def test_prewarm_failure_raises_pool_error(self):
        with pytest.raises(PoolError):
            make_pool(capacity=4, pool_class=FailingOpenPool)

        assert FakePsycopgPool.instances[-1]._closed

    @pytest.mark.parametrize("capacity,timeout", [(0, 1.0), (2, -1.0)])
    def test_invalid_arguments(self, capacity, timeout):
        with pytest.raises(ValueError):
            make_pool(capacity=capacity, timeout=timeout)

    def test_borrow_and_release(self):
        pool = make_pool()

        conn = pool.borrow()
        assert pool.stats()["leased"] == 1
        assert pool.stats()["idle"] == 1

        pool.release(conn)
        assert pool.stats()["leased"] == 0
        assert pool.stats()["idle"] == 2

    def test_context_manager_releases_on_error(self):
        pool = make_pool()

        with pytest.raises(RuntimeError):
            with pool.connection():
                raise RuntimeError("query failed")

        assert pool.stats()["leased"] == 0
        assert pool.stats()["idle"] == 2

    def test_release_of_foreign_connection(self):
        pool = make_pool()

        with pytest.raises(PoolError):
            pool.release(FakeConnection())

    def test_double_release(self):
        pool = make_pool()
        conn = pool.borrow()
        pool.release(conn)

        with pytest.raises(PoolError):
            pool.release(conn)

    def test_failed_return_closes_connection(self):
        pool = make_pool()
        conn = pool.borrow()
        pool._pool.fail_putconn = True

        with pytest.raises(PoolError):
            pool.release(conn)

        assert conn.closed
        assert pool.stats()["leased"] == 0


class TestSettings:
    def test_connection_kwargs(self):
        settings = Settings(
            jwt_secret="s",
            database_user="app",
            database_password="hunter2",
            database_connect_timeout_seconds=3,
        )

        kwargs = connection_kwargs(settings)

        assert kwargs["autocommit"] is True
        assert kwargs["connect_timeout"] == 3
        assert kwargs["user"] == "app"
        assert kwargs["password"] == "hunter2"

    def test_credentials_omitted_when_unset(self):
        kwargs = connection_kwargs(Settings(jwt_secret="s"))

        assert "user" not in kwargs
        assert "password" not in kwargs


class TestExhaustion:
    """Waiting for a connection when every one is leased."""

    def test_times_out_when_all_leased(self):
        pool = make_pool(capacity=1, timeout=0.05)
        pool.borrow()

        started = time.monotonic()
        with pytest.raises(PoolExhausted):
            pool.borrow()
        assert time.monotonic() - started >= 0.05

    def test_waiter_receives_released_connection(self):
        pool = make_pool(capacity=1, timeout=2.0)
        held = pool.borrow()
        received = []

        waiter = threading.Thread(target=lambda: received.append(pool.borrow()))
        waiter.start()
        time.sleep(0.05)
        pool.release(held)
        waiter.join(timeout=2.0)

        assert received == [held]

    def test_exhausted_is_a_pool_error(self):
        assert issubclass(PoolExhausted, PoolError)
        assert issubclass(PoolClosed, PoolError)


class TestBrokenConnections:
    def test_broken_connection_is_replaced_on_release(self):
        pool = make_pool(capacity=1)
        conn = pool.borrow()
        conn.broken = True
        pool.release(conn)

        replacement = pool.borrow()

        assert replacement is not conn
        assert conn.closed
        assert not replacement.closed


class TestShutdown:
    def test_rejects_borrow_after_shutdown(self):
        pool = make_pool()
        pool.shutdown()

        assert pool.closed
        with pytest.raises(PoolClosed):
            pool.borrow()

    def test_leased_connection_closed_on_release(self):
        pool = make_pool()
        conn = pool.borrow()
        pool.shutdown()

        pool.release(conn)

        assert conn.closed
        assert pool.stats()["leased"] == 0

    def test_shutdown_is_idempotent(self):
        pool = make_pool()
        pool.shutdown()
        pool.shutdown()

        assert pool.stats()["closed"] is True

    def test_shutdown_wakes_waiters(self):
        pool = make_pool(capacity=1, timeout=5.0)
        pool.borrow()
        errors = []

        def wait_for_connection():
            try:
                pool.borrow()
            except PoolError as exc:
                errors.append(exc)

        waiter = threading.Thread(target=wait_for_connection)
        waiter.start()
        time.sleep(0.05)
        started = time.monotonic()
        pool.shutdown()
        waiter.join(timeout=2.0)

        assert not waiter.is_alive()
        assert time.monotonic() - started < 2.0
        assert len(errors) == 1
        assert isinstance(errors[0], PoolClosed)


class TestConcurrency:
    """Many threads contend for few connections."""

    def test_no_connection_is_shared_and_capacity_holds(self):
        capacity = 4
        pool = make_pool(capacity=capacity, timeout=10.0)
        lock = threading.Lock()
        in_use = set()
        peak = [0]
        violations = []

        def worker(_):
            for _ in range(25):
                with pool.connection() as conn:
                    with lock:
                        if conn.id in in_use:
                            violations.append(conn.id)
                        in_use.add(conn.id)
                        peak[0] = max(peak[0], len(in_use))
                    time.sleep(0.0005)
                    with lock:
                        in_use.discard(conn.id)

        with ThreadPoolExecutor(max_workers=64) as executor:
            list(executor.map(worker, range(64)))

        assert violations == []
        assert peak[0] <= capacity
        stats = pool.stats()
        assert stats["leased"] == 0
        assert stats["idle"] == capacity
        assert len(pool._pool.opened) == capacity
