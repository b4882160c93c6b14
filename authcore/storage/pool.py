"""Bounded, pre-warmed connection pool over ``psycopg_pool``.

``psycopg_pool`` owns the connections: it opens ``capacity`` of them up
front, checks each one before lending it, rolls back transactions left open
by a borrower and replaces connections that come back broken. This wrapper
pins the pool to a fixed size, keeps its own record of which connections are
leased, and maps pool failures onto the storage error types.
"""

from __future__ import annotations

import contextlib
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Optional

import psycopg
import psycopg_pool
from psycopg.rows import dict_row

from authcore.logging import get_logger, mask_url_password
from authcore.storage.errors import PoolClosed, PoolError, PoolExhausted

if TYPE_CHECKING:
    from authcore.config import Settings

logger = get_logger(__name__)

DEFAULT_CAPACITY = 10
DEFAULT_TIMEOUT = 5.0
DEFAULT_OPEN_TIMEOUT = 30.0


def connection_kwargs(settings: "Settings") -> Dict[str, Any]:
    """Arguments for every pooled ``psycopg.connect``: autocommit, dict rows."""

    kwargs: Dict[str, Any] = {
        "autocommit": True,
        "row_factory": dict_row,
        "connect_timeout": settings.database_connect_timeout_seconds,
    }
    if settings.database_user:
        kwargs["user"] = settings.database_user
    if settings.database_password:
        kwargs["password"] = settings.database_password
    return kwargs


class ConnectionPool:
    """Fixed-capacity pool of database connections.

    Connections are lent to exactly one caller at a time and ``leased + idle``
    never exceeds ``capacity``. ``borrow`` waits at most ``timeout`` seconds.
    ``pool_class`` is the ``psycopg_pool.ConnectionPool`` compatible class
    that actually holds the connections.
    """

    def __init__(
        self,
        conninfo: str = "",
        *,
        capacity: int = DEFAULT_CAPACITY,
        timeout: float = DEFAULT_TIMEOUT,
        kwargs: Optional[Dict[str, Any]] = None,
        check: Optional[Callable[[psycopg.Connection], None]] = psycopg_pool.ConnectionPool.check_connection,
        name: str = "authcore",
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        pool_class: Callable[..., Any] = psycopg_pool.ConnectionPool,
    ) -> None:
        if capacity < 1:
            raise ValueError("pool capacity must be at least 1")
        if timeout < 0:
            raise ValueError("pool timeout must not be negative")
        self.capacity = capacity
        self.timeout = timeout
        self.name = name
        self._lock = threading.Lock()
        self._leased: Dict[int, Any] = {}
        self._closed = False
        self._pool = pool_class(
            conninfo,
            kwargs=kwargs or {},
            min_size=capacity,
            max_size=capacity,
            timeout=timeout,
            check=check,
            name=name,
            open=False,
        )
        self._prewarm(open_timeout)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ConnectionPool":
        logger.info(
            "pool_connecting",
            database_url=mask_url_password(settings.database_url),
            capacity=settings.database_pool_size,
        )
        return cls(
            settings.database_url,
            capacity=settings.database_pool_size,
            timeout=settings.database_pool_timeout_seconds,
            kwargs=connection_kwargs(settings),
        )

    def _prewarm(self, open_timeout: float) -> None:
        try:
            # Blocks until min_size connections are open
            self._pool.open(wait=True, timeout=open_timeout)
        except psycopg_pool.PoolTimeout as exc:
            self._pool.close()
            self._closed = True
            logger.error("pool_prewarm_failed", pool=self.name, error=str(exc))
            raise PoolError(f"unable to open {self.capacity} connections") from exc
        logger.info("pool_initialized", pool=self.name, capacity=self.capacity)

    @property
    def closed(self) -> bool:
        return self._closed

    def borrow(self, timeout: Optional[float] = None) -> Any:
        """Lease a live connection, waiting up to ``timeout`` seconds."""

        wait = self.timeout if timeout is None else timeout
        if self._closed:
            raise PoolClosed(f"pool {self.name} is shut down")
        try:
            conn = self._pool.getconn(timeout=wait)
        except psycopg_pool.PoolClosed as exc:
            raise PoolClosed(f"pool {self.name} is shut down") from exc
        except psycopg_pool.PoolTimeout as exc:
            logger.warning("pool_exhausted", pool=self.name, capacity=self.capacity, waited=wait)
            raise PoolExhausted(
                f"no connection available in pool {self.name} after {wait:.1f}s"
            ) from exc
        with self._lock:
            self._leased[id(conn)] = conn
        return conn

    def release(self, conn: Any) -> None:
        """Return a leased connection.

        Open transactions are rolled back and broken connections replaced by
        ``psycopg_pool``. If handing the connection back fails it is closed,
        so its slot is never lost.
        """

        with self._lock:
            if self._leased.pop(id(conn), None) is None:
                raise PoolError("connection was not leased from this pool")
        try:
            self._pool.putconn(conn)
        except Exception as exc:
            logger.error("pool_release_failed", pool=self.name, error=str(exc))
            self._close_quietly(conn)
            raise PoolError("unable to return a connection to the pool") from exc

    @contextlib.contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """Borrow for the duration of a ``with`` block; released on every exit path."""

        conn = self.borrow(timeout)
        try:
            yield conn
        finally:
            self.release(conn)

    def shutdown(self) -> None:
        """Refuse new borrows, wake waiters and close idle connections.

        Leased connections are closed when they are released.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            leased = len(self._leased)
        self._pool.close()
        logger.info("pool_shutdown", pool=self.name, leased=leased)

    def stats(self) -> dict:
        measures = self._pool.get_stats()
        with self._lock:
            leased = len(self._leased)
        return {
            "capacity": self.capacity,
            "size": measures.get("pool_size", 0),
            "idle": measures.get("pool_available", 0),
            "leased": leased,
            "waiting": measures.get("requests_waiting", 0),
            "closed": self._closed,
        }

    def _close_quietly(self, conn: Any) -> None:
        try:
            conn.close()
        except Exception as exc:
            logger.warning("pool_connection_close_failed", pool=self.name, error=str(exc))


__all__ = ["ConnectionPool", "connection_kwargs"]
