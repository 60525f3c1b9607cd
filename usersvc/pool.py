"""Bounded PostgreSQL connection pool."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

import anyio
import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from .config import Settings

logger = logging.getLogger("usersvc.pool")

REAP_INTERVAL = 1.0


class PoolError(psycopg2.pool.PoolError):
    """Base class for failures to obtain a pooled connection."""


class PoolTimeout(PoolError):
    """Raised when no connection became available within the acquisition window."""


class PoolClosed(PoolError):
    """Raised when acquiring from a pool that has been closed."""


def _is_closed(connection: Any) -> bool:
    return bool(getattr(connection, "closed", False))


def _close_quietly(connection: Any) -> None:
    if _is_closed(connection):
        return
    try:
        connection.close()
    except psycopg2.Error as exc:
        logger.warning("Failed to close pooled connection: %s", exc)


class ConnectionPool:
    """Hand out at most ``max_size`` connections, one query at a time.

    Connections are stored in a :class:`psycopg2.pool.ThreadedConnectionPool`.
    Callers wait at most ``acquire_timeout`` seconds for a free slot before
    :class:`PoolTimeout` is raised. Connections left idle longer than
    ``idle_timeout`` seconds are closed by :meth:`prune_idle`. The pool never
    retries queries; connection failures propagate to the caller.
    """

    def __init__(
        self,
        connect_kwargs: Optional[Mapping[str, object]] = None,
        *,
        max_size: int = 10,
        idle_timeout: float = 30.0,
        acquire_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("Pool size must be at least 1")
        # Nothing is opened up front; once running, up to max_size released
        # connections are kept for reuse instead of being closed by putconn.
        self._connections = psycopg2.pool.ThreadedConnectionPool(
            0, max_size, **dict(connect_kwargs or {})
        )
        self._connections.minconn = max_size
        self._max_size = max_size
        self._idle_timeout = idle_timeout
        self._acquire_timeout = acquire_timeout
        self._clock = clock
        self._slots = threading.BoundedSemaphore(max_size)
        self._lock = threading.Lock()
        self._released_at: Dict[int, float] = {}
        self._in_use = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._released_at)

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def closed(self) -> bool:
        return bool(self._connections.closed)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Check out a connection for the duration of the ``with`` block."""

        conn = self._checkout()
        discard = False
        try:
            yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            discard = True
            raise
        finally:
            self._checkin(conn, discard=discard)

    def prune_idle(self) -> int:
        """Close idle connections older than ``idle_timeout``; return how many."""

        with self._lock:
            if self.closed:
                return 0
            now = self._clock()
            if not any(self._expired(now, released) for released in self._released_at.values()):
                return 0
            idle = [self._connections.getconn() for _ in range(len(self._released_at))]
            pruned = 0
            for conn in idle:
                released = self._released_at.pop(id(conn), now)
                if _is_closed(conn) or self._expired(now, released):
                    self._connections.putconn(conn, close=True)
                    pruned += 1
                else:
                    self._put_idle(conn, released)
        if pruned:
            logger.debug("Closed %d idle connection(s)", pruned)
        return pruned

    def close(self) -> None:
        """Close every connection and refuse further checkouts."""

        with self._lock:
            if self.closed:
                return
            idle = len(self._released_at)
            self._connections.closeall()
            self._released_at.clear()
        logger.info("Connection pool closed (%d idle connection(s) released)", idle)

    def _expired(self, now: float, released: float) -> bool:
        return now - released > self._idle_timeout

    def _put_idle(self, conn: Any, released: float) -> None:
        self._connections.putconn(conn)
        # putconn closes connections left in an unknown transaction state.
        if not _is_closed(conn):
            self._released_at[id(conn)] = released

    def _checkout(self) -> Any:
        if self.closed:
            raise PoolClosed("Connection pool is closed")
        if not self._slots.acquire(timeout=self._acquire_timeout):
            raise PoolTimeout(
                f"No database connection available within {self._acquire_timeout:g}s"
            )
        try:
            with self._lock:
                conn = self._take_connection()
                self._in_use += 1
        except BaseException:
            self._slots.release()
            raise
        return conn

    def _take_connection(self) -> Any:
        if self.closed:
            raise PoolClosed("Connection pool is closed")
        now = self._clock()
        while True:
            conn = self._connections.getconn()
            released = self._released_at.pop(id(conn), None)
            if released is None:
                break
            if not _is_closed(conn) and not self._expired(now, released):
                break
            self._connections.putconn(conn, close=True)
        if not conn.autocommit:
            conn.autocommit = True
        return conn

    def _checkin(self, conn: Any, *, discard: bool) -> None:
        try:
            with self._lock:
                self._in_use -= 1
                if self.closed:
                    _close_quietly(conn)
                elif discard or _is_closed(conn):
                    self._connections.putconn(conn, close=True)
                else:
                    self._put_idle(conn, self._clock())
            self.prune_idle()
        finally:
            self._slots.release()


async def reap_idle_connections(
    pool: ConnectionPool,
    *,
    interval: float = REAP_INTERVAL,
    sleep: Callable[[float], Any] = anyio.sleep,
) -> None:
    """Prune idle connections every ``interval`` seconds until the pool closes."""

    while not pool.closed:
        await sleep(interval)
        await anyio.to_thread.run_sync(pool.prune_idle)


def create_pool(settings: Settings) -> ConnectionPool:
    """Build the application pool from ``settings``."""

    logger.info(
        "Creating connection pool for %s@%s:%s/%s (max %d connections)",
        settings.db_user,
        settings.db_host,
        settings.db_port,
        settings.db_name,
        settings.pool_max_size,
    )
    return ConnectionPool(
        {**settings.connect_kwargs(), "cursor_factory": RealDictCursor},
        max_size=settings.pool_max_size,
        idle_timeout=settings.pool_idle_timeout,
        acquire_timeout=settings.pool_acquire_timeout,
    )


__all__ = [
    "ConnectionPool",
    "PoolClosed",
    "PoolError",
    "PoolTimeout",
    "create_pool",
    "reap_idle_connections",
]
