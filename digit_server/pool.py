"""Connection pool for the inference queries.

A thin layer over python-oracledb's ``AsyncConnectionPool``. The driver
does the lending, waiting and replacing of connections; this module adds
what the server needs on top:

* a startup probe so a bad database fails before the port is bound,
* scoped acquisition that drops a connection when its request failed,
* a one-shot shutdown that lets borrowers finish within a grace period,
* the ``PoolError`` family the dispatcher turns into responses.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import oracledb

log = logging.getLogger(__name__)

# Called with the pool sizing keywords; production passes a partial of
# oracledb.create_pool_async with the credentials already bound.
PoolFactory = Callable[..., Any]

_WAIT_TIMEOUT_CODE = "DPY-4005"
_DRAIN_POLL_INTERVAL = 0.05


class PoolError(Exception):
    """Base class for connection pool failures."""


class PoolInitFailure(PoolError):
    """The pool could not open its initial connections."""


class PoolExhausted(PoolError):
    """No connection can be handed out (pool saturated or closing)."""


class AcquireTimeout(PoolExhausted):
    """Waited longer than the acquisition timeout for a free connection."""


class PoolCloseFailure(PoolError):
    """The driver pool failed to close during shutdown."""


class ConnectionPool:
    """Lends connections from a driver pool to one borrower at a time.

    Args:
        create_pool: returns a driver pool when called with ``min``,
            ``max``, ``increment``, ``getmode`` and ``wait_timeout``.
        min_size: connections the driver keeps open.
        max_size: upper bound on open connections.
        acquire_timeout: seconds a borrower may wait on a saturated pool.
            ``None`` waits forever.
    """

    def __init__(
        self,
        create_pool: PoolFactory,
        min_size: int = 0,
        max_size: int = 4,
        acquire_timeout: float | None = 60.0,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if not 0 <= min_size <= max_size:
            raise ValueError("min_size must be between 0 and max_size")
        self._create_pool = create_pool
        self._min_size = min_size
        self._max_size = max_size
        self._acquire_timeout = acquire_timeout
        self._pool: Any = None
        self._acquiring = 0
        self._initialized = False
        self._closing = False
        self._closed = False

    # -- Accounting --------------------------------------------------------------

    @property
    def size(self) -> int:
        return self._pool.opened if self._pool is not None and not self._closed else 0

    @property
    def in_use_count(self) -> int:
        return self._pool.busy if self._pool is not None and not self._closed else 0

    @property
    def idle_count(self) -> int:
        return self.size - self.in_use_count

    @property
    def min_size(self) -> int:
        return self._min_size

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def closed(self) -> bool:
        return self._closed

    def _pool_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "min": self._min_size,
            "max": self._max_size,
            "increment": 1,
        }
        if self._acquire_timeout is None:
            params["getmode"] = oracledb.POOL_GETMODE_WAIT
        else:
            params["getmode"] = oracledb.POOL_GETMODE_TIMEDWAIT
            params["wait_timeout"] = int(self._acquire_timeout * 1000)
        return params

    # -- Lifecycle ---------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the driver pool and borrow one connection from it.

        The probe runs even with ``min_size=0`` so bad credentials or an
        unreachable database fail here, not on the first request. The probe
        connection goes back to the pool as an idle connection.

        Raises:
            PoolInitFailure: the database is unreachable or rejected the
                credentials. The driver pool is closed first.
        """
        if self._initialized:
            raise PoolError("Connection pool already initialized")
        self._initialized = True
        try:
            self._pool = self._create_pool(**self._pool_params())
            conn = await self._pool.acquire()
            await self._pool.release(conn)
        except Exception as exc:
            self._closing = True
            self._closed = True
            if self._pool is not None:
                await self._close_after_failed_start()
            raise PoolInitFailure(f"Could not create connection pool: {exc}") from exc
        log.info(
            "Connection pool ready (min=%d, max=%d)", self._min_size, self._max_size
        )

    async def _close_after_failed_start(self) -> None:
        try:
            await self._pool.close(force=True)
        except oracledb.Error:
            log.warning("Could not close connection pool after failed start", exc_info=True)

    async def shutdown(self, grace_period: float = 10.0) -> None:
        """Stop lending, wait for borrowers, then force-close the driver pool.

        Borrowers still waiting for a connection count as busy: shutdown
        waits for them too, and they fail with ``PoolExhausted``.

        Raises:
            PoolCloseFailure: the driver reported an error while closing.
        """
        if self._closing:
            raise PoolError("Connection pool already shut down")
        self._closing = True
        if self._pool is None:
            self._closed = True
            return

        if not self._drained():
            log.info(
                "Waiting up to %.1fs for %d borrowed connection(s)",
                grace_period, self._pool.busy + self._acquiring,
            )
            try:
                await asyncio.wait_for(self._wait_drained(), timeout=grace_period)
            except asyncio.TimeoutError:
                log.warning(
                    "Grace period elapsed, force-closing %d connection(s)",
                    self._pool.busy,
                )

        try:
            await self._pool.close(force=True)
        except oracledb.Error as exc:
            raise PoolCloseFailure(f"Could not close connection pool: {exc}") from exc
        finally:
            self._closed = True
        log.info("Connection pool closed")

    def _drained(self) -> bool:
        return self._acquiring == 0 and self._pool.busy == 0

    async def _wait_drained(self) -> None:
        while not self._drained():
            await asyncio.sleep(_DRAIN_POLL_INTERVAL)

    # -- Borrowing ---------------------------------------------------------------

    async def acquire(self) -> Any:
        """Check out a connection, waiting while the pool is saturated.

        Raises:
            AcquireTimeout: no connection freed up within the timeout.
            PoolExhausted: the pool is shutting down.
            PoolError: a new connection could not be opened.
        """
        if self._closing:
            raise PoolExhausted("Connection pool is closing")
        if self._pool is None:
            raise PoolError("Connection pool is not initialized")

        self._acquiring += 1
        try:
            conn = await self._pool.acquire()
        except oracledb.Error as exc:
            if self._closing:
                raise PoolExhausted("Connection pool is closing") from exc
            if _WAIT_TIMEOUT_CODE in str(exc):
                raise AcquireTimeout(
                    f"Timed out after {self._acquire_timeout}s waiting for a "
                    f"connection ({self.in_use_count}/{self._max_size} in use)"
                ) from exc
            raise PoolError(f"Could not open a database connection: {exc}") from exc
        finally:
            self._acquiring -= 1

        if self._closing:
            await self.release(conn)
            raise PoolExhausted("Connection pool is closing")
        return conn

    async def release(self, conn: Any, discard: bool = False) -> None:
        """Return a borrowed connection, or have the driver close and drop it.

        The driver replaces dropped connections in the background.

        Raises:
            PoolError: the driver refused the connection.
        """
        if self._closed:
            # Force-closed by shutdown() while the borrower still held it.
            return
        try:
            if discard:
                await self._pool.drop(conn)
            else:
                await self._pool.release(conn)
        except oracledb.Error as exc:
            raise PoolError(f"Could not return connection to the pool: {exc}") from exc

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Scoped acquisition: always releases, drops on any exception."""
        conn = await self.acquire()
        try:
            yield conn
        except BaseException:
            try:
                await self.release(conn, discard=True)
            except PoolError:
                log.warning("Could not drop failed connection", exc_info=True)
            raise
        await self.release(conn)
