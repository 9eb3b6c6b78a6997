"""Shared pytest configuration for digit server tests."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import oracledb
import pytest

# Add project root to sys.path so `from digit_server.xxx import ...` works.
_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent.parent)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from digit_server.config import Config  # noqa: E402


# ---------------------------------------------------------------------------
# Fake database driver (mimics python-oracledb's async connection and
# connection pool surface)
# ---------------------------------------------------------------------------

class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection
        self._rows: list[tuple] = []

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *exc) -> None:
        return None

    async def execute(self, sql: str, binds: dict) -> None:
        db = self._connection.db
        self._connection.executed.append((sql, binds))
        if db.gate is not None:
            await db.gate.wait()
        if db.execute_error is not None:
            raise db.execute_error
        self._rows = list(db.rows)

    async def fetchall(self) -> list[tuple]:
        return self._rows


class FakeConnection:
    def __init__(self, db: FakeDatabase, number: int) -> None:
        self.db = db
        self.number = number
        self.executed: list[tuple[str, dict]] = []
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    async def close(self) -> None:
        if self.db.close_error is not None:
            raise self.db.close_error
        self.closed = True

    def __repr__(self) -> str:
        return f"<FakeConnection #{self.number}>"


class FakePool:
    """Stand-in for oracledb.AsyncConnectionPool.

    Keeps ``min`` connections open with background tasks, lends idle
    connections first, opens new ones up to ``max`` and otherwise waits,
    honouring ``wait_timeout`` (milliseconds) in timed-wait mode.
    """

    def __init__(
        self, db: FakeDatabase, *, min: int, max: int, increment: int = 1,
        getmode: int = oracledb.POOL_GETMODE_WAIT, wait_timeout: int = 0,
    ) -> None:
        self.db = db
        self.min = min
        self.max = max
        self.increment = increment
        self.getmode = getmode
        self.wait_timeout = wait_timeout
        self.closed = False
        self._idle: list[FakeConnection] = []
        self._busy: set[FakeConnection] = set()
        self._opening = 0
        self._changed = asyncio.Condition()
        self._tasks: set[asyncio.Task] = set()
        self._fill()

    @property
    def busy(self) -> int:
        return len(self._busy)

    @property
    def opened(self) -> int:
        return len(self._idle) + len(self._busy)

    def _fill(self) -> None:
        if self.closed:
            return
        loop = asyncio.get_running_loop()
        for _ in range(self.min - self.opened - self._opening):
            self._opening += 1
            task = loop.create_task(self._open_idle())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _open_idle(self) -> None:
        try:
            conn = await self.db.connect()
        except oracledb.Error:
            conn = None
        async with self._changed:
            self._opening -= 1
            if conn is not None and not self.closed:
                self._idle.append(conn)
                conn = None
            self._changed.notify_all()
        if conn is not None:
            await conn.close()

    def _can_lend(self) -> bool:
        return (
            self.closed
            or bool(self._idle)
            or self.opened + self._opening < self.max
        )

    async def acquire(self) -> FakeConnection:
        timeout = None
        if self.getmode == oracledb.POOL_GETMODE_TIMEDWAIT:
            timeout = self.wait_timeout / 1000
        async with self._changed:
            try:
                await asyncio.wait_for(
                    self._changed.wait_for(self._can_lend), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise oracledb.DatabaseError(
                    "DPY-4005: timed out waiting for the connection pool to "
                    "return a connection"
                ) from None
            if self.closed:
                raise oracledb.InterfaceError("DPY-1002: connection pool is not open")
            if self._idle:
                conn = self._idle.pop(0)
                self._busy.add(conn)
                return conn
            self._opening += 1

        try:
            conn = await self.db.connect()
        except BaseException:
            async with self._changed:
                self._opening -= 1
                self._changed.notify_all()
            raise
        async with self._changed:
            self._opening -= 1
            self._busy.add(conn)
        return conn

    async def release(self, conn: FakeConnection) -> None:
        async with self._changed:
            if conn not in self._busy:
                raise oracledb.InterfaceError("DPY-1000: connection is not busy")
            self._busy.remove(conn)
            self._idle.append(conn)
            self._changed.notify_all()

    async def drop(self, conn: FakeConnection) -> None:
        async with self._changed:
            self._busy.discard(conn)
            self._changed.notify_all()
        await conn.close()
        self._fill()

    async def close(self, force: bool = False) -> None:
        async with self._changed:
            if self._busy and not force:
                raise oracledb.InterfaceError(
                    "DPY-1005: unable to close pool with busy connections"
                )
            self.closed = True
            conns = self._idle + list(self._busy)
            self._idle.clear()
            self._busy.clear()
            self._changed.notify_all()
        for task in list(self._tasks):
            task.cancel()
        errors = []
        for conn in conns:
            try:
                await conn.close()
            except oracledb.Error as exc:
                errors.append(exc)
        if errors:
            raise errors[0]


class FakeDatabase:
    """Driver pool factory plus knobs for failure injection."""

    def __init__(self) -> None:
        self.rows: list[tuple] = [(0,)]
        self.connect_error: Exception | None = None
        self.connect_delay = 0.0
        self.execute_error: Exception | None = None
        self.close_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.connections: list[FakeConnection] = []
        self.pools: list[FakePool] = []
        self.pool_kwargs: dict | None = None

    def create_pool(self, **kwargs) -> FakePool:
        self.pool_kwargs = kwargs
        params = {
            k: v for k, v in kwargs.items()
            if k in ("min", "max", "increment", "getmode", "wait_timeout")
        }
        pool = FakePool(self, **params)
        self.pools.append(pool)
        return pool

    async def connect(self) -> FakeConnection:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        conn = FakeConnection(self, len(self.connections) + 1)
        self.connections.append(conn)
        return conn

    @property
    def opened(self) -> int:
        return len(self.connections)

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [c for c in self.connections if not c.closed]


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture()
def config() -> Config:
    """A complete config without touching the environment."""
    return Config(
        db_user="mnist",
        db_password="mnist",
        db_connect_string="//localhost:1521/MNIST",
        host="127.0.0.1",
        port=7000,
        pool_min=0,
        pool_max=2,
        pool_timeout=0.2,
        shutdown_grace_seconds=0.2,
        model_name="DEEP_LEARNING_MODEL",
        include_probability=False,
        log_level="DEBUG",
    )


@pytest.fixture()
def blank_identifier() -> str:
    """784 zero pixels, as the canvas sends an empty drawing."""
    return ",".join(["0"] * 784)


@pytest.fixture()
def ramp_identifier() -> str:
    """784 distinct pixel values (pixel i has value i)."""
    return ",".join(str(i) for i in range(784))
