"""
Pytest configuration and fixtures.

The store and the transport are replaced by in-process fakes so the suite
runs without PostgreSQL or Redis.
"""
import asyncio
import threading
from typing import Any, Optional

import psycopg2
import pytest
from psycopg2.extensions import QueryCanceledError

from utils.config import Settings


class FakeTable:
    """payment_events with its unique index on id."""

    def __init__(self) -> None:
        self.rows: list[str] = []
        self.fail_next = 0
        self.failure: Exception = psycopg2.OperationalError("server closed the connection unexpectedly")
        self.delay = 0.0
        self.statements: list[tuple[str, tuple]] = []
        self._lock = threading.Lock()

    def execute(self, sql: str, params: tuple, cancelled: Optional[threading.Event] = None) -> int:
        if self.delay:
            # a slow statement ends early when its connection is cancelled
            if (cancelled or threading.Event()).wait(self.delay):
                raise QueryCanceledError("canceling statement due to user request")
        with self._lock:
            self.statements.append((sql, params))
            if self.fail_next:
                self.fail_next -= 1
                raise self.failure

            (event_id,) = params
            if event_id in self.rows:
                if "ON CONFLICT (id) DO NOTHING" in sql:
                    return 0
                raise psycopg2.IntegrityError("duplicate key value violates unique constraint")
            self.rows.append(event_id)
            return 1

    def count(self, event_id: str) -> int:
        return self.rows.count(event_id)


class FakeCursor:
    def __init__(self, table: FakeTable, cancelled: threading.Event) -> None:
        self.table = table
        self.cancelled = cancelled
        self.rowcount = -1

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def execute(self, sql: str, params: tuple = ()) -> None:
        self.rowcount = self.table.execute(sql, params, self.cancelled)


class FakeConnection:
    def __init__(self, table: FakeTable) -> None:
        self.table = table
        self.closed = 0
        self.commits = 0
        self.rollbacks = 0
        self.cancelled = threading.Event()

    def cursor(self) -> FakeCursor:
        return FakeCursor(self.table, self.cancelled)

    def cancel(self) -> None:
        self.cancelled.set()

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


class FakePool:
    """Stands in for psycopg2.pool.ThreadedConnectionPool."""

    def __init__(self, table: FakeTable) -> None:
        self.table = table
        self.borrowed = 0
        self.returned: list[tuple[FakeConnection, bool]] = []
        self.closed_all = False
        self._lock = threading.Lock()

    def getconn(self) -> FakeConnection:
        with self._lock:
            self.borrowed += 1
        return FakeConnection(self.table)

    def putconn(self, conn: FakeConnection, close: bool = False) -> None:
        with self._lock:
            self.returned.append((conn, close))

    def closeall(self) -> None:
        self.closed_all = True


class FakeMessage:
    """Delivered message recording how it was settled."""

    def __init__(
        self,
        id: str,
        data: bytes = b"payload",
        attributes: Optional[dict[str, str]] = None,
        delivery_attempt: int = 1,
    ) -> None:
        self.id = id
        self.data = data
        self.attributes = attributes or {}
        self.delivery_attempt = delivery_attempt
        self.acks = 0
        self.nacks = 0

    @property
    def settled(self) -> bool:
        return bool(self.acks or self.nacks)

    async def ack(self) -> None:
        self.acks += 1

    async def nack(self) -> None:
        self.nacks += 1


class FakeSubscriber:
    """Subscriber that idles until stopped."""

    def __init__(self, listen_error: Optional[Exception] = None, connect_error: Optional[Exception] = None) -> None:
        self.listen_error = listen_error
        self.connect_error = connect_error
        self.connected = False
        self.closed = False
        self.handler = None
        self._stop_event = asyncio.Event()

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def listen(self, handler: Any) -> None:
        self.handler = handler
        if self.listen_error is not None:
            raise self.listen_error
        await self._stop_event.wait()

    def stop(self) -> None:
        self._stop_event.set()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    """Settings with every required variable set."""
    return Settings(
        _env_file=None,
        PROJECT_ID="acme",
        PAYMENT_SUBSCRIPTION="payment-saver",
        CONSUMER_NAME="consumer-1",
        PG_HOST="localhost",
        PG_USER="payments",
        PG_PASSWORD="s3cret",
        PG_DATABASE="payments_db",
    )


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def fake_pool(table: FakeTable) -> FakePool:
    return FakePool(table)
