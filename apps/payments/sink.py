"""
Payment Event Sink - Idempotent Persistence of Event IDs

Writes one row per payment event id into the payment_events table. Writes are
idempotent: redelivering an id that is already stored leaves the table
unchanged and still counts as success.

Usage:
    from apps.payments.sink import PaymentEventSink

    sink = PaymentEventSink(conn_pool, write_timeout=5.0)
    inserted = await sink.write("1700000000000-0")
"""

import asyncio
import logging

import psycopg2
from psycopg2 import pool
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from utils.config import RETRY_WAIT_MAX_SECONDS, Settings

logger = logging.getLogger(__name__)

INSERT_EVENT_SQL = "INSERT INTO payment_events (id) VALUES (%s) ON CONFLICT (id) DO NOTHING"

# Errors worth another attempt: lost connections, exhausted pool, deadlines
TRANSIENT_ERRORS = (
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
    pool.PoolError,
    asyncio.TimeoutError,
)


class PersistenceError(Exception):
    """Raised when an event id could not be stored."""


class PaymentEventSink:
    """
    Persistence sink for payment event ids backed by a PostgreSQL pool.

    Safe for concurrent use: every write borrows its own pooled connection and
    runs in a worker thread so the event loop never blocks on the store.
    """

    def __init__(
        self,
        conn_pool: pool.AbstractConnectionPool,
        write_timeout: float = 5.0,
        max_attempts: int = 3,
        retry_wait_min: float = 0.5,
        retry_wait_max: float = RETRY_WAIT_MAX_SECONDS,
    ) -> None:
        """
        Initialize sink.

        Args:
            conn_pool: Thread-safe psycopg2 connection pool
            write_timeout: Deadline for a single write attempt, in seconds
            max_attempts: Attempts per write for transient errors
            retry_wait_min: Minimum backoff between attempts, in seconds
            retry_wait_max: Maximum backoff between attempts, in seconds
        """
        self.conn_pool = conn_pool
        self.write_timeout = write_timeout
        self.max_attempts = max_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max

    @classmethod
    def from_settings(cls, conn_pool: pool.AbstractConnectionPool, settings: Settings) -> "PaymentEventSink":
        return cls(
            conn_pool,
            write_timeout=settings.WRITE_TIMEOUT_SECONDS,
            max_attempts=settings.WRITE_MAX_ATTEMPTS,
        )

    async def write(self, event_id: str) -> bool:
        """
        Store a payment event id.

        Args:
            event_id: Unique event identifier

        Returns:
            True if a new row was inserted, False if the id was already stored

        Raises:
            PersistenceError: If the id is empty, the store rejects the write, or
                transient errors persist past max_attempts
        """
        if not event_id:
            raise PersistenceError("event id must be a non-empty string")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    inserted = await self._attempt(event_id)
        except asyncio.TimeoutError as e:
            raise PersistenceError(
                f"timed out writing payment event {event_id} after {self.write_timeout}s"
            ) from e
        except psycopg2.Error as e:
            raise PersistenceError(f"failed writing payment event {event_id}: {e}") from e

        if inserted:
            logger.info("Saved payment event: id=%s", event_id)
        else:
            logger.info("Payment event already saved, skipping duplicate: id=%s", event_id)
        return inserted

    async def _attempt(self, event_id: str) -> bool:
        """
        Run one insert in a worker thread, bounded by write_timeout.

        On timeout the running statement is cancelled and the worker thread is
        awaited, so the connection is back in the pool and the attempt can no
        longer commit once this returns or raises.

        Raises:
            asyncio.TimeoutError: If the deadline passed and the statement was cancelled
        """
        borrowed: list = []
        worker = asyncio.ensure_future(asyncio.to_thread(self._insert, event_id, borrowed))
        try:
            done, _ = await asyncio.wait({worker}, timeout=self.write_timeout)
        except asyncio.CancelledError:
            self._cancel(borrowed)
            raise
        if done:
            return worker.result()

        self._cancel(borrowed)
        try:
            # A commit that won the race against the cancel still counts
            return await worker
        except psycopg2.Error as e:
            raise asyncio.TimeoutError(f"write exceeded {self.write_timeout}s") from e

    def _cancel(self, borrowed: list) -> None:
        for conn in borrowed:
            if conn.closed:
                continue
            try:
                conn.cancel()
            except psycopg2.Error as e:
                logger.warning("Failed cancelling payment event write: %s", e)

    def _insert(self, event_id: str, borrowed: list) -> bool:
        conn = self.conn_pool.getconn()
        borrowed.append(conn)
        try:
            with conn.cursor() as cur:
                cur.execute(INSERT_EVENT_SQL, (event_id,))
                inserted = cur.rowcount == 1
            conn.commit()
            return inserted
        except psycopg2.Error:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            # Broken connections are dropped instead of going back to the pool
            self.conn_pool.putconn(conn, close=bool(conn.closed))
