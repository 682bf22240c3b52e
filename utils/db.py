"""
Database utilities for PostgreSQL operations.

Provides connection string assembly, pooled connections and schema
initialization for the payment consumer.
"""

import logging

import psycopg2
from psycopg2 import pool
from psycopg2.extensions import make_dsn

from utils.config import Settings

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS payment_events (
        id TEXT NOT NULL,
        inserted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # Tables created by earlier releases only had the id column
    """
    ALTER TABLE payment_events
        ADD COLUMN IF NOT EXISTS inserted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS payment_events_id_key
        ON payment_events (id)
    """,
)


class StartupError(Exception):
    """Raised when the store cannot be reached or bootstrapped."""


def build_dsn(settings: Settings) -> str:
    """
    Assemble the libpq connection string from settings.

    Every write is bounded server-side by a statement_timeout matching
    WRITE_TIMEOUT_SECONDS, and opening a connection by PG_CONNECT_TIMEOUT_SECONDS.

    Args:
        settings: Application settings

    Returns:
        Quoted libpq DSN
    """
    statement_timeout_ms = int(settings.WRITE_TIMEOUT_SECONDS * 1000)
    return make_dsn(
        host=settings.PG_HOST,
        port=settings.PG_PORT,
        user=settings.PG_USER,
        password=settings.PG_PASSWORD.get_secret_value(),
        dbname=settings.PG_DATABASE,
        sslmode=settings.PG_SSLMODE,
        application_name=settings.APP_NAME,
        connect_timeout=settings.PG_CONNECT_TIMEOUT_SECONDS,
        options=f"-c statement_timeout={statement_timeout_ms}",
    )


def create_pool(settings: Settings) -> pool.ThreadedConnectionPool:
    """
    Open a thread-safe connection pool.

    Returns:
        ThreadedConnectionPool sized by PG_POOL_MIN / PG_POOL_MAX

    Raises:
        StartupError: If the initial connections cannot be opened
    """
    try:
        return pool.ThreadedConnectionPool(
            minconn=settings.PG_POOL_MIN,
            maxconn=settings.PG_POOL_MAX,
            dsn=build_dsn(settings),
        )
    except psycopg2.Error as e:
        raise StartupError(f"failed opening sql conn: {e}") from e


def init_schema(conn_pool: pool.AbstractConnectionPool) -> None:
    """
    Verify the store is alive and create required tables if they don't exist.

    Creates:
    - payment_events: one row per consumed event id, unique on id

    Raises:
        StartupError: If the ping or schema creation fails
    """
    conn = conn_pool.getconn()
    try:
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        except psycopg2.Error as e:
            if not conn.closed:
                conn.rollback()
            raise StartupError(f"failed pinging DB: {e}") from e

        try:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        except psycopg2.Error as e:
            if not conn.closed:
                conn.rollback()
            raise StartupError(f"failed creating payment events table: {e}") from e
    finally:
        conn_pool.putconn(conn)

    logger.info("Successfully connected to DB, schema ready")
