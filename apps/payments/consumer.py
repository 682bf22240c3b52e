"""
Payment Consumer - Persist Payment Events from a Redis Stream Subscription

Consumes payment events from a Redis Streams consumer group, stores each event
id in PostgreSQL and acknowledges the message once it is stored.

Features:
- Store bootstrap (ping + create-if-absent) before listening
- Concurrent, bounded per-message handling with isolated failures
- Redelivery and dead-lettering of messages that fail to persist
- Graceful shutdown on SIGINT/SIGTERM with a drain period
- Structured logging

Usage:
    python -m apps.payments

Exit status is 0 after a signal-initiated shutdown and 1 on any fatal
startup or runtime error.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from psycopg2 import pool
from pydantic import ValidationError

from apps.payments.dead_letter import DeadLetterRouter
from apps.payments.handler import PaymentEventHandler
from apps.payments.sink import PaymentEventSink
from utils.config import Settings, get_settings
from utils.db import StartupError, create_pool, init_schema
from utils.logging import setup_logging
from utils.mq import RedisPublisher, RedisStreamSubscriber, SubscriptionError

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class PaymentConsumer:
    """
    Wires the store, the subscription and the handler together.

    Handles:
    - Store pool creation and schema bootstrap
    - Redis subscription and dead-letter publisher lifecycle
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        settings: Settings,
        conn_pool: Optional[pool.AbstractConnectionPool] = None,
        subscriber: Optional[RedisStreamSubscriber] = None,
        publisher: Optional[RedisPublisher] = None,
    ) -> None:
        """
        Initialize payment consumer. Collaborators not passed in are built
        from settings on start().
        """
        self.settings = settings
        self.conn_pool = conn_pool
        self.subscriber = subscriber
        self.publisher = publisher
        self.shutdown_event = asyncio.Event()
        self.exit_code = 0
        self._signals_installed = False

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        """Stop listening; in-flight messages get the grace period to finish."""
        if signum is not None:
            logger.info("got signal: %s", signal.Signals(signum).name)
        self.shutdown_event.set()
        if self.subscriber is not None:
            self.subscriber.stop()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig)
        self._signals_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
        self._signals_installed = False

    def _store_unavailable(self) -> None:
        logger.error("Shutting down: payment store unavailable")
        self.exit_code = 1
        self.request_shutdown()

    async def _bootstrap_store(self) -> None:
        if self.conn_pool is None:
            self.conn_pool = await asyncio.to_thread(create_pool, self.settings)
        await asyncio.to_thread(init_schema, self.conn_pool)

    async def start(self) -> int:
        """
        Bootstrap, consume until shutdown, and clean up.

        Returns:
            Process exit status
        """
        self.setup_signal_handlers()
        logger.info("starting server...")

        try:
            try:
                await self._bootstrap_store()
            except StartupError as e:
                logger.error("Store bootstrap failed: %s", str(e), exc_info=True)
                return 1

            if self.subscriber is None:
                self.subscriber = RedisStreamSubscriber.from_settings(self.settings)
            if self.publisher is None:
                self.publisher = RedisPublisher(
                    self.settings.REDIS_URL,
                    max_connections=self.settings.REDIS_MAX_CONNECTIONS,
                    socket_timeout=self.settings.REDIS_SOCKET_TIMEOUT,
                    socket_connect_timeout=self.settings.REDIS_CONNECT_TIMEOUT,
                )

            try:
                await self.subscriber.connect()
            except SubscriptionError as e:
                logger.error("Failed creating subscription: %s", str(e), exc_info=True)
                return 1

            handler = PaymentEventHandler(
                sink=PaymentEventSink.from_settings(self.conn_pool, self.settings),
                dead_letter=DeadLetterRouter.from_settings(self.publisher, self.settings),
                max_delivery_attempts=self.settings.MAX_DELIVERY_ATTEMPTS,
                store_failure_threshold=self.settings.STORE_FAILURE_THRESHOLD,
                on_store_unavailable=self._store_unavailable,
            )

            logger.info(
                "starting to consume subscription %s on stream %s in project %s...",
                self.settings.PAYMENT_SUBSCRIPTION,
                self.settings.payment_stream,
                self.settings.PROJECT_ID,
            )

            listen_task = asyncio.create_task(self.subscriber.listen(handler))
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())

            await asyncio.wait([listen_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED)

            self.subscriber.stop()
            shutdown_task.cancel()

            try:
                await listen_task
            except SubscriptionError as e:
                logger.error("Receive loop failed: %s", str(e), exc_info=True)
                return 1

            return self.exit_code

        finally:
            await self._cleanup()
            logger.info("going down. bye!")

    async def _cleanup(self) -> None:
        self._remove_signal_handlers()

        try:
            if self.subscriber is not None:
                await self.subscriber.close()
                logger.info("Redis subscriber connection closed")
            if self.publisher is not None:
                await self.publisher.close()
        finally:
            if self.conn_pool is not None:
                await asyncio.to_thread(self.conn_pool.closeall)
                logger.info("DB pool closed")


async def main() -> None:
    """Main entry point for payment consumer."""
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging()
        logger.error("Invalid configuration: %s", str(e))
        sys.exit(1)

    setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

    consumer = PaymentConsumer(settings)

    try:
        exit_code = await consumer.start()
    except Exception as e:
        logger.error("Consumer failed: %s", str(e), exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


def cli() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
