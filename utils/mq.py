"""
Production-ready Redis Streams wrapper with consumer groups, connection pooling
and error handling.

A stream is the topic and a consumer group is the subscription. Delivery is
at-least-once: an entry stays in the group's pending list until it is
acknowledged, and entries left pending longer than the redelivery delay are
reclaimed and delivered again.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from utils.config import PUBLISH_MAX_ATTEMPTS, RETRY_WAIT_MAX_SECONDS, Settings
from utils.schemas import PaymentEvent

logger = logging.getLogger(__name__)

MessageHandler = Callable[["Message"], Awaitable[None]]


class SubscriptionError(Exception):
    """Raised when the transport fails in a way the receive loop cannot recover from."""


class Message:
    """A delivered stream entry awaiting acknowledgement.

    Only the first call to ack() or nack() has an effect.
    """

    def __init__(self, event: PaymentEvent, subscriber: "RedisStreamSubscriber") -> None:
        self.event = event
        self._subscriber = subscriber
        self._settled = False

    @property
    def id(self) -> str:
        return self.event.id

    @property
    def data(self) -> bytes:
        return self.event.data

    @property
    def attributes(self) -> dict[str, str]:
        return self.event.attributes

    @property
    def delivery_attempt(self) -> int:
        return self.event.delivery_attempt

    @property
    def settled(self) -> bool:
        return self._settled

    async def ack(self) -> None:
        """Mark the message as permanently consumed."""
        if self._settled:
            return
        self._settled = True
        await self._subscriber._ack(self.id)

    async def nack(self) -> None:
        """Release the message for redelivery."""
        if self._settled:
            return
        self._settled = True
        self._subscriber._nack(self.id)


class RedisPublisher:
    """Redis Streams publisher with connection pooling and retries."""

    def __init__(
        self,
        redis_url: str,
        max_connections: int = 10,
        socket_timeout: Optional[float] = 5.0,
        socket_connect_timeout: Optional[float] = 5.0,
    ) -> None:
        """Initialize Redis publisher.

        Args:
            redis_url: Redis connection URL
            max_connections: Connection pool size
            socket_timeout: Deadline for each command on an open connection, in seconds
            socket_connect_timeout: Deadline for opening a connection, in seconds
        """
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection with connection pooling."""
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_connect_timeout,
                decode_responses=False,  # payloads are raw bytes
            )

    @retry(
        retry=retry_if_exception_type((redis.RedisError, redis.ConnectionError, redis.TimeoutError)),
        stop=stop_after_attempt(PUBLISH_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=RETRY_WAIT_MAX_SECONDS),
        reraise=True,
    )
    async def publish(self, stream: str, fields: dict[str, Any]) -> str:
        """Append an entry to a stream with retry logic.

        Args:
            stream: Stream key
            fields: Entry fields (str or bytes values)

        Returns:
            ID of the new entry

        Raises:
            redis.RedisError: If publishing fails after retries
        """
        if self.client is None:
            await self.connect()

        entry_id = await self.client.xadd(stream, fields)
        return entry_id.decode("utf-8") if isinstance(entry_id, bytes) else entry_id

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None


class RedisStreamSubscriber:
    """Consumer-group subscriber dispatching each entry to its own handler task."""

    def __init__(
        self,
        stream: str,
        group: str,
        consumer: str,
        redis_url: str,
        *,
        max_connections: int = 10,
        socket_timeout: Optional[float] = 5.0,
        socket_connect_timeout: Optional[float] = 5.0,
        batch_size: int = 10,
        block_ms: int = 1000,
        redelivery_delay_ms: int = 90000,
        max_in_flight: int = 10,
        receive_max_attempts: int = 5,
        shutdown_grace_seconds: float = 10.0,
        retry_wait_min: float = 1,
        retry_wait_max: float = 5,
        client: Optional[redis.Redis] = None,
    ) -> None:
        """Initialize Redis Streams subscriber.

        Args:
            stream: Stream key (topic)
            group: Consumer group name (subscription)
            consumer: Consumer name within the group
            redis_url: Redis connection URL
            max_connections: Connection pool size
            socket_timeout: Deadline for each command, in seconds; must exceed block_ms
            socket_connect_timeout: Deadline for opening a connection, in seconds
            batch_size: Max entries fetched per read
            block_ms: How long a read blocks waiting for new entries
            redelivery_delay_ms: Idle time after which a pending entry is redelivered
            max_in_flight: Max concurrently running handlers
            receive_max_attempts: Read attempts before the loop gives up
            shutdown_grace_seconds: Time in-flight handlers get to finish on stop
            retry_wait_min: Minimum backoff between read attempts, in seconds
            retry_wait_max: Maximum backoff between read attempts, in seconds
            client: Pre-built Redis client, mostly for tests
        """
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.redelivery_delay_ms = redelivery_delay_ms
        self.max_in_flight = max_in_flight
        self.receive_max_attempts = receive_max_attempts
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.client = client
        self._stop_event = asyncio.Event()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._claim_cursor = "0-0"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisStreamSubscriber":
        return cls(
            stream=settings.payment_stream,
            group=settings.PAYMENT_SUBSCRIPTION,
            consumer=settings.CONSUMER_NAME,
            redis_url=settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
            batch_size=settings.RECEIVE_BATCH_SIZE,
            block_ms=settings.RECEIVE_BLOCK_MS,
            redelivery_delay_ms=settings.REDELIVERY_DELAY_MS,
            max_in_flight=settings.MAX_IN_FLIGHT,
            receive_max_attempts=settings.RECEIVE_MAX_ATTEMPTS,
            shutdown_grace_seconds=settings.SHUTDOWN_GRACE_SECONDS,
        )

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def connect(self) -> None:
        """Establish Redis connection and make sure the consumer group exists.

        Raises:
            SubscriptionError: If Redis is unreachable or refuses the group
        """
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_connect_timeout,
                decode_responses=False,  # payloads are raw bytes
            )

        try:
            await self.client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group: stream=%s group=%s", self.stream, self.group)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise SubscriptionError(f"failed creating consumer group {self.group}: {e}") from e
        except redis.RedisError as e:
            raise SubscriptionError(f"failed connecting to {self.redis_url}: {e}") from e

    async def listen(self, handler: MessageHandler) -> None:
        """Receive entries and run handler on each until stop() is called.

        The handler is responsible for acking or nacking. A handler that raises
        or returns without settling gets its message nacked.

        Args:
            handler: Async callback function(message)

        Raises:
            SubscriptionError: If reads keep failing after retries
        """
        if self.client is None:
            await self.connect()

        logger.info(
            "Listening: stream=%s group=%s consumer=%s max_in_flight=%d",
            self.stream, self.group, self.consumer, self.max_in_flight,
        )

        try:
            while not self._stop_event.is_set():
                free_slots = self.max_in_flight - len(self._in_flight)
                if free_slots <= 0:
                    await asyncio.wait(
                        list(self._in_flight.values()),
                        timeout=self.block_ms / 1000,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    continue

                messages = await self._receive(min(free_slots, self.batch_size))
                for message in messages:
                    self._dispatch(message, handler)

        except SubscriptionError as e:
            logger.error("Subscription loop failed: %s", str(e))
            raise

        finally:
            await self._drain()

        logger.info("done listening to stream %s", self.stream)

    def stop(self) -> None:
        """Signal the receive loop to stop."""
        self._stop_event.set()

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _receive(self, count: int) -> list[Message]:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(redis.RedisError),
                stop=stop_after_attempt(self.receive_max_attempts),
                wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    return await self._read_batch(count)
        except redis.RedisError as e:
            raise SubscriptionError(f"failed receiving from {self.stream}: {e}") from e
        return []

    async def _read_batch(self, count: int) -> list[Message]:
        messages = await self._reclaim(count)

        remaining = count - len(messages)
        if remaining <= 0:
            return messages

        response = await self.client.xreadgroup(
            groupname=self.group,
            consumername=self.consumer,
            streams={self.stream: ">"},
            count=remaining,
            # Reclaimed entries are ready now, so only block on an empty batch
            block=None if messages else self.block_ms,
        )
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                messages.append(self._to_message(entry_id, fields, delivery_attempt=1))

        return messages

    async def _reclaim(self, count: int) -> list[Message]:
        """Take over entries left pending past the redelivery delay."""
        response = await self.client.xautoclaim(
            self.stream,
            self.group,
            self.consumer,
            min_idle_time=self.redelivery_delay_ms,
            start_id=self._claim_cursor,
            count=count,
        )
        next_cursor, entries = response[0], response[1]
        self._claim_cursor = next_cursor.decode("utf-8") if isinstance(next_cursor, bytes) else next_cursor

        messages = []
        for entry_id, fields in entries:
            if entry_id is None:
                continue
            entry_id = entry_id.decode("utf-8") if isinstance(entry_id, bytes) else entry_id
            if entry_id in self._in_flight:
                continue
            if not fields:
                # Trimmed from the stream while pending; nothing left to deliver
                await self._ack(entry_id)
                continue

            attempt = await self._delivery_attempt(entry_id)
            messages.append(self._to_message(entry_id, fields, delivery_attempt=attempt))

        return messages

    async def _delivery_attempt(self, entry_id: str) -> int:
        pending = await self.client.xpending_range(
            self.stream, self.group, min=entry_id, max=entry_id, count=1
        )
        if pending:
            return max(int(pending[0]["times_delivered"]), 1)
        return 1

    def _to_message(self, entry_id: Any, fields: dict, delivery_attempt: int) -> Message:
        entry_id = entry_id.decode("utf-8") if isinstance(entry_id, bytes) else entry_id

        data = fields.get(b"data", fields.get("data", b""))
        if isinstance(data, str):
            data = data.encode("utf-8")
        attributes = fields.get(b"attributes", fields.get("attributes"))

        try:
            event = PaymentEvent(
                id=entry_id,
                data=data,
                attributes=attributes,
                delivery_attempt=delivery_attempt,
            )
        except ValidationError as e:
            logger.warning(
                "Failed to decode message attributes, delivering without them",
                extra={"message_id": entry_id, "error": str(e)},
            )
            event = PaymentEvent(id=entry_id, data=data, delivery_attempt=delivery_attempt)

        return Message(event, self)

    def _dispatch(self, message: Message, handler: MessageHandler) -> None:
        logger.info(
            "Got message: id=%s size=%d attempt=%d",
            message.id, len(message.data), message.delivery_attempt,
        )
        task = asyncio.create_task(self._handle(message, handler), name=f"message-{message.id}")
        self._in_flight[message.id] = task
        task.add_done_callback(lambda _t, message_id=message.id: self._in_flight.pop(message_id, None))

    async def _handle(self, message: Message, handler: MessageHandler) -> None:
        try:
            await handler(message)
        except asyncio.CancelledError:
            logger.warning("Handler cancelled, message left pending: id=%s", message.id)
            raise
        except Exception as e:
            logger.error(
                "Handler failed, nacking message (id=%s): %s",
                message.id, str(e),
                exc_info=True,
            )
            await message.nack()
        else:
            if not message.settled:
                logger.warning("Handler returned without settling message, nacking: id=%s", message.id)
                await message.nack()

    async def _drain(self) -> None:
        if not self._in_flight:
            return

        tasks = list(self._in_flight.values())
        logger.info(
            "Draining in-flight messages: count=%d grace=%.1fs",
            len(tasks), self.shutdown_grace_seconds,
        )
        _done, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Abandoned in-flight messages after grace period: count=%d", len(pending))

    async def _ack(self, message_id: str) -> None:
        await self.client.xack(self.stream, self.group, message_id)
        logger.debug("Acked message: id=%s", message_id)

    def _nack(self, message_id: str) -> None:
        # The entry stays in the pending list and is reclaimed after redelivery_delay_ms
        logger.debug("Nacked message: id=%s", message_id)
