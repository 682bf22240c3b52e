"""
Tests for the Redis Streams subscriber and publisher.

The Redis client is an AsyncMock; read responses mirror redis-py's parsed
XREADGROUP / XAUTOCLAIM replies with decode_responses=False.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from utils.mq import Message, RedisPublisher, RedisStreamSubscriber, SubscriptionError

STREAM = "acme.payments"
GROUP = "payment-saver"


def make_client() -> AsyncMock:
    client = AsyncMock()
    client.xautoclaim.return_value = [b"0-0", [], []]
    client.xreadgroup.return_value = []
    client.xpending_range.return_value = []
    return client


def make_subscriber(client: AsyncMock, **kwargs) -> RedisStreamSubscriber:
    kwargs.setdefault("block_ms", 10)
    kwargs.setdefault("retry_wait_min", 0)
    kwargs.setdefault("retry_wait_max", 0)
    return RedisStreamSubscriber(
        stream=STREAM,
        group=GROUP,
        consumer="consumer-1",
        redis_url="redis://localhost:6379/0",
        client=client,
        **kwargs,
    )


def entries(*items: tuple[bytes, dict]) -> list:
    return [[STREAM.encode(), list(items)]]


def serve_batches(subscriber: RedisStreamSubscriber, batches: list):
    """xreadgroup side effect returning each batch once, then stopping the loop."""

    async def xreadgroup(**kwargs):
        if batches:
            return batches.pop(0)
        subscriber.stop()
        return []

    return xreadgroup


class TestRedisStreamSubscriber:
    """Test suite for RedisStreamSubscriber."""

    @pytest.mark.asyncio
    async def test_connect_creates_consumer_group(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)

        await subscriber.connect()

        client.xgroup_create.assert_awaited_once_with(STREAM, GROUP, id="0", mkstream=True)

    @pytest.mark.asyncio
    async def test_connect_tolerates_existing_group(self) -> None:
        client = make_client()
        client.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        subscriber = make_subscriber(client)

        await subscriber.connect()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_subscription_error(self) -> None:
        client = make_client()
        client.xgroup_create.side_effect = RedisConnectionError("Connection refused")
        subscriber = make_subscriber(client)

        with pytest.raises(SubscriptionError):
            await subscriber.connect()

    @pytest.mark.asyncio
    async def test_client_is_built_with_socket_timeouts(self, settings) -> None:
        settings.REDIS_SOCKET_TIMEOUT = 4.0
        settings.REDIS_CONNECT_TIMEOUT = 2.0
        subscriber = RedisStreamSubscriber.from_settings(settings)

        with patch("utils.mq.redis.from_url", return_value=make_client()) as from_url:
            await subscriber.connect()

        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_timeout"] == 4.0
        assert kwargs["socket_connect_timeout"] == 2.0
        assert settings.RECEIVE_BLOCK_MS / 1000 < kwargs["socket_timeout"]

    @pytest.mark.asyncio
    async def test_listen_delivers_and_acks(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)
        client.xreadgroup.side_effect = serve_batches(
            subscriber,
            [entries((b"1700000000000-0", {b"data": b"payload", b"attributes": b'{"source":"checkout"}'}))],
        )
        received = []

        async def handler(message: Message) -> None:
            received.append(message)
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert len(received) == 1
        message = received[0]
        assert message.id == "1700000000000-0"
        assert message.data == b"payload"
        assert message.attributes == {"source": "checkout"}
        assert message.delivery_attempt == 1
        client.xack.assert_awaited_once_with(STREAM, GROUP, "1700000000000-0")

    @pytest.mark.asyncio
    async def test_invalid_attributes_do_not_block_delivery(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)
        client.xreadgroup.side_effect = serve_batches(
            subscriber, [entries((b"1-0", {b"data": b"payload", b"attributes": b"not json"}))]
        )
        received = []

        async def handler(message: Message) -> None:
            received.append(message)
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert received[0].id == "1-0"
        assert received[0].attributes == {}

    @pytest.mark.asyncio
    async def test_handler_exception_is_isolated_and_nacked(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)
        client.xreadgroup.side_effect = serve_batches(
            subscriber,
            [entries((b"1-0", {b"data": b"bad"})), entries((b"2-0", {b"data": b"good"}))],
        )
        handled = []

        async def handler(message: Message) -> None:
            if message.data == b"bad":
                raise RuntimeError("boom")
            handled.append(message.id)
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert handled == ["2-0"]
        client.xack.assert_awaited_once_with(STREAM, GROUP, "2-0")

    @pytest.mark.asyncio
    async def test_unsettled_message_is_nacked(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)
        client.xreadgroup.side_effect = serve_batches(subscriber, [entries((b"1-0", {b"data": b"x"}))])
        received = []

        async def handler(message: Message) -> None:
            received.append(message)

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert received[0].settled
        client.xack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reclaimed_message_carries_delivery_attempt(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client, redelivery_delay_ms=30000)
        client.xautoclaim.side_effect = [
            [b"0-0", [(b"1-0", {b"data": b"payload"})], []],
            [b"0-0", [], []],
        ]
        client.xpending_range.return_value = [
            {"message_id": b"1-0", "consumer": b"consumer-1", "time_since_delivered": 0, "times_delivered": 3}
        ]
        client.xreadgroup.side_effect = serve_batches(subscriber, [[]])
        received = []

        async def handler(message: Message) -> None:
            received.append(message)
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert [m.delivery_attempt for m in received] == [3]
        first_claim = client.xautoclaim.await_args_list[0]
        assert first_claim.kwargs["min_idle_time"] == 30000
        # Reclaimed entries were ready, so the read that followed did not block
        assert client.xreadgroup.await_args_list[0].kwargs["block"] is None

    @pytest.mark.asyncio
    async def test_reads_never_exceed_free_slots(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client, max_in_flight=2, batch_size=10)
        client.xreadgroup.side_effect = serve_batches(subscriber, [])

        async def handler(message: Message) -> None:
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert client.xreadgroup.await_args.kwargs["count"] == 2
        assert client.xautoclaim.await_args.kwargs["count"] == 2

    @pytest.mark.asyncio
    async def test_stop_with_nothing_in_flight_returns_promptly(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)

        async def idle_read(**kwargs):
            await asyncio.sleep(0.01)
            return []

        client.xreadgroup.side_effect = idle_read

        async def handler(message: Message) -> None:
            await message.ack()

        listen_task = asyncio.create_task(subscriber.listen(handler))
        await asyncio.sleep(0.05)
        subscriber.stop()

        await asyncio.wait_for(listen_task, timeout=1)
        assert listen_task.exception() is None

    @pytest.mark.asyncio
    async def test_slow_handlers_are_abandoned_after_grace_period(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client, shutdown_grace_seconds=0.05)
        client.xreadgroup.side_effect = serve_batches(subscriber, [entries((b"1-0", {b"data": b"x"}))])

        async def handler(message: Message) -> None:
            await asyncio.sleep(10)
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        client.xack.assert_not_awaited()
        assert subscriber.in_flight == 0

    @pytest.mark.asyncio
    async def test_transient_read_errors_are_retried(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client, receive_max_attempts=3)
        client.xautoclaim.side_effect = [
            RedisConnectionError("Connection reset by peer"),
            [b"0-0", [], []],
            [b"0-0", [], []],
        ]
        client.xreadgroup.side_effect = serve_batches(subscriber, [entries((b"1-0", {b"data": b"x"}))])

        async def handler(message: Message) -> None:
            await message.ack()

        await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        client.xack.assert_awaited_once_with(STREAM, GROUP, "1-0")

    @pytest.mark.asyncio
    async def test_persistent_read_errors_raise_subscription_error(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client, receive_max_attempts=2)
        client.xautoclaim.side_effect = RedisConnectionError("Connection refused")

        async def handler(message: Message) -> None:
            await message.ack()

        with pytest.raises(SubscriptionError):
            await asyncio.wait_for(subscriber.listen(handler), timeout=2)

        assert client.xautoclaim.await_count == 2


class TestMessage:
    """Test suite for Message settlement."""

    @pytest.mark.asyncio
    async def test_only_first_settlement_counts(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)
        message = subscriber._to_message(b"1-0", {b"data": b"x"}, delivery_attempt=1)

        await message.ack()
        await message.ack()
        await message.nack()

        client.xack.assert_awaited_once_with(STREAM, GROUP, "1-0")

    @pytest.mark.asyncio
    async def test_nack_leaves_entry_pending(self) -> None:
        client = make_client()
        subscriber = make_subscriber(client)
        message = subscriber._to_message(b"1-0", {b"data": b"x"}, delivery_attempt=1)

        await message.nack()
        await message.ack()

        assert message.settled
        client.xack.assert_not_awaited()


class TestRedisPublisher:
    """Test suite for RedisPublisher."""

    @pytest.mark.asyncio
    async def test_publish_appends_entry(self) -> None:
        publisher = RedisPublisher("redis://localhost:6379/0")
        publisher.client = AsyncMock()
        publisher.client.xadd.return_value = b"1700000000000-0"

        entry_id = await publisher.publish("acme.payments.dlq", {"id": "1-0"})

        assert entry_id == "1700000000000-0"
        publisher.client.xadd.assert_awaited_once_with("acme.payments.dlq", {"id": "1-0"})

    @pytest.mark.asyncio
    async def test_close_releases_client(self) -> None:
        publisher = RedisPublisher("redis://localhost:6379/0")
        client = AsyncMock()
        publisher.client = client

        await publisher.close()

        client.aclose.assert_awaited_once()
        assert publisher.client is None

    @pytest.mark.asyncio
    async def test_client_is_built_with_socket_timeouts(self) -> None:
        publisher = RedisPublisher("redis://localhost:6379/0", socket_timeout=4.0, socket_connect_timeout=2.0)

        with patch("utils.mq.redis.from_url", return_value=AsyncMock()) as from_url:
            await publisher.connect()

        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_timeout"] == 4.0
        assert kwargs["socket_connect_timeout"] == 2.0
