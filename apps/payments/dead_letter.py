"""
Dead-letter routing for payment events that keep failing.

Messages that exhausted their delivery attempts are copied to the dead-letter
stream, together with the failure reason, for manual inspection and replay.
"""

import logging

import redis.asyncio as redis

from utils.config import Settings
from utils.mq import Message, RedisPublisher
from utils.schemas import DeadLetterRecord

logger = logging.getLogger(__name__)


class DeadLetterError(Exception):
    """Raised when a message could not be written to the dead-letter stream."""


class DeadLetterRouter:
    """Publishes failed messages to the dead-letter stream."""

    def __init__(
        self,
        publisher: RedisPublisher,
        stream: str,
        source_stream: str,
        subscription: str,
    ) -> None:
        self.publisher = publisher
        self.stream = stream
        self.source_stream = source_stream
        self.subscription = subscription

    @classmethod
    def from_settings(cls, publisher: RedisPublisher, settings: Settings) -> "DeadLetterRouter":
        return cls(
            publisher,
            stream=settings.dead_letter_stream,
            source_stream=settings.payment_stream,
            subscription=settings.PAYMENT_SUBSCRIPTION,
        )

    async def route(self, message: Message, reason: str) -> str:
        """
        Copy a message to the dead-letter stream.

        Args:
            message: Message that exhausted its delivery attempts
            reason: Last failure, stored as error_reason

        Returns:
            ID of the dead-letter entry

        Raises:
            DeadLetterError: If publishing fails after retries
        """
        record = DeadLetterRecord(
            id=message.id,
            data=message.data,
            attributes=message.attributes,
            error_reason=reason,
            delivery_attempt=message.delivery_attempt,
            source_stream=self.source_stream,
            subscription=self.subscription,
        )

        try:
            entry_id = await self.publisher.publish(self.stream, record.to_fields())
        except redis.RedisError as e:
            raise DeadLetterError(f"failed dead-lettering message {message.id}: {e}") from e

        logger.warning(
            "Dead-lettered payment event",
            extra={
                "message_id": message.id,
                "dead_letter_stream": self.stream,
                "dead_letter_id": entry_id,
                "delivery_attempt": message.delivery_attempt,
                "error_reason": reason,
            },
        )
        return entry_id
