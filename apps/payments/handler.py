"""
Payment Event Handler - Persist, then Acknowledge

Per-message handler run by the subscriber. A message is acknowledged only
after its id is stored; persistence failures are confined to the message:
it is nacked for redelivery, or dead-lettered once its delivery attempts are
exhausted.
"""

import logging
from typing import Callable, Optional

from apps.payments.dead_letter import DeadLetterError, DeadLetterRouter
from apps.payments.sink import PaymentEventSink, PersistenceError
from utils.mq import Message

logger = logging.getLogger(__name__)


class PaymentEventHandler:
    """
    Handles a single delivered payment message.

    Tracks consecutive persistence failures across messages; once
    store_failure_threshold is reached the store is considered down and
    on_store_unavailable is called (once) so the process can shut down.
    """

    def __init__(
        self,
        sink: PaymentEventSink,
        dead_letter: Optional[DeadLetterRouter] = None,
        max_delivery_attempts: int = 5,
        store_failure_threshold: int = 0,
        on_store_unavailable: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Args:
            sink: Persistence sink for event ids
            dead_letter: Router for messages past max_delivery_attempts; when
                None, failing messages are always nacked
            max_delivery_attempts: Delivery attempt at which a failing message
                is dead-lettered
            store_failure_threshold: Consecutive failures that mark the store
                as unavailable, 0 to disable
            on_store_unavailable: Callback run when the threshold is reached
        """
        self.sink = sink
        self.dead_letter = dead_letter
        self.max_delivery_attempts = max_delivery_attempts
        self.store_failure_threshold = store_failure_threshold
        self.on_store_unavailable = on_store_unavailable
        self._consecutive_failures = 0
        self._escalated = False

    async def __call__(self, message: Message) -> None:
        try:
            await self.sink.write(message.id)
        except PersistenceError as e:
            self._record_failure()
            await self._handle_failure(message, e)
            return

        self._consecutive_failures = 0
        await message.ack()

    async def _handle_failure(self, message: Message, error: PersistenceError) -> None:
        if self.dead_letter is not None and message.delivery_attempt >= self.max_delivery_attempts:
            try:
                await self.dead_letter.route(message, reason=str(error))
            except DeadLetterError as e:
                logger.error("Dead-lettering failed, nacking message (id=%s): %s", message.id, str(e))
                await message.nack()
                return

            await message.ack()
            return

        logger.warning(
            "Failed persisting payment event, nacking for redelivery: id=%s attempt=%d/%d error=%s",
            message.id, message.delivery_attempt, self.max_delivery_attempts, str(error),
        )
        await message.nack()

    def _record_failure(self) -> None:
        self._consecutive_failures += 1

        if (
            self.store_failure_threshold
            and self._consecutive_failures >= self.store_failure_threshold
            and not self._escalated
        ):
            self._escalated = True
            logger.critical(
                "Store unavailable: %d consecutive persistence failures",
                self._consecutive_failures,
            )
            if self.on_store_unavailable is not None:
                self.on_store_unavailable()
