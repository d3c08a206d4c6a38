import asyncio
import logging
from typing import Any, Dict, Set

from aio_pika.abc import AbstractIncomingMessage
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_fixed

from payment_service.config import Settings
from payment_service.errors import AlreadyProcessedError, is_retryable
from payment_service.messaging import MessageChannel
from payment_service.service import PaymentService

logger = logging.getLogger(__name__)


def retry_policy(settings: Settings) -> Dict[str, Any]:
    """tenacity arguments for one delivery: bounded attempts, fixed or exponential wait capped at retry_max_delay."""
    if settings.retry_delay_type == "backoff":
        wait = wait_exponential(multiplier=settings.retry_delay, max=settings.retry_max_delay)
    else:
        wait = wait_fixed(min(settings.retry_delay, settings.retry_max_delay))
    return {
        "stop": stop_after_attempt(settings.retry_attempts),
        "wait": wait,
        "retry": retry_if_exception(is_retryable),
        "reraise": True,
    }


class PaymentConsumer:
    def __init__(self, channel: MessageChannel, service: PaymentService, settings: Settings):
        self.channel = channel
        self.service = service
        self.max_attempts = settings.retry_attempts
        self.retry_kwargs = retry_policy(settings)
        self._inflight: Set[asyncio.Task] = set()
        self._stopping = False

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        """Process one delivery, then ack it or dead-letter it. Never requeues."""
        try:
            payment_id = message.body.decode("utf-8").strip()
        except UnicodeDecodeError:
            logger.error("Dropping undecodable message %s to dead-letter", message.message_id)
            await self._settle(message.reject(requeue=False), "reject", "<undecodable>")
            return

        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "retry %d/%d for payment %s failed: %s",
                state.attempt_number,
                self.max_attempts,
                payment_id,
                state.outcome.exception(),
            )

        try:
            async for attempt in AsyncRetrying(before_sleep=log_retry, **self.retry_kwargs):
                with attempt:
                    await self.service.process_payment(payment_id)
        except AlreadyProcessedError:
            logger.info("Payment %s was already processed; acknowledging duplicate delivery", payment_id)
        except Exception as e:
            logger.error("payment %s failed permanently: %s", payment_id, e)
            await self._settle(message.reject(requeue=False), "reject", payment_id)
            return

        await self._settle(message.ack(), "ack", payment_id)

    async def on_message(self, message: AbstractIncomingMessage) -> None:
        if self._stopping:
            # Hand it back untouched; another worker will get it.
            await self._settle(message.nack(requeue=True), "nack", "<shutdown>")
            return
        task = asyncio.ensure_future(self.handle_message(message))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume until stop_event is set, then stop taking deliveries and drain in-flight work."""
        consumer_tag = await self.channel.consume(self.on_message)
        logger.info(" [*] Waiting for messages on %s", self.channel.queue_name)

        await stop_event.wait()

        logger.info("Stopping consumer; waiting for %d in-flight message(s)", len(self._inflight))
        self._stopping = True
        await self.channel.cancel(consumer_tag)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Consumer stopped")

    @staticmethod
    async def _settle(call, action: str, payment_id: str) -> None:
        # A failed ack/reject leaves the message unacked; the broker redelivers it.
        try:
            await call
        except Exception as e:
            logger.error("Failed to %s message for payment %s: %s", action, payment_id, e)
