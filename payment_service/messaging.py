import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection

from payment_service.config import Settings
from payment_service.errors import InternalError

logger = logging.getLogger(__name__)


class MessageChannel:
    """
    Durable RabbitMQ queue carrying payment ids.

    Messages rejected without requeue are routed by the broker to the
    dead-letter queue through the main queue's x-dead-letter-* arguments.
    If the broker was unreachable at startup, ``publish`` connects on first use.
    """

    def __init__(self, settings: Settings):
        self.url = settings.rabbitmq_url
        self.queue_name = settings.message_queue
        self.dead_letter_queue_name = settings.dead_letter_queue
        self.prefetch_count = settings.worker_concurrency
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.queue: Optional[AbstractQueue] = None
        self._connect_lock = asyncio.Lock()

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel()
        # Fair dispatch among workers
        await self.channel.set_qos(prefetch_count=self.prefetch_count)

        await self.channel.declare_queue(self.dead_letter_queue_name, durable=True)
        self.queue = await self.channel.declare_queue(
            self.queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": self.dead_letter_queue_name,
            },
        )
        logger.info("RabbitMQ setup complete (queue=%s, dead-letter=%s)", self.queue_name, self.dead_letter_queue_name)

    async def _ensure_connected(self) -> AbstractChannel:
        async with self._connect_lock:
            if self.channel is None:
                logger.info("Message channel not connected, connecting to RabbitMQ")
                try:
                    await self.connect()
                except Exception as e:
                    await self.close()
                    raise InternalError(
                        "Message channel not available",
                        "RabbitMQ channel is not connected",
                        cause=e,
                    ) from e
            return self.channel

    async def publish(self, payment_id: str) -> None:
        channel = self.channel or await self._ensure_connected()

        message = aio_pika.Message(
            payment_id.encode("utf-8"),
            content_type="text/plain",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await channel.default_exchange.publish(message, routing_key=self.queue_name)
        except Exception as e:
            raise InternalError(
                "Failed to publish message",
                "The payment id could not be enqueued for processing",
                params={"payment_id": payment_id},
                cause=e,
            ) from e
        logger.debug("Published payment %s to %s", payment_id, self.queue_name)

    async def consume(self, callback: Callable[[AbstractIncomingMessage], Awaitable[None]]) -> str:
        if not self.queue:
            raise InternalError("Message channel not available", "RabbitMQ queue is not declared")
        return await self.queue.consume(callback, no_ack=False)

    async def cancel(self, consumer_tag: str) -> None:
        if self.queue:
            await self.queue.cancel(consumer_tag)

    async def close(self) -> None:
        if self.connection:
            await self.connection.close()
        self.connection = self.channel = self.queue = None
