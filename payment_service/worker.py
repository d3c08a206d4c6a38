import asyncio
import logging
import signal

from payment_service.config import get_settings, setup_logging
from payment_service.consumer import PaymentConsumer
from payment_service.database import create_engine, create_session_factory
from payment_service.gateway import create_gateway
from payment_service.messaging import MessageChannel
from payment_service.repository import PaymentRepository
from payment_service.service import PaymentService

logger = logging.getLogger(__name__)


async def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings)
    gateway = create_gateway(settings)
    channel = MessageChannel(settings)
    await channel.connect()

    # The worker only processes; it never publishes.
    service = PaymentService(
        PaymentRepository(create_session_factory(engine)),
        gateway,
        processing_timeout=settings.processing_timeout,
    )
    consumer = PaymentConsumer(channel, service, settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("Payment worker started (concurrency=%d)", settings.worker_concurrency)
    try:
        await consumer.run(stop_event)
    finally:
        await channel.close()
        await gateway.close()
        await engine.dispose()
        logger.info("Payment worker stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
