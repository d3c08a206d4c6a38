import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Union

from payment_service.errors import (
    AlreadyProcessedError,
    InvalidArgumentError,
    ConflictError,
    NotFoundError,
    PaymentError,
    ProcessingTimeoutError,
)
from payment_service.gateway import PaymentGateway
from payment_service.messaging import MessageChannel
from payment_service.models import Payment, PaymentStatus
from payment_service.repository import PaymentRepository
from payment_service.schemas import PaymentCreate

logger = logging.getLogger(__name__)


def parse_payment_id(payment_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(payment_id))
    except ValueError as e:
        raise InvalidArgumentError(
            "Invalid payment ID format",
            "The provided payment ID is not a valid UUID format",
            params={"payment_id": payment_id},
            cause=e,
        ) from e


class PaymentService:
    def __init__(
        self,
        repository: PaymentRepository,
        gateway: PaymentGateway,
        publisher: Optional[MessageChannel] = None,
        processing_timeout: float = 10.0,
    ):
        self.repository = repository
        self.gateway = gateway
        self.publisher = publisher
        self.processing_timeout = processing_timeout

    async def create_payment(self, request: Union[PaymentCreate, Dict[str, Any]]) -> Payment:
        if not isinstance(request, PaymentCreate):
            request = PaymentCreate.from_payload(request)

        existing = await self.repository.get_by_reference(request.reference)
        if existing is not None:
            raise ConflictError(
                "Payment with this reference already exists",
                "A payment with the same reference has already been created",
                params={"reference": request.reference},
            )

        payment = await self.repository.create(request.amount, request.currency, request.reference)
        logger.info("Payment %s created for reference %s", payment.id, payment.reference)

        # The payment is already durable; a lost publish is logged, not surfaced.
        # TODO: replace with a transactional outbox drained by a relay worker.
        if self.publisher is None:
            logger.warning("No message publisher configured; payment %s was not enqueued", payment.id)
        else:
            try:
                await self.publisher.publish(str(payment.id))
            except PaymentError as e:
                logger.error("Failed to publish payment %s: %s", payment.id, e)

        return payment

    async def get_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        return await self.repository.get_by_id(parse_payment_id(payment_id))

    async def process_payment(self, payment_id: str) -> PaymentStatus:
        """
        Move a PENDING payment to SUCCESS or FAILED.

        The row lock is held across the gateway call, so a duplicate delivery of
        the same id waits here and then sees the terminal status. Any error
        raised inside the lock rolls the transaction back and leaves the
        payment PENDING.

        Raises:
            InvalidArgumentError: malformed id
            NotFoundError: no such payment
            AlreadyProcessedError: payment already left PENDING
            ProcessingTimeoutError: gateway exceeded processing_timeout
            InternalError: store or gateway unavailable
        """
        pid = parse_payment_id(payment_id)

        async with self.repository.lock(pid) as locked:
            payment = locked.payment
            if payment is None:
                raise NotFoundError(
                    "Payment not found",
                    "The specified payment could not be found",
                    params={"payment_id": payment_id},
                )

            if payment.status.is_terminal:
                logger.info("Payment %s already processed with status %s", payment_id, payment.status.value)
                raise AlreadyProcessedError(
                    "Payment already processed",
                    "This payment has already been processed with status " + payment.status.value,
                    params={"payment_id": payment_id, "status": payment.status.value},
                )

            try:
                approved = await asyncio.wait_for(self.gateway.charge(payment), timeout=self.processing_timeout)
            except asyncio.TimeoutError as e:
                raise ProcessingTimeoutError(
                    "Payment processing timed out",
                    f"The payment gateway did not answer within {self.processing_timeout}s",
                    params={"payment_id": payment_id},
                    cause=e,
                ) from e

            new_status = PaymentStatus.SUCCESS if approved else PaymentStatus.FAILED
            await locked.update_status(new_status)

        logger.info("Payment %s processed with status %s", payment_id, new_status.value)
        return new_status
