"""
Payment record store backed by SQLAlchemy.

Reads and the create insert run in their own short transactions. Status
transitions go through ``lock()``, which holds ``SELECT ... FOR UPDATE`` on the
row until the block exits, so concurrent processors of the same payment are
serialized by the database.
"""
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_service.errors import ConflictError, InternalError
from payment_service.models import Currency, Payment, PaymentStatus, utcnow


def select_for_update(payment_id: uuid.UUID):
    return select(Payment).where(Payment.id == payment_id).with_for_update()


class LockedPayment:
    """A payment row held under an exclusive lock for the current transaction."""

    def __init__(self, session: AsyncSession, payment: Optional[Payment]):
        self.session = session
        self.payment = payment

    async def update_status(self, status: PaymentStatus) -> Payment:
        self.payment.status = status
        self.payment.updated_at = utcnow()
        await self.session.flush()
        return self.payment


class PaymentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, amount: Decimal, currency: Currency, reference: str) -> Payment:
        now = utcnow()
        payment = Payment(
            id=uuid.uuid4(),
            amount=amount,
            currency=currency,
            reference=reference,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(payment)
        except IntegrityError as e:
            raise ConflictError(
                "Payment with this reference already exists",
                "A payment with the same reference has already been created",
                params={"reference": reference},
                cause=e,
            ) from e
        except SQLAlchemyError as e:
            raise InternalError("Failed to create payment", "The payment could not be stored", cause=e) from e
        return payment

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self._fetch_one(select(Payment).where(Payment.id == payment_id))

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        return await self._fetch_one(select(Payment).where(Payment.reference == reference))

    @asynccontextmanager
    async def lock(self, payment_id: uuid.UUID) -> AsyncIterator[LockedPayment]:
        """Yield the payment (or None) under a row lock; commits on clean exit, rolls back otherwise."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(select_for_update(payment_id))
                    yield LockedPayment(session, result.scalar_one_or_none())
        except SQLAlchemyError as e:
            raise InternalError(
                "Failed to update payment",
                "Error occurred while processing the payment record",
                params={"payment_id": str(payment_id)},
                cause=e,
            ) from e

    async def _fetch_one(self, statement) -> Optional[Payment]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise InternalError("Failed to fetch payment", "Error occurred while retrieving payment information", cause=e) from e
