from sqlalchemy import CheckConstraint, Column, String, Numeric, DateTime, Enum, Index, Uuid
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Currency(enum.Enum):
    USD = "USD"
    ETB = "ETB"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(Enum(Currency, name="payment_currency"), nullable=False)
    reference = Column(String(255), nullable=False, unique=True)
    status = Column(Enum(PaymentStatus, name="payment_status"), default=PaymentStatus.PENDING, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index("idx_payments_status", "status"),
        Index("idx_payments_reference", "reference"),
    )

    def __repr__(self) -> str:
        return f"<Payment id={self.id} reference={self.reference} status={self.status.value if self.status else None}>"
