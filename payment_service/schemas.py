from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, ValidationError
from typing import Annotated, Any, Dict, List
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from payment_service.errors import InvalidArgumentError
from payment_service.models import Currency, PaymentStatus

# Stored and computed as Decimal, rendered as a JSON number.
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, examples=[100.50])
    currency: Currency = Field(..., examples=["USD"])
    reference: str = Field(..., min_length=1, max_length=255, examples=["order-1"])

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "PaymentCreate":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidArgumentError(
                "validation failed",
                "payment request validation failed",
                params={"errors": validation_messages(e.errors())},
                cause=e,
            ) from e


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Amount
    currency: Currency
    reference: str
    status: PaymentStatus
    created_at: datetime
    updated_at: datetime


def validation_messages(errors: List[Dict[str, Any]]) -> Dict[str, str]:
    """Flatten pydantic errors into {"field": "message"}."""
    messages = {}
    for item in errors:
        field = ".".join(str(part) for part in item["loc"] if part != "body") or "body"
        messages[field] = item["msg"]
    return messages
