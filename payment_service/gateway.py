"""
External payment gateway adapters.

``charge`` returns True when the gateway approves the payment and False when it
declines it. Transient problems (gateway down, 5xx, 408/425/429, network
errors) raise InternalError so the consumer can retry the delivery.
"""
import abc
import asyncio
import logging
from decimal import Decimal
from typing import Optional

import httpx

from payment_service.config import Settings
from payment_service.errors import InternalError
from payment_service.models import Payment

logger = logging.getLogger(__name__)

# 4xx answers that mean "try again later", not "declined".
TRANSIENT_CLIENT_STATUSES = frozenset({408, 425, 429})


class PaymentGateway(abc.ABC):
    @abc.abstractmethod
    async def charge(self, payment: Payment) -> bool:
        """Return True when approved, False when declined. Raise InternalError on transient failures."""

    async def close(self) -> None:
        pass


class SimulatedGateway(PaymentGateway):
    """
    Local stand-in for a real provider.

    Takes ``delay`` seconds and approves every payment, except those above
    ``decline_above`` when a limit is configured.
    """

    def __init__(self, delay: float = 2.0, decline_above: Optional[Decimal] = None):
        self.delay = delay
        self.decline_above = decline_above

    async def charge(self, payment: Payment) -> bool:
        await asyncio.sleep(self.delay)
        if self.decline_above is not None and payment.amount > self.decline_above:
            logger.info("Simulated gateway declined payment %s (amount %s above %s)", payment.id, payment.amount, self.decline_above)
            return False
        return True


class HttpGateway(PaymentGateway):
    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient()

    async def charge(self, payment: Payment) -> bool:
        try:
            resp = await self.client.post(
                f"{self.base_url}/charges",
                headers={"Idempotency-Key": payment.reference},
                json={
                    "payment_id": str(payment.id),
                    "amount": str(payment.amount),
                    "currency": payment.currency.value,
                    "reference": payment.reference,
                },
            )
        except httpx.HTTPError as e:
            raise InternalError(
                "Payment gateway unavailable",
                "The payment gateway could not be reached",
                params={"payment_id": str(payment.id)},
                cause=e,
            ) from e

        if resp.status_code >= 500 or resp.status_code in TRANSIENT_CLIENT_STATUSES:
            raise InternalError(
                "Payment gateway error",
                f"The payment gateway answered with status {resp.status_code}",
                params={"payment_id": str(payment.id), "status_code": resp.status_code},
            )
        if resp.status_code >= 400:
            logger.info("Gateway rejected payment %s with status %s: %s", payment.id, resp.status_code, resp.text)
            return False
        try:
            body = resp.json()
        except ValueError as e:
            raise InternalError(
                "Invalid gateway response",
                "The payment gateway answered with a body that is not JSON",
                params={"payment_id": str(payment.id)},
                cause=e,
            ) from e
        return body.get("status") == "SUCCESS"

    async def close(self) -> None:
        await self.client.aclose()


def create_gateway(settings: Settings) -> PaymentGateway:
    if settings.gateway_url:
        return HttpGateway(settings.gateway_url)
    return SimulatedGateway(settings.gateway_simulated_delay, settings.gateway_decline_above)
