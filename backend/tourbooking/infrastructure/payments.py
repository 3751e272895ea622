"""
Payment processor gateway.

The booking engine talks to the processor through the small PaymentGateway
protocol; StripeGateway is the production implementation. Amounts cross this
boundary as Decimal major units and are converted to integer cents here.

The Stripe SDK is blocking, so every call runs in a worker thread.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

from tourbooking.core.config import get_settings
from tourbooking.core.exceptions import ExternalServiceError
from tourbooking.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: Optional[str]


@dataclass(frozen=True)
class Refund:
    id: str
    status: Optional[str] = None


class PaymentGateway(ABC):
    """
    Interface for the payment processor.

    Implementations:
    - StripeGateway: production, Stripe SDK
    - test doubles that record calls and can be told to fail
    """

    @abstractmethod
    async def create_intent(self, amount: Decimal, metadata: dict[str, str]) -> PaymentIntent:
        """Create a payment intent for `amount` and return its id and client secret."""

    @abstractmethod
    async def update_intent_metadata(self, intent_id: str, metadata: dict[str, str]) -> None:
        """Merge `metadata` into the intent; webhooks correlate on it."""

    @abstractmethod
    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal],
        reason: Optional[str],
        metadata: dict[str, str],
    ) -> Refund:
        """Refund `amount` (None = full) of a captured intent."""


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: Optional[str] = None, currency: Optional[str] = None) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.currency = currency or settings.CURRENCY

    def _check_configured(self) -> None:
        if not self.api_key:
            raise ExternalServiceError("Stripe is not configured", code="stripe_not_configured")

    async def _call(self, operation: str, fn, *args, **kwargs):
        self._check_configured()
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("stripe_call_failed", operation=operation, error=str(e))
            raise ExternalServiceError(
                f"Payment processor error during {operation}",
                code="stripe_error",
                details={"operation": operation, "error": str(e)},
            )

    async def create_intent(self, amount: Decimal, metadata: dict[str, str]) -> PaymentIntent:
        intent = await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=to_cents(amount),
            currency=self.currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        logger.info("payment_intent_created", payment_intent_id=intent.id, amount=str(amount))
        return PaymentIntent(id=intent.id, client_secret=intent.client_secret)

    async def update_intent_metadata(self, intent_id: str, metadata: dict[str, str]) -> None:
        await self._call("update_intent", stripe.PaymentIntent.modify, intent_id, metadata=metadata)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal],
        reason: Optional[str],
        metadata: dict[str, str],
    ) -> Refund:
        params = {"payment_intent": payment_intent_id, "metadata": metadata}
        if amount is not None:
            params["amount"] = to_cents(amount)
        if reason:
            params["metadata"] = {**metadata, "reason": reason}
        refund = await self._call("create_refund", stripe.Refund.create, **params)
        logger.info("refund_created", refund_id=refund.id, payment_intent_id=payment_intent_id)
        return Refund(id=refund.id, status=getattr(refund, "status", None))
