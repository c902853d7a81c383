"""Payment gateway contract and its Stripe implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe

from expert_booking.config import StripeSettings, get_settings
from expert_booking.exceptions import (
    GatewayUnavailableError,
    PaymentFailedError,
    PaymentTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    """A charge the client still has to authorise."""

    reference: str
    client_secret: Optional[str]
    amount: int
    currency: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    reference: str
    status: str

    @property
    def succeeded(self) -> bool:
        # Stripe reports most card refunds as pending before they settle
        return self.status in ("succeeded", "pending")


class PaymentGateway(ABC):
    """What the booking flow needs from a payment provider."""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        application_fee_amount: int,
        destination_account: str,
        metadata: Dict[str, str],
    ) -> PaymentIntent:
        """
        Create (or, for a repeated key, return) the charge for a reservation.

        ``application_fee_amount`` stays with the platform and the rest is
        transferred to ``destination_account``.
        """

    @abstractmethod
    async def refund(self, payment_reference: str, idempotency_key: str) -> RefundResult:
        """Refund a captured charge in full, including the platform fee and the expert transfer."""


class StripePaymentGateway(PaymentGateway):
    """Stripe PaymentIntents; blocking SDK calls run in a worker thread with a timeout."""

    def __init__(self, settings: Optional[StripeSettings] = None):
        self.settings = settings or get_settings().stripe

        if not self.settings.is_configured:
            logger.warning(
                "Stripe is not configured. Payment operations will fail. "
                "Set the STRIPE_SECRET_KEY environment variable."
            )

        # Configure Stripe
        stripe.api_key = self.settings.secret_key
        if self.settings.api_version:
            stripe.api_version = self.settings.api_version

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs) -> Any:
        """Run a Stripe SDK call, translating its failures to booking errors."""
        if not self.settings.is_configured:
            raise GatewayUnavailableError("Stripe is not configured")

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, **kwargs), timeout=self.settings.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self.settings.timeout_seconds}s")
            raise PaymentTimeoutError(details={"operation": operation}) from e
        except stripe.CardError as e:
            logger.info(f"Stripe {operation} declined: {e.user_message or e}")
            raise PaymentFailedError(
                e.user_message or "Card was declined", details={"decline_code": e.code}
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning(f"Stripe {operation} unavailable: {e}")
            raise GatewayUnavailableError(f"Payment gateway unavailable: {e.user_message or e}") from e
        except stripe.APIError as e:
            logger.error(f"Stripe {operation} server error: {e}")
            raise GatewayUnavailableError("Payment gateway error") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error during {operation}: {e}")
            raise PaymentFailedError(f"Payment could not be processed: {e.user_message or e}") from e

    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        application_fee_amount: int,
        destination_account: str,
        metadata: Dict[str, str],
    ) -> PaymentIntent:
        """
        Create a Stripe Connect destination charge keyed by ``idempotency_key``.

        Stripe returns the original intent for a repeated key, so retries never
        produce a second charge. The platform keeps ``application_fee_amount``
        and Stripe transfers the remainder to the expert account.

        Raises:
            PaymentTimeoutError: Stripe did not answer in time
            GatewayUnavailableError: Stripe is unreachable or not configured
            PaymentFailedError: Stripe rejected the request
        """
        intent = await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            application_fee_amount=application_fee_amount,
            transfer_data={"destination": destination_account},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Created Stripe payment intent {intent.id} for key {idempotency_key}")
        return PaymentIntent(
            reference=intent.id,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
        )

    async def refund(self, payment_reference: str, idempotency_key: str) -> RefundResult:
        """Refund a PaymentIntent in full."""
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=payment_reference,
            reason="requested_by_customer",
            refund_application_fee=True,
            reverse_transfer=True,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Created Stripe refund {refund.id} for {payment_reference}: {refund.status}")
        return RefundResult(reference=refund.id, status=refund.status)


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Process-wide gateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = StripePaymentGateway()
    return _gateway
