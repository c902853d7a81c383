"""Tests for the Stripe payment gateway."""

import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from expert_booking.config import StripeSettings
from expert_booking.exceptions import (
    GatewayUnavailableError,
    PaymentFailedError,
    PaymentTimeoutError,
)
from expert_booking.services.payment_gateway import RefundResult, StripePaymentGateway


@pytest.fixture
def gateway():
    return StripePaymentGateway(StripeSettings(secret_key="sk_test_123", timeout_seconds=0.2))


def stripe_intent(**overrides):
    fields = {
        "id": "pi_123",
        "client_secret": "pi_123_secret_abc",
        "amount": 15000,
        "currency": "usd",
        "status": "requires_payment_method",
    }
    fields.update(overrides)
    return MagicMock(**fields)


async def create(gateway, key="appointment-1"):
    return await gateway.create_intent(
        amount=15000,
        currency="usd",
        idempotency_key=key,
        application_fee_amount=1500,
        destination_account="acct_1Expert",
        metadata={"appointment_id": key},
    )


async def test_create_intent(gateway):
    with patch("stripe.PaymentIntent.create", return_value=stripe_intent()) as create_mock:
        intent = await create(gateway)

    assert intent.reference == "pi_123"
    assert intent.client_secret == "pi_123_secret_abc"
    assert intent.amount == 15000
    kwargs = create_mock.call_args.kwargs
    assert kwargs["idempotency_key"] == "appointment-1"
    assert kwargs["metadata"] == {"appointment_id": "appointment-1"}
    assert kwargs["application_fee_amount"] == 1500
    assert kwargs["transfer_data"] == {"destination": "acct_1Expert"}
    assert kwargs["automatic_payment_methods"] == {"enabled": True}


async def test_card_error_is_payment_failure(gateway):
    error = stripe.CardError("Your card was declined.", param="card", code="card_declined")
    with patch("stripe.PaymentIntent.create", side_effect=error):
        with pytest.raises(PaymentFailedError) as exc_info:
            await create(gateway)

    assert exc_info.value.message == "Your card was declined."
    assert exc_info.value.details["decline_code"] == "card_declined"


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("Network error"),
        stripe.RateLimitError("Too many requests"),
        stripe.APIError("Internal error"),
    ],
)
async def test_outages_are_unavailable(gateway, error):
    with patch("stripe.PaymentIntent.create", side_effect=error):
        with pytest.raises(GatewayUnavailableError):
            await create(gateway)


async def test_invalid_request_is_payment_failure(gateway):
    error = stripe.InvalidRequestError("Amount too small", param="amount")
    with patch("stripe.PaymentIntent.create", side_effect=error):
        with pytest.raises(PaymentFailedError):
            await create(gateway)


async def test_slow_gateway_times_out(gateway):
    def slow(**kwargs):
        time.sleep(0.5)
        return stripe_intent()

    with patch("stripe.PaymentIntent.create", side_effect=slow):
        with pytest.raises(PaymentTimeoutError) as exc_info:
            await create(gateway)
    assert exc_info.value.status_code == 504


async def test_unconfigured_gateway_never_calls_stripe():
    gateway = StripePaymentGateway(StripeSettings(secret_key=None))
    with patch("stripe.PaymentIntent.create") as create_mock:
        with pytest.raises(GatewayUnavailableError):
            await create(gateway)
    create_mock.assert_not_called()


async def test_refund(gateway):
    refund = MagicMock(id="re_1", status="pending")
    with patch("stripe.Refund.create", return_value=refund) as refund_mock:
        result = await gateway.refund("pi_123", idempotency_key="refund:appointment-1")

    assert result == RefundResult(reference="re_1", status="pending")
    assert result.succeeded
    refund_mock.assert_called_once_with(
        payment_intent="pi_123",
        reason="requested_by_customer",
        refund_application_fee=True,
        reverse_transfer=True,
        idempotency_key="refund:appointment-1",
    )


def test_failed_refund_is_not_success():
    assert not RefundResult(reference="re_2", status="failed").succeeded
