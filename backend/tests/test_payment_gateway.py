from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from telebill.db.models import BillingCycle
from telebill.services.payment_gateway import (
    ChargeStatus,
    StripeGateway,
    from_minor_units,
    to_minor_units,
)


@pytest.fixture
def stripe_calls(monkeypatch):
    calls = {}

    def recorder(name, result=None, error=None):
        def _call(*args, **kwargs):
            calls.setdefault(name, []).append((args, kwargs))
            if error is not None:
                raise error
            return result

        return _call

    calls["recorder"] = recorder
    return calls


def charge(gateway, **overrides):
    params = {
        "customer_id": "cus_1",
        "payment_method_id": "pm_1",
        "amount": Decimal("49.99"),
        "currency": "usd",
        "description": "Recurring payment for Primary Care Monthly",
        "idempotency_key": "sub:2026-03-14:0",
    }
    params.update(overrides)
    return gateway.charge(**params)


def test_minor_units():
    assert to_minor_units(Decimal("49.99")) == 4999
    assert to_minor_units(Decimal("0.005")) == 1
    assert from_minor_units(4999) == Decimal("49.99")


def test_successful_charge(monkeypatch, stripe_calls):
    intent = SimpleNamespace(id="pi_123", status="succeeded", amount=4999, currency="usd")
    monkeypatch.setattr(stripe.PaymentIntent, "create", stripe_calls["recorder"]("intent", result=intent))

    result = charge(StripeGateway("sk_test"))

    assert result.succeeded
    assert result.transaction_id == "pi_123"
    assert result.amount == Decimal("49.99")
    _, kwargs = stripe_calls["intent"][0]
    assert kwargs["amount"] == 4999
    assert kwargs["payment_method"] == "pm_1"
    assert kwargs["customer"] == "cus_1"
    assert kwargs["off_session"] is True
    assert kwargs["confirm"] is True
    assert kwargs["idempotency_key"] == "sub:2026-03-14:0"


def test_card_error_is_a_decline(monkeypatch, stripe_calls):
    error = stripe.CardError("Your card was declined.", None, "card_declined")
    monkeypatch.setattr(stripe.PaymentIntent, "create", stripe_calls["recorder"]("intent", error=error))

    result = charge(StripeGateway())

    assert result.status == ChargeStatus.declined
    assert result.error == "Your card was declined."
    assert result.transaction_id is None


def test_unusable_payment_method_is_a_decline(monkeypatch, stripe_calls):
    error = stripe.InvalidRequestError("No such PaymentMethod: 'pm_1'", "payment_method")
    monkeypatch.setattr(stripe.PaymentIntent, "create", stripe_calls["recorder"]("intent", error=error))

    result = charge(StripeGateway())

    assert result.status == ChargeStatus.declined


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("Network error"),
        stripe.RateLimitError("Too many requests"),
        stripe.APIError("Internal error"),
    ],
)
def test_outages_are_unavailable(monkeypatch, stripe_calls, error):
    monkeypatch.setattr(stripe.PaymentIntent, "create", stripe_calls["recorder"]("intent", error=error))

    result = charge(StripeGateway())

    assert result.status == ChargeStatus.unavailable
    assert not result.succeeded


def test_intent_needing_action_is_a_decline(monkeypatch, stripe_calls):
    intent = SimpleNamespace(id="pi_456", status="requires_action", amount=4999, currency="usd")
    monkeypatch.setattr(stripe.PaymentIntent, "create", stripe_calls["recorder"]("intent", result=intent))

    result = charge(StripeGateway())

    assert result.status == ChargeStatus.declined
    assert result.transaction_id == "pi_456"
    assert result.error == "payment intent status: requires_action"


def test_authentication_errors_propagate(monkeypatch, stripe_calls):
    error = stripe.AuthenticationError("Invalid API Key provided")
    monkeypatch.setattr(stripe.PaymentIntent, "create", stripe_calls["recorder"]("intent", error=error))

    with pytest.raises(stripe.AuthenticationError):
        charge(StripeGateway())


def test_partial_refund(monkeypatch, stripe_calls):
    refund = SimpleNamespace(id="re_1", status="succeeded", amount=1000)
    monkeypatch.setattr(stripe.Refund, "create", stripe_calls["recorder"]("refund", result=refund))

    result = StripeGateway().refund("pi_123", Decimal("10.00"))

    assert result.succeeded
    assert result.refund_id == "re_1"
    assert result.amount == Decimal("10.00")
    assert stripe_calls["refund"][0][1] == {"payment_intent": "pi_123", "amount": 1000}


def test_full_refund_sends_no_amount(monkeypatch, stripe_calls):
    refund = SimpleNamespace(id="re_2", status="pending", amount=4999)
    monkeypatch.setattr(stripe.Refund, "create", stripe_calls["recorder"]("refund", result=refund))

    result = StripeGateway().refund("pi_123")

    assert result.succeeded
    assert stripe_calls["refund"][0][1] == {"payment_intent": "pi_123"}


def test_rejected_refund(monkeypatch, stripe_calls):
    error = stripe.InvalidRequestError("Charge has already been refunded.", None)
    monkeypatch.setattr(stripe.Refund, "create", stripe_calls["recorder"]("refund", error=error))

    result = StripeGateway().refund("pi_123")

    assert not result.succeeded
    assert "already been refunded" in result.error


def test_create_price_uses_plan_cadence(monkeypatch, stripe_calls):
    monkeypatch.setattr(stripe.Price, "create", stripe_calls["recorder"]("price", result=SimpleNamespace(id="price_1")))

    price_id = StripeGateway().create_price("prod_1", Decimal("120.00"), "usd", BillingCycle.quarterly)

    assert price_id == "price_1"
    _, kwargs = stripe_calls["price"][0]
    assert kwargs["unit_amount"] == 12000
    assert kwargs["recurring"] == {"interval": "month", "interval_count": 3}


def test_update_subscription_swaps_the_price(monkeypatch, stripe_calls):
    current = {"items": {"data": [{"id": "si_1"}]}}
    monkeypatch.setattr(stripe.Subscription, "retrieve", stripe_calls["recorder"]("retrieve", result=current))
    monkeypatch.setattr(stripe.Subscription, "modify", stripe_calls["recorder"]("modify"))

    StripeGateway().update_subscription("sub_1", "price_2", prorate=False)

    args, kwargs = stripe_calls["modify"][0]
    assert args == ("sub_1",)
    assert kwargs["items"] == [{"id": "si_1", "price": "price_2"}]
    assert kwargs["proration_behavior"] == "none"


def test_cancel_subscription(monkeypatch, stripe_calls):
    monkeypatch.setattr(stripe.Subscription, "cancel", stripe_calls["recorder"]("cancel"))

    StripeGateway().cancel_subscription("sub_1")

    assert stripe_calls["cancel"][0][0] == ("sub_1",)
