"""Payment gateway contract and its Stripe implementation.

Charges and refunds never raise for expected outcomes: a decline or an
unreachable gateway comes back as a typed result so the Billing Pass can tell
them apart. Anything else (bad credentials, programming errors) propagates.
"""
import abc
import enum
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import stripe

from telebill.core.logging import get_logger
from telebill.db.models.plan import BillingCycle

logger = get_logger(__name__)

STRIPE_INTERVALS: dict[BillingCycle, tuple[str, int]] = {
    BillingCycle.daily: ("day", 1),
    BillingCycle.weekly: ("week", 1),
    BillingCycle.monthly: ("month", 1),
    BillingCycle.quarterly: ("month", 3),
    BillingCycle.annual: ("year", 1),
}


class ChargeStatus(str, enum.Enum):
    succeeded = "succeeded"
    declined = "declined"
    unavailable = "unavailable"


@dataclass(frozen=True)
class ChargeResult:
    status: ChargeStatus
    amount: Decimal
    currency: str
    transaction_id: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.succeeded


@dataclass(frozen=True)
class RefundResult:
    succeeded: bool
    amount: Decimal
    refund_id: str | None = None
    error: str | None = None


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class PaymentGateway(abc.ABC):
    """What the billing core needs from a payment provider."""

    @abc.abstractmethod
    def create_customer(self, email: str, name: str | None = None, metadata: dict | None = None) -> str:
        ...

    @abc.abstractmethod
    def create_product(self, name: str, description: str | None = None) -> str:
        ...

    @abc.abstractmethod
    def create_price(self, product_id: str, amount: Decimal, currency: str, cycle: BillingCycle) -> str:
        ...

    @abc.abstractmethod
    def charge(
        self,
        *,
        customer_id: str | None,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        ...

    @abc.abstractmethod
    def create_subscription(self, customer_id: str, price_id: str, payment_method_id: str | None = None) -> str:
        ...

    @abc.abstractmethod
    def update_subscription(self, subscription_id: str, price_id: str, prorate: bool = True) -> None:
        ...

    @abc.abstractmethod
    def cancel_subscription(self, subscription_id: str) -> None:
        ...

    @abc.abstractmethod
    def refund(self, transaction_id: str, amount: Decimal | None = None) -> RefundResult:
        """Refund a captured charge; ``amount=None`` refunds it in full."""
        ...


class StripeGateway(PaymentGateway):
    """PaymentGateway backed by the Stripe SDK."""

    def __init__(self, api_key: str | None = None):
        if api_key:
            stripe.api_key = api_key

    def create_customer(self, email: str, name: str | None = None, metadata: dict | None = None) -> str:
        customer = stripe.Customer.create(email=email, name=name, metadata=metadata or {})
        return customer.id

    def create_product(self, name: str, description: str | None = None) -> str:
        params = {"name": name}
        if description:
            params["description"] = description
        product = stripe.Product.create(**params)
        return product.id

    def create_price(self, product_id: str, amount: Decimal, currency: str, cycle: BillingCycle) -> str:
        interval, interval_count = STRIPE_INTERVALS[cycle]
        price = stripe.Price.create(
            product=product_id,
            unit_amount=to_minor_units(amount),
            currency=currency,
            recurring={"interval": interval, "interval_count": interval_count},
        )
        return price.id

    def charge(
        self,
        *,
        customer_id: str | None,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "payment_method": payment_method_id,
            "confirm": True,
            "off_session": True,
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as e:
            return ChargeResult(
                status=ChargeStatus.declined,
                amount=amount,
                currency=currency,
                error=e.user_message or str(e),
            )
        except stripe.InvalidRequestError as e:
            # Detached or unusable payment method; the customer has to fix it.
            return ChargeResult(
                status=ChargeStatus.declined,
                amount=amount,
                currency=currency,
                error=str(e),
            )
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning("stripe unavailable during charge: %s", e)
            return ChargeResult(
                status=ChargeStatus.unavailable,
                amount=amount,
                currency=currency,
                error=str(e),
            )

        if intent.status == "succeeded":
            return ChargeResult(
                status=ChargeStatus.succeeded,
                amount=from_minor_units(intent.amount),
                currency=intent.currency,
                transaction_id=intent.id,
            )

        return ChargeResult(
            status=ChargeStatus.declined,
            amount=amount,
            currency=currency,
            transaction_id=intent.id,
            error=f"payment intent status: {intent.status}",
        )

    def create_subscription(self, customer_id: str, price_id: str, payment_method_id: str | None = None) -> str:
        params = {"customer": customer_id, "items": [{"price": price_id}]}
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        subscription = stripe.Subscription.create(**params)
        return subscription.id

    def update_subscription(self, subscription_id: str, price_id: str, prorate: bool = True) -> None:
        current = stripe.Subscription.retrieve(subscription_id)
        item_id = current["items"]["data"][0]["id"]
        stripe.Subscription.modify(
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations" if prorate else "none",
        )

    def cancel_subscription(self, subscription_id: str) -> None:
        stripe.Subscription.cancel(subscription_id)

    def refund(self, transaction_id: str, amount: Decimal | None = None) -> RefundResult:
        params = {"payment_intent": transaction_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        try:
            refund = stripe.Refund.create(**params)
        except (stripe.InvalidRequestError, stripe.CardError) as e:
            return RefundResult(succeeded=False, amount=amount or Decimal("0"), error=str(e))
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning("stripe unavailable during refund: %s", e)
            return RefundResult(succeeded=False, amount=amount or Decimal("0"), error=str(e))

        return RefundResult(
            succeeded=refund.status in ("succeeded", "pending"),
            amount=from_minor_units(refund.amount),
            refund_id=refund.id,
            error=None if refund.status in ("succeeded", "pending") else f"refund status: {refund.status}",
        )
