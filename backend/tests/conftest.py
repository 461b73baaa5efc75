import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from telebill.core.config import SchedulerConfig
from telebill.db.base import Base
from telebill.db.models import (
    BillingCycle,
    Plan,
    Subscription,
    SubscriptionStatus,
    User,
)
from telebill.notifications.notifier import Notifier
from telebill.services.payment_gateway import (
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
    RefundResult,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
YESTERDAY = NOW - timedelta(days=1)
TOMORROW = NOW + timedelta(days=1)


class FakeGateway(PaymentGateway):
    """Gateway scripted per payment method id.

    ``outcomes[pm]`` is a ChargeStatus, a list of them (consumed in order), or
    an exception instance to raise. Unscripted payment methods succeed.
    """

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.charges = []
        self.refunds = []
        self.cancelled = []
        self.refund_result = None

    def _next(self, payment_method_id):
        outcome = self.outcomes.get(payment_method_id, ChargeStatus.succeeded)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else ChargeStatus.succeeded
        return outcome

    def create_customer(self, email, name=None, metadata=None):
        return f"cus_{email}"

    def create_product(self, name, description=None):
        return f"prod_{name}"

    def create_price(self, product_id, amount, currency, cycle):
        return f"price_{product_id}_{cycle.value}"

    def charge(self, *, customer_id, payment_method_id, amount, currency, description=None, idempotency_key=None):
        self.charges.append(
            {
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        outcome = self._next(payment_method_id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == ChargeStatus.succeeded:
            return ChargeResult(
                status=outcome,
                amount=amount,
                currency=currency,
                transaction_id=f"pi_{len(self.charges)}",
            )
        error = "card_declined" if outcome == ChargeStatus.declined else "gateway timeout"
        return ChargeResult(status=outcome, amount=amount, currency=currency, error=error)

    def create_subscription(self, customer_id, price_id, payment_method_id=None):
        return f"sub_{customer_id}"

    def update_subscription(self, subscription_id, price_id, prorate=True):
        return None

    def cancel_subscription(self, subscription_id):
        self.cancelled.append(subscription_id)

    def refund(self, transaction_id, amount=None):
        self.refunds.append((transaction_id, amount))
        if self.refund_result is not None:
            return self.refund_result
        return RefundResult(succeeded=True, amount=amount or Decimal("0"), refund_id=f"re_{len(self.refunds)}")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def kinds(self):
        return [kind for kind, _ in self.sent]

    def send_payment_receipt(self, user_id, amount, *, currency, subscription_id, billing_record_id=None):
        self.sent.append(("receipt", {"user_id": user_id, "amount": amount, "subscription_id": subscription_id}))

    def send_payment_failure_alert(
        self, user_id, attempt_number, *, subscription_id, billing_record_id=None, reason=None
    ):
        self.sent.append(
            ("failure", {"user_id": user_id, "attempt": attempt_number, "subscription_id": subscription_id})
        )

    def send_past_due_notice(self, user_id, *, subscription_id):
        self.sent.append(("past_due", {"user_id": user_id, "subscription_id": subscription_id}))

    def send_expiry_notice(self, user_id, *, subscription_id, reason):
        self.sent.append(("expired", {"user_id": user_id, "subscription_id": subscription_id, "reason": reason}))

    def send_suspension_notice(self, user_id, *, subscription_id):
        self.sent.append(("suspended", {"user_id": user_id, "subscription_id": subscription_id}))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def config():
    return SchedulerConfig(
        billing_interval=timedelta(hours=1),
        lifecycle_interval=timedelta(hours=6),
        failure_backoff=timedelta(minutes=5),
        failed_payment_threshold=3,
        past_due_retry_after=timedelta(hours=6),
        past_due_grace=timedelta(days=7),
        expiration_grace=timedelta(days=7),
        batch_size=100,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def user(db):
    user = User(email="patient@example.com", full_name="Test Patient")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def plan(db):
    plan = Plan(
        id="primary-care-monthly",
        name="Primary Care Monthly",
        price=Decimal("49.99"),
        billing_cycle=BillingCycle.monthly,
    )
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def make_subscription(db, user, plan):
    def _make(**overrides) -> Subscription:
        values = {
            "user_id": user.id,
            "plan_id": plan.id,
            "status": SubscriptionStatus.active,
            "current_price": Decimal("49.99"),
            "currency": "usd",
            "next_billing_date": YESTERDAY,
            "payment_method_id": f"pm_{uuid.uuid4().hex[:8]}",
            "gateway_customer_id": "cus_test",
            "failed_payment_attempts": 0,
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db.add(subscription)
        db.commit()
        return subscription

    return _make
