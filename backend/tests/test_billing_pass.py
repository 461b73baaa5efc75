import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from telebill.db.models import (
    BillingCycle,
    BillingRecord,
    BillingRecordStatus,
    FailureKind,
    SubscriptionStatus,
    SubscriptionStatusHistory,
)
from telebill.services.billing import BillingPass, advance_billing_date
from telebill.services.lifecycle import LifecyclePass
from telebill.services.payment_gateway import ChargeStatus

from conftest import NOW, TOMORROW, YESTERDAY, FakeGateway, RecordingNotifier


def records_for(db, subscription):
    return list(
        db.execute(select(BillingRecord).where(BillingRecord.subscription_id == subscription.id)).scalars()
    )


def history_for(db, subscription):
    return list(
        db.execute(
            select(SubscriptionStatusHistory).where(SubscriptionStatusHistory.subscription_id == subscription.id)
        ).scalars()
    )


def test_decline_at_threshold_moves_to_past_due(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_declines", failed_payment_attempts=2)
    gateway = FakeGateway({"pm_declines": ChargeStatus.declined})

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert sub.failed_payment_attempts == 3
    assert sub.status == SubscriptionStatus.past_due
    assert sub.next_billing_date == YESTERDAY

    records = records_for(db, sub)
    assert len(records) == 1
    assert records[0].status == BillingRecordStatus.failed
    assert records[0].failure_kind == FailureKind.declined
    assert records[0].attempt_number == 3
    assert records[0].error_message == "card_declined"

    history = history_for(db, sub)
    assert len(history) == 1
    assert (history[0].from_status, history[0].to_status) == (SubscriptionStatus.active, SubscriptionStatus.past_due)

    assert result.declined == 1
    assert result.moved_to_past_due == 1
    assert notifier.kinds() == ["failure", "past_due"]


def test_success_advances_date_and_resets_counter(db, config, gateway, notifier, make_subscription):
    sub = make_subscription(failed_payment_attempts=2)

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert sub.status == SubscriptionStatus.active
    assert sub.next_billing_date == datetime(2026, 4, 14, 12, 0, tzinfo=timezone.utc)
    assert sub.failed_payment_attempts == 0
    assert sub.last_billing_date == NOW
    assert sub.billing_cycle_anchor == YESTERDAY

    records = records_for(db, sub)
    assert len(records) == 1
    assert records[0].status == BillingRecordStatus.succeeded
    assert records[0].amount == Decimal("49.99")
    assert records[0].gateway_transaction_id == "pi_1"
    assert history_for(db, sub) == []

    assert result.succeeded == 1
    assert notifier.kinds() == ["receipt"]


def test_below_threshold_failure_keeps_status_for_retry(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_declines")
    gateway = FakeGateway({"pm_declines": ChargeStatus.declined})

    BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert sub.status == SubscriptionStatus.active
    assert sub.failed_payment_attempts == 1
    assert sub.last_payment_error == "card_declined"
    assert history_for(db, sub) == []


def test_every_due_subscription_gets_exactly_one_outcome(db, config, notifier, make_subscription):
    subs = [
        make_subscription(payment_method_id="pm_ok_1"),
        make_subscription(payment_method_id="pm_bad_1"),
        make_subscription(payment_method_id="pm_ok_2"),
        make_subscription(payment_method_id="pm_down_1"),
    ]
    before = {s.id: (s.next_billing_date, s.failed_payment_attempts) for s in subs}
    gateway = FakeGateway({"pm_bad_1": ChargeStatus.declined, "pm_down_1": ChargeStatus.unavailable})

    BillingPass(gateway, config).run(db, notifier, now=NOW)

    for sub in subs:
        old_date, old_attempts = before[sub.id]
        records = records_for(db, sub)
        assert len(records) == 1
        advanced = sub.next_billing_date > old_date and records[0].status == BillingRecordStatus.succeeded
        failed = (
            sub.failed_payment_attempts == old_attempts + 1
            and sub.next_billing_date == old_date
            and records[0].status == BillingRecordStatus.failed
        )
        assert advanced != failed


def test_past_due_transition_is_not_repeated(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_declines", failed_payment_attempts=2)
    gateway = FakeGateway({"pm_declines": ChargeStatus.declined})
    billing = BillingPass(gateway, config)

    billing.run(db, notifier, now=NOW)
    # Same cycle again: inside the retry spacing, no new charge attempt at all.
    billing.run(db, notifier, now=NOW + timedelta(minutes=5))

    assert len(gateway.charges) == 1
    assert len(history_for(db, sub)) == 1

    # After the retry spacing it is charged again but stays past due without a new entry.
    billing.run(db, notifier, now=NOW + config.past_due_retry_after + timedelta(minutes=1))

    assert len(gateway.charges) == 2
    assert sub.status == SubscriptionStatus.past_due
    assert sub.failed_payment_attempts == 4
    assert len(records_for(db, sub)) == 2
    assert len(history_for(db, sub)) == 1
    assert notifier.kinds().count("past_due") == 1


def test_past_due_recovers_on_successful_charge(db, config, notifier, make_subscription):
    sub = make_subscription(
        status=SubscriptionStatus.past_due,
        failed_payment_attempts=3,
        last_payment_failed_at=NOW - timedelta(days=1),
    )

    BillingPass(FakeGateway(), config).run(db, notifier, now=NOW)

    assert sub.status == SubscriptionStatus.active
    assert sub.failed_payment_attempts == 0
    history = history_for(db, sub)
    assert len(history) == 1
    assert (history[0].from_status, history[0].to_status) == (SubscriptionStatus.past_due, SubscriptionStatus.active)
    assert history[0].reason == "payment succeeded after past due"


def test_trial_converts_on_first_successful_charge(db, config, gateway, notifier, make_subscription):
    sub = make_subscription(
        status=SubscriptionStatus.trial_active,
        is_trial=True,
        trial_end_date=TOMORROW,
    )

    BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert sub.status == SubscriptionStatus.active
    history = history_for(db, sub)
    assert [(h.from_status, h.to_status) for h in history] == [
        (SubscriptionStatus.trial_active, SubscriptionStatus.active)
    ]


def test_ended_trial_is_never_charged(db, config, gateway, notifier, make_subscription):
    sub = make_subscription(
        status=SubscriptionStatus.trial_active,
        is_trial=True,
        trial_end_date=YESTERDAY,
    )

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert result.candidates == 0
    assert gateway.charges == []
    assert records_for(db, sub) == []
    assert sub.status == SubscriptionStatus.trial_active


@pytest.mark.parametrize(
    "status", [SubscriptionStatus.cancelled, SubscriptionStatus.expired, SubscriptionStatus.paused]
)
def test_non_billable_subscriptions_are_left_alone(db, config, gateway, notifier, make_subscription, status):
    sub = make_subscription(status=status)
    billing = BillingPass(gateway, config)

    for hours in range(3):
        billing.run(db, notifier, now=NOW + timedelta(hours=hours))

    assert gateway.charges == []
    assert sub.status == status
    assert records_for(db, sub) == []
    assert history_for(db, sub) == []


def test_gateway_exception_for_one_subscription_does_not_stop_the_batch(db, config, notifier, make_subscription):
    broken = make_subscription(payment_method_id="pm_broken", next_billing_date=YESTERDAY - timedelta(hours=1))
    healthy = make_subscription(payment_method_id="pm_healthy")
    gateway = FakeGateway({"pm_broken": RuntimeError("connection reset by peer")})

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert [c["payment_method_id"] for c in gateway.charges] == ["pm_broken", "pm_healthy"]
    assert result.succeeded == 1
    assert len(result.errors) == 1
    assert "connection reset by peer" in result.errors[0]

    assert records_for(db, broken) == []
    assert broken.failed_payment_attempts == 0
    assert broken.next_billing_date == YESTERDAY - timedelta(hours=1)

    assert len(records_for(db, healthy)) == 1
    assert healthy.next_billing_date > YESTERDAY


def test_gateway_outage_counts_but_does_not_alert_user(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_down")
    gateway = FakeGateway({"pm_down": ChargeStatus.unavailable})

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert result.unavailable == 1
    assert sub.failed_payment_attempts == 1
    records = records_for(db, sub)
    assert records[0].failure_kind == FailureKind.gateway_unavailable
    assert notifier.sent == []


def test_missing_payment_method_is_a_decline(db, config, gateway, notifier, make_subscription):
    sub = make_subscription(payment_method_id=None)

    BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert gateway.charges == []
    records = records_for(db, sub)
    assert records[0].failure_kind == FailureKind.declined
    assert records[0].error_message == "no payment method on file"
    assert notifier.kinds() == ["failure"]


def test_subscriptions_not_yet_due_are_skipped(db, config, gateway, notifier, make_subscription):
    make_subscription(next_billing_date=TOMORROW)
    make_subscription(auto_renew=False)

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert result.candidates == 0
    assert gateway.charges == []


def test_each_decline_gets_a_fresh_idempotency_key(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_declines")
    gateway = FakeGateway({"pm_declines": ChargeStatus.declined})
    billing = BillingPass(gateway, config)

    billing.run(db, notifier, now=NOW)
    billing.run(db, notifier, now=NOW)

    keys = [c["idempotency_key"] for c in gateway.charges]
    assert keys == [f"{sub.id}:{YESTERDAY.isoformat()}:0", f"{sub.id}:{YESTERDAY.isoformat()}:1"]


def test_retry_after_gateway_outage_reuses_idempotency_key(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_flaky")
    gateway = FakeGateway({"pm_flaky": [ChargeStatus.unavailable, ChargeStatus.succeeded]})
    billing = BillingPass(gateway, config)

    billing.run(db, notifier, now=NOW)
    result = billing.run(db, notifier, now=NOW)

    first, second = (c["idempotency_key"] for c in gateway.charges)
    assert first == second == f"{sub.id}:{YESTERDAY.isoformat()}:0"
    assert result.succeeded == 1
    assert sub.failed_payment_attempts == 0


def test_idempotency_key_counts_only_declines_for_the_current_period(db, config, notifier, make_subscription):
    sub = make_subscription(payment_method_id="pm_mixed")
    gateway = FakeGateway(
        {"pm_mixed": [ChargeStatus.declined, ChargeStatus.unavailable, ChargeStatus.unavailable]}
    )
    billing = BillingPass(gateway, config)

    for _ in range(3):
        billing.run(db, notifier, now=NOW)

    assert [c["idempotency_key"].rsplit(":", 1)[1] for c in gateway.charges] == ["0", "1", "1"]
    assert sub.failed_payment_attempts == 3


def test_non_renewing_due_subscription_is_not_charged(db, config, gateway, notifier, make_subscription):
    sub = make_subscription(auto_renew=False)

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert result.candidates == 0
    assert gateway.charges == []
    assert records_for(db, sub) == []
    assert sub.status == SubscriptionStatus.active

    LifecyclePass(config).run(db, notifier, now=NOW)

    assert sub.status == SubscriptionStatus.expired
    assert gateway.charges == []


def test_past_due_beyond_grace_is_no_longer_charged(db, config, gateway, notifier, make_subscription):
    sub = make_subscription(
        status=SubscriptionStatus.past_due,
        failed_payment_attempts=5,
        next_billing_date=NOW - config.past_due_grace - timedelta(hours=1),
        last_payment_failed_at=NOW - timedelta(days=1),
    )

    result = BillingPass(gateway, config).run(db, notifier, now=NOW)

    assert result.candidates == 0
    assert gateway.charges == []
    assert sub.status == SubscriptionStatus.past_due


def test_notification_failure_does_not_undo_the_charge(db, config, gateway, make_subscription):
    class ExplodingNotifier(RecordingNotifier):
        def send_payment_receipt(self, *args, **kwargs):
            raise RuntimeError("smtp down")

    sub = make_subscription()

    result = BillingPass(gateway, config).run(db, ExplodingNotifier(), now=NOW)

    assert result.succeeded == 1
    assert result.errors == []
    assert records_for(db, sub)[0].status == BillingRecordStatus.succeeded


def test_stop_request_leaves_remaining_candidates(db, config, gateway, notifier, make_subscription):
    make_subscription()
    make_subscription()
    stop_event = threading.Event()
    stop_event.set()

    result = BillingPass(gateway, config, stop_event=stop_event).run(db, notifier, now=NOW)

    assert result.candidates == 2
    assert gateway.charges == []


@pytest.mark.parametrize(
    "current,cycle,expected",
    [
        (datetime(2026, 1, 31, tzinfo=timezone.utc), BillingCycle.monthly, datetime(2026, 2, 28, tzinfo=timezone.utc)),
        (datetime(2026, 1, 15, tzinfo=timezone.utc), BillingCycle.weekly, datetime(2026, 1, 22, tzinfo=timezone.utc)),
        (datetime(2026, 1, 15, tzinfo=timezone.utc), BillingCycle.daily, datetime(2026, 1, 16, tzinfo=timezone.utc)),
        (datetime(2026, 11, 30, tzinfo=timezone.utc), BillingCycle.quarterly, datetime(2027, 2, 28, tzinfo=timezone.utc)),
        (datetime(2028, 2, 29, tzinfo=timezone.utc), BillingCycle.annual, datetime(2029, 2, 28, tzinfo=timezone.utc)),
    ],
)
def test_advance_billing_date(current, cycle, expected):
    assert advance_billing_date(current, cycle) == expected
