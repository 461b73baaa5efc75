import threading
from datetime import timedelta

from telebill.db.models import Subscription, SubscriptionStatus
from telebill.services.payment_gateway import ChargeStatus
from telebill.workers.subscription_scheduler import SubscriptionScheduler

from conftest import NOW, YESTERDAY, FakeGateway, RecordingNotifier


def build(config, session_factory, gateway=None, notifier=None, **kwargs):
    notifier = notifier or RecordingNotifier()
    return SubscriptionScheduler(
        config=config,
        session_factory=session_factory,
        gateway=gateway or FakeGateway(),
        notifier_factory=lambda db: notifier,
        clock=lambda: NOW,
        **kwargs,
    )


def test_cycle_runs_both_passes(db, config, session_factory, make_subscription):
    due = make_subscription()
    trial = make_subscription(status=SubscriptionStatus.trial_active, is_trial=True, trial_end_date=YESTERDAY)
    scheduler = build(config, session_factory)

    report = scheduler.run_cycle(NOW)

    assert report.counts() == {"billed_succeeded": 1, "billed_failed": 0, "expired": 0, "trial_expired": 1, "suspended": 0}
    db.expire_all()
    assert db.get(Subscription, due.id).next_billing_date > YESTERDAY
    assert db.get(Subscription, trial.id).status == SubscriptionStatus.expired


def test_billing_crash_does_not_block_lifecycle(db, config, session_factory, make_subscription, monkeypatch):
    trial = make_subscription(status=SubscriptionStatus.trial_active, is_trial=True, trial_end_date=YESTERDAY)
    scheduler = build(config, session_factory)

    def boom(*args, **kwargs):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(scheduler.billing_pass, "run", boom)

    report = scheduler.run_cycle(NOW)

    assert report.billing is None
    assert report.billing_error == "database is gone"
    assert report.lifecycle.trial_expired == 1
    assert scheduler.next_billing_at == NOW + config.failure_backoff
    assert scheduler.next_lifecycle_at == NOW + config.lifecycle_interval
    db.expire_all()
    assert db.get(Subscription, trial.id).status == SubscriptionStatus.expired


def test_lifecycle_crash_does_not_undo_billing(config, session_factory, make_subscription, monkeypatch):
    make_subscription()
    scheduler = build(config, session_factory)

    def boom(*args, **kwargs):
        raise RuntimeError("lifecycle exploded")

    monkeypatch.setattr(scheduler.lifecycle_pass, "run", boom)

    report = scheduler.run_cycle(NOW)

    assert report.billing.succeeded == 1
    assert report.lifecycle_error == "lifecycle exploded"
    assert scheduler.next_lifecycle_at == NOW + config.failure_backoff


def test_passes_follow_their_own_intervals(config, session_factory):
    scheduler = build(config, session_factory)
    calls = []
    scheduler.run_billing = lambda now: calls.append(("billing", now))
    scheduler.run_lifecycle = lambda now: calls.append(("lifecycle", now))

    scheduler.run_cycle(NOW)
    for hours in range(1, 7):
        scheduler.run_cycle(NOW + timedelta(hours=hours))

    billing_runs = [c for c in calls if c[0] == "billing"]
    lifecycle_runs = [c for c in calls if c[0] == "lifecycle"]
    assert len(billing_runs) == 7
    assert [c[1] for c in lifecycle_runs] == [NOW, NOW + timedelta(hours=6)]


def test_sleep_until_the_earlier_deadline(config, session_factory):
    scheduler = build(config, session_factory)
    scheduler.next_billing_at = NOW + timedelta(minutes=20)
    scheduler.next_lifecycle_at = NOW + timedelta(hours=3)

    assert scheduler.seconds_until_next_run(NOW) == 20 * 60
    assert scheduler.seconds_until_next_run(NOW + timedelta(hours=1)) == 0.0


def test_failed_charges_are_counted_per_cycle(config, session_factory, make_subscription):
    make_subscription(payment_method_id="pm_declines")
    make_subscription(payment_method_id="pm_down")
    gateway = FakeGateway({"pm_declines": ChargeStatus.declined, "pm_down": ChargeStatus.unavailable})
    scheduler = build(config, session_factory, gateway=gateway)

    report = scheduler.run_cycle(NOW)

    assert report.counts()["billed_failed"] == 2


def test_run_forever_exits_when_stopped(config, session_factory):
    stop_event = threading.Event()
    scheduler = build(config, session_factory, stop_event=stop_event)
    cycles = []

    def one_cycle(now=None):
        cycles.append(now)
        scheduler.stop()

    scheduler.run_cycle = one_cycle

    thread = threading.Thread(target=scheduler.run_forever)
    thread.start()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(cycles) == 1


def test_run_forever_survives_a_crashed_cycle(config, session_factory):
    scheduler = build(config, session_factory, stop_event=threading.Event())
    waits = []

    def crash(now=None):
        raise RuntimeError("unexpected")

    def fake_wait(timeout=None):
        waits.append(timeout)
        return True

    scheduler.run_cycle = crash
    scheduler.stop_event.wait = fake_wait

    scheduler.run_forever()

    assert waits == [config.failure_backoff.total_seconds()]
