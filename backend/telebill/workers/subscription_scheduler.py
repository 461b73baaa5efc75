import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from telebill.core.config import SchedulerConfig, settings
from telebill.core.logging import setup_logging
from telebill.db.base import utcnow
from telebill.notifications.notifier import Notifier, OutboxNotifier
from telebill.services.billing import BillingPass, BillingPassResult
from telebill.services.lifecycle import LifecyclePass, LifecyclePassResult
from telebill.services.payment_gateway import PaymentGateway

logger = logging.getLogger("subscription_scheduler")


@dataclass
class CycleReport:
    started_at: datetime
    billing: BillingPassResult | None = None
    lifecycle: LifecyclePassResult | None = None
    billing_error: str | None = None
    lifecycle_error: str | None = None

    def counts(self) -> dict[str, int]:
        return {
            "billed_succeeded": self.billing.succeeded if self.billing else 0,
            "billed_failed": self.billing.failed if self.billing else 0,
            "expired": self.lifecycle.expired if self.lifecycle else 0,
            "trial_expired": self.lifecycle.trial_expired if self.lifecycle else 0,
            "suspended": self.lifecycle.suspended if self.lifecycle else 0,
        }


class SubscriptionScheduler:
    """Runs the Billing Pass and the Lifecycle Pass on their own intervals.

    The loop sleeps until the earlier of the two deadlines, so a long lifecycle
    interval never starves and neither pass waits on the other. A crashed pass is
    logged, does not stop the other, and is retried after
    ``config.failure_backoff``; the loop itself never exits on an error.
    ``stop()`` is honoured between candidates and between cycles; an in-flight
    charge is always allowed to finish and be recorded.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        session_factory: Callable[[], Session],
        gateway: PaymentGateway,
        notifier_factory: Callable[[Session], Notifier] = OutboxNotifier,
        clock: Callable[[], datetime] = utcnow,
        stop_event: threading.Event | None = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.notifier_factory = notifier_factory
        self.clock = clock
        self.stop_event = stop_event or threading.Event()
        self.billing_pass = BillingPass(gateway, config, stop_event=self.stop_event)
        self.lifecycle_pass = LifecyclePass(config, stop_event=self.stop_event)
        self.next_billing_at: datetime | None = None
        self.next_lifecycle_at: datetime | None = None

    def stop(self) -> None:
        self.stop_event.set()

    def run_billing(self, now: datetime | None = None) -> BillingPassResult:
        now = now or self.clock()
        with self.session_factory() as db:
            return self.billing_pass.run(db, self.notifier_factory(db), now=now)

    def run_lifecycle(self, now: datetime | None = None) -> LifecyclePassResult:
        now = now or self.clock()
        with self.session_factory() as db:
            return self.lifecycle_pass.run(db, self.notifier_factory(db), now=now)

    def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """Run whichever passes are due at ``now``, each isolated from the other."""
        now = now or self.clock()
        report = CycleReport(started_at=now)
        logger.info("subscription cycle starting at %s", now.isoformat())

        if self.next_billing_at is None or now >= self.next_billing_at:
            try:
                report.billing = self.run_billing(now)
                self.next_billing_at = now + self.config.billing_interval
            except Exception as e:
                report.billing_error = str(e)
                self.next_billing_at = now + self.config.failure_backoff
                logger.exception("billing pass crashed; retrying in %s", self.config.failure_backoff)

        if self.stop_event.is_set():
            logger.info("stop requested; skipping lifecycle pass this cycle")
        elif self.next_lifecycle_at is None or now >= self.next_lifecycle_at:
            try:
                report.lifecycle = self.run_lifecycle(now)
                self.next_lifecycle_at = now + self.config.lifecycle_interval
            except Exception as e:
                report.lifecycle_error = str(e)
                self.next_lifecycle_at = now + self.config.failure_backoff
                logger.exception("lifecycle pass crashed; retrying in %s", self.config.failure_backoff)

        counts = report.counts()
        logger.info(
            "subscription cycle complete: billed_succeeded=%d billed_failed=%d expired=%d trial_expired=%d "
            "suspended=%d",
            counts["billed_succeeded"],
            counts["billed_failed"],
            counts["expired"],
            counts["trial_expired"],
            counts["suspended"],
        )
        return report

    def seconds_until_next_run(self, now: datetime | None = None) -> float:
        now = now or self.clock()
        deadlines = [d for d in (self.next_billing_at, self.next_lifecycle_at) if d is not None]
        if not deadlines:
            return 0.0
        return max((min(deadlines) - now).total_seconds(), 0.0)

    def run_forever(self) -> None:
        logger.info(
            "subscription scheduler starting (billing every %s, lifecycle every %s)",
            self.config.billing_interval,
            self.config.lifecycle_interval,
        )

        while not self.stop_event.is_set():
            try:
                self.run_cycle()
                wait = self.seconds_until_next_run()
            except Exception:
                wait = self.config.failure_backoff.total_seconds()
                logger.exception("subscription cycle crashed; backing off %.0fs", wait)

            if self.stop_event.wait(timeout=wait):
                break

        logger.info("subscription scheduler stopped")


def build_scheduler(stop_event: threading.Event | None = None) -> SubscriptionScheduler:
    from telebill.db.session import SessionLocal
    from telebill.services.payment_gateway import StripeGateway

    return SubscriptionScheduler(
        config=SchedulerConfig.from_settings(settings),
        session_factory=SessionLocal,
        gateway=StripeGateway(settings.STRIPE_SECRET_KEY),
        stop_event=stop_event,
    )


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum, frame):
        logger.info("received signal %s; finishing in-flight work then stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main(once: bool = False) -> None:
    setup_logging(settings.LOG_LEVEL)
    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    scheduler = build_scheduler(stop_event)
    if once:
        scheduler.run_cycle()
        return
    scheduler.run_forever()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    main(once=args.once)
