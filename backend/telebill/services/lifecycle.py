"""Lifecycle Pass and admin lifecycle actions.

The pass only moves statuses; it never talks to the payment gateway. Admin
actions (pause, resume, cancel) are policed by the same state machine.
"""
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from telebill.core.config import SchedulerConfig
from telebill.core.logging import get_logger
from telebill.db.base import utcnow
from telebill.db.models.subscription import Subscription, SubscriptionStatus
from telebill.db.models.subscription_status_history import SubscriptionStatusHistory
from telebill.db.repositories import SubscriptionRepository
from telebill.notifications.notifier import Notifier
from telebill.services.payment_gateway import PaymentGateway
from telebill.services.state_machine import InvalidTransitionError, apply_transition, is_terminal

logger = get_logger(__name__)

BILLING_DATE_ELAPSED = "billing date elapsed"
TRIAL_ENDED = "trial ended"
PAST_DUE_GRACE_ENDED = "payment grace period ended"


@dataclass
class LifecyclePassResult:
    started_at: datetime
    expired: int = 0
    trial_expired: int = 0
    suspended: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class LifecyclePass:
    def __init__(self, config: SchedulerConfig, stop_event: threading.Event | None = None):
        self.config = config
        self.stop_event = stop_event

    def run(self, db: Session, notifier: Notifier | None = None, now: datetime | None = None) -> LifecyclePassResult:
        now = now or utcnow()
        repo = SubscriptionRepository(db)
        result = LifecyclePassResult(started_at=now)

        lapsed_ids = repo.active_past_billing_date(
            now, grace=self.config.expiration_grace, limit=self.config.batch_size
        )
        trial_ids = repo.trials_past_end(now, limit=self.config.batch_size)
        delinquent_ids = repo.past_due_beyond_grace(
            now, grace=self.config.past_due_grace, limit=self.config.batch_size
        )
        db.commit()
        logger.info(
            "lifecycle pass: %d lapsed subscriptions, %d ended trials, %d past due beyond grace",
            len(lapsed_ids),
            len(trial_ids),
            len(delinquent_ids),
        )

        sweeps = (
            (lapsed_ids, SubscriptionStatus.active, BILLING_DATE_ELAPSED),
            (trial_ids, SubscriptionStatus.trial_active, TRIAL_ENDED),
            (delinquent_ids, SubscriptionStatus.past_due, PAST_DUE_GRACE_ENDED),
        )
        for ids, expected_status, reason in sweeps:
            for subscription_id in ids:
                if self.stop_event is not None and self.stop_event.is_set():
                    logger.info("stop requested; ending lifecycle pass early")
                    return self._finish(result)

                try:
                    if reason == PAST_DUE_GRACE_ENDED:
                        moved = self.suspend_subscription(repo, subscription_id, now)
                    else:
                        moved = self.expire_subscription(repo, subscription_id, expected_status, reason, now)
                    db.commit()
                except InvalidTransitionError as e:
                    db.rollback()
                    result.skipped += 1
                    result.errors.append(f"{subscription_id}: {e}")
                    logger.error("lifecycle inconsistency, subscription left untouched: %s", e)
                    continue
                except Exception as e:
                    db.rollback()
                    result.errors.append(f"{subscription_id}: {e}")
                    logger.exception(
                        "lifecycle update for subscription %s failed; will retry next cycle", subscription_id
                    )
                    continue

                if moved is None:
                    result.skipped += 1
                    continue

                if reason == TRIAL_ENDED:
                    result.trial_expired += 1
                elif reason == PAST_DUE_GRACE_ENDED:
                    result.suspended += 1
                else:
                    result.expired += 1

                if notifier is not None:
                    self._notify(notifier, moved, reason)

        return self._finish(result)

    @staticmethod
    def _notify(notifier: Notifier, subscription: Subscription, reason: str) -> None:
        try:
            if reason == PAST_DUE_GRACE_ENDED:
                notifier.send_suspension_notice(subscription.user_id, subscription_id=subscription.id)
            else:
                notifier.send_expiry_notice(subscription.user_id, subscription_id=subscription.id, reason=reason)
        except Exception:
            logger.exception("%s notice for subscription %s failed", reason, subscription.id)

    def expire_subscription(
        self,
        repo: SubscriptionRepository,
        subscription_id: uuid.UUID,
        expected_status: SubscriptionStatus,
        reason: str,
        now: datetime,
    ) -> Subscription | None:
        subscription = self._lock_expected(repo, subscription_id, expected_status, SubscriptionStatus.expired)
        if subscription is None:
            return None
        if expected_status == SubscriptionStatus.active and (
            subscription.next_billing_date is None or subscription.next_billing_date > now
        ):
            return None
        if expected_status == SubscriptionStatus.trial_active and (
            subscription.trial_end_date is None or subscription.trial_end_date > now
        ):
            return None

        apply_transition(repo.db, subscription, SubscriptionStatus.expired, reason, now=now)
        return subscription

    def suspend_subscription(
        self,
        repo: SubscriptionRepository,
        subscription_id: uuid.UUID,
        now: datetime,
    ) -> Subscription | None:
        """Pause a past-due subscription whose missed payment is older than the grace period."""
        subscription = self._lock_expected(
            repo, subscription_id, SubscriptionStatus.past_due, SubscriptionStatus.paused
        )
        if subscription is None:
            return None
        if (
            subscription.next_billing_date is None
            or subscription.next_billing_date > now - self.config.past_due_grace
        ):
            return None

        apply_transition(repo.db, subscription, SubscriptionStatus.paused, PAST_DUE_GRACE_ENDED, now=now)
        return subscription

    @staticmethod
    def _lock_expected(
        repo: SubscriptionRepository,
        subscription_id: uuid.UUID,
        expected_status: SubscriptionStatus,
        target: SubscriptionStatus,
    ) -> Subscription | None:
        subscription = repo.lock(subscription_id)
        if subscription is None:
            return None

        # The row may have moved since the candidate query (renewed, converted, ...).
        if subscription.status != expected_status:
            if is_terminal(subscription.status):
                raise InvalidTransitionError(subscription.status, target, subscription.id)
            return None
        return subscription

    @staticmethod
    def _finish(result: LifecyclePassResult) -> LifecyclePassResult:
        logger.info(
            "lifecycle pass complete: expired=%d trial_expired=%d suspended=%d skipped=%d errors=%d",
            result.expired,
            result.trial_expired,
            result.suspended,
            result.skipped,
            len(result.errors),
        )
        return result


def _load(db: Session, subscription_id: uuid.UUID) -> Subscription:
    subscription = SubscriptionRepository(db).get(subscription_id)
    if subscription is None:
        raise LookupError(f"subscription {subscription_id} not found")
    return subscription


def pause_subscription(
    db: Session, subscription_id: uuid.UUID, reason: str | None = None, changed_by: str = "admin"
) -> Subscription:
    subscription = _load(db, subscription_id)
    apply_transition(
        db, subscription, SubscriptionStatus.paused, reason or "subscription paused", changed_by=changed_by
    )
    db.commit()
    return subscription


def resume_subscription(
    db: Session, subscription_id: uuid.UUID, reason: str | None = None, changed_by: str = "admin"
) -> Subscription:
    subscription = _load(db, subscription_id)
    if subscription.status != SubscriptionStatus.paused:
        raise InvalidTransitionError(subscription.status, SubscriptionStatus.active, subscription.id)
    apply_transition(
        db, subscription, SubscriptionStatus.active, reason or "subscription resumed", changed_by=changed_by
    )
    db.commit()
    return subscription


def cancel_subscription(
    db: Session,
    subscription_id: uuid.UUID,
    reason: str | None = None,
    changed_by: str = "admin",
    gateway: PaymentGateway | None = None,
) -> Subscription:
    """Cancel locally, then best-effort cancel the gateway-side mirror."""
    subscription = _load(db, subscription_id)
    apply_transition(
        db,
        subscription,
        SubscriptionStatus.cancelled,
        reason or "subscription cancelled",
        changed_by=changed_by,
    )
    db.commit()

    if gateway is not None and subscription.gateway_subscription_id:
        try:
            gateway.cancel_subscription(subscription.gateway_subscription_id)
        except Exception:
            logger.exception(
                "gateway subscription %s not cancelled for subscription %s",
                subscription.gateway_subscription_id,
                subscription.id,
            )
    return subscription


def status_history(db: Session, subscription_id: uuid.UUID) -> list[SubscriptionStatusHistory]:
    _load(db, subscription_id)
    return SubscriptionRepository(db).status_history(subscription_id)
