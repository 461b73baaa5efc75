"""Subscription status transitions.

Every status change made by the scheduler or by an admin action goes through
``apply_transition``. The table below is the only place that decides whether a
move is legal; callers never assign ``Subscription.status`` themselves.
"""
import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from telebill.core.logging import get_logger
from telebill.db.base import utcnow
from telebill.db.models.subscription import Subscription, SubscriptionStatus
from telebill.db.models.subscription_status_history import SubscriptionStatusHistory

logger = get_logger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.pending: frozenset({S.active, S.trial_active, S.cancelled}),
    S.trial_active: frozenset({S.active, S.expired, S.cancelled}),
    S.active: frozenset({S.active, S.past_due, S.paused, S.cancelled, S.expired}),
    S.past_due: frozenset({S.active, S.paused, S.cancelled}),
    S.paused: frozenset({S.active, S.cancelled}),
    S.cancelled: frozenset(),
    S.expired: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Statuses the Billing Pass may charge.
BILLABLE_STATUSES = frozenset({S.active, S.past_due, S.trial_active})


class InvalidTransitionError(ValueError):
    def __init__(
        self,
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        subscription_id: uuid.UUID | None = None,
    ):
        self.current = current
        self.target = target
        self.subscription_id = subscription_id
        super().__init__(
            f"invalid status transition {current.value} -> {target.value}"
            f" for subscription {subscription_id}"
        )


def is_terminal(status: SubscriptionStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    subscription_id: uuid.UUID | None = None,
) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target, subscription_id)


def ensure_billable(subscription: Subscription) -> None:
    """Raise if a charge against this subscription would be an inconsistency.

    A terminal subscription reaching the Billing Pass means a stale read got
    through; it must never be charged.
    """
    if subscription.status not in BILLABLE_STATUSES:
        raise InvalidTransitionError(subscription.status, S.active, subscription.id)


def apply_transition(
    db: Session,
    subscription: Subscription,
    target: SubscriptionStatus,
    reason: str,
    *,
    changed_by: str = "system",
    now: datetime | None = None,
) -> SubscriptionStatusHistory | None:
    """Move ``subscription`` to ``target`` and append the history row.

    Returns the history row, or None for the legal ``active -> active`` renewal,
    which is not a status change. Raises InvalidTransitionError and leaves the
    subscription untouched when the move is not allowed.
    """
    current = subscription.status
    ensure_transition(current, target, subscription.id)

    if current == target:
        return None

    now = now or utcnow()
    subscription.status = target
    subscription.updated_at = now

    if target == S.paused:
        subscription.paused_at = now
    elif target == S.cancelled:
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason
        subscription.auto_renew = False
    elif target == S.expired:
        subscription.expired_at = now
    elif target == S.active:
        subscription.paused_at = None

    entry = SubscriptionStatusHistory(
        subscription_id=subscription.id,
        from_status=current,
        to_status=target,
        reason=reason,
        changed_by=changed_by,
        changed_at=now,
    )
    db.add(entry)
    db.flush()

    logger.info(
        "subscription %s status %s -> %s (%s)",
        subscription.id,
        current.value,
        target.value,
        reason,
    )
    return entry
