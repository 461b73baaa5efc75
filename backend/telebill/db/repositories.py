"""Subscription persistence used by the billing and lifecycle passes."""
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from telebill.db.models.billing_record import BillingRecord, BillingRecordStatus, FailureKind
from telebill.db.models.subscription import Subscription, SubscriptionStatus
from telebill.db.models.subscription_status_history import SubscriptionStatusHistory

S = SubscriptionStatus


class SubscriptionRepository:
    """Queries and writes for subscriptions and their billing trail.

    Candidate queries return ids only; each candidate is then re-read under a
    row lock inside its own transaction with ``lock``.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, subscription_id: uuid.UUID) -> Subscription | None:
        return self.db.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.is_deleted.is_(False),
            )
        ).scalar_one_or_none()

    def lock(self, subscription_id: uuid.UUID) -> Subscription | None:
        """Re-read a candidate with FOR UPDATE SKIP LOCKED.

        Returns None when the row is gone, soft-deleted, or held by another
        scheduler instance.
        """
        stmt = (
            select(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.is_deleted.is_(False),
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def due_for_billing(
        self,
        now: datetime,
        *,
        past_due_retry_after: timedelta,
        past_due_grace: timedelta,
        limit: int,
    ) -> list[uuid.UUID]:
        retry_cutoff = now - past_due_retry_after
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.is_deleted.is_(False),
                Subscription.auto_renew.is_(True),
                Subscription.next_billing_date <= now,
                or_(
                    Subscription.status == S.active,
                    and_(
                        Subscription.status == S.past_due,
                        Subscription.next_billing_date > now - past_due_grace,
                        or_(
                            Subscription.last_payment_failed_at.is_(None),
                            Subscription.last_payment_failed_at <= retry_cutoff,
                        ),
                    ),
                    and_(
                        Subscription.status == S.trial_active,
                        Subscription.trial_end_date > now,
                    ),
                ),
            )
            .order_by(Subscription.next_billing_date.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def active_past_billing_date(
        self,
        now: datetime,
        *,
        grace: timedelta,
        limit: int,
    ) -> list[uuid.UUID]:
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.is_deleted.is_(False),
                Subscription.status == S.active,
                Subscription.next_billing_date <= now,
                or_(
                    Subscription.auto_renew.is_(False),
                    Subscription.next_billing_date <= now - grace,
                ),
            )
            .order_by(Subscription.next_billing_date.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def trials_past_end(self, now: datetime, *, limit: int) -> list[uuid.UUID]:
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.is_deleted.is_(False),
                Subscription.status == S.trial_active,
                Subscription.trial_end_date <= now,
            )
            .order_by(Subscription.trial_end_date.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def past_due_beyond_grace(self, now: datetime, *, grace: timedelta, limit: int) -> list[uuid.UUID]:
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.is_deleted.is_(False),
                Subscription.status == S.past_due,
                Subscription.next_billing_date <= now - grace,
            )
            .order_by(Subscription.next_billing_date.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_declines(self, subscription_id: uuid.UUID, due_date: datetime) -> int:
        """Hard declines recorded against one billing period."""
        return self.db.execute(
            select(func.count())
            .select_from(BillingRecord)
            .where(
                BillingRecord.subscription_id == subscription_id,
                BillingRecord.due_date == due_date,
                BillingRecord.status == BillingRecordStatus.failed,
                BillingRecord.failure_kind == FailureKind.declined,
            )
        ).scalar_one()

    def get_billing_record(self, record_id: uuid.UUID, *, for_update: bool = False) -> BillingRecord | None:
        if not for_update:
            return self.db.get(BillingRecord, record_id)
        return self.db.execute(
            select(BillingRecord)
            .where(BillingRecord.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def add_billing_record(self, record: BillingRecord) -> BillingRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def status_history(self, subscription_id: uuid.UUID) -> list[SubscriptionStatusHistory]:
        stmt = (
            select(SubscriptionStatusHistory)
            .where(SubscriptionStatusHistory.subscription_id == subscription_id)
            .order_by(SubscriptionStatusHistory.changed_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def billing_records_between(self, start: datetime, end: datetime) -> list[BillingRecord]:
        stmt = (
            select(BillingRecord)
            .where(BillingRecord.created_at >= start, BillingRecord.created_at <= end)
            .order_by(BillingRecord.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_by_status(self, status: SubscriptionStatus) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(Subscription)
            .where(Subscription.is_deleted.is_(False), Subscription.status == status)
        ).scalar_one()

    def count_with_failed_attempts(self) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(Subscription)
            .where(Subscription.is_deleted.is_(False), Subscription.failed_payment_attempts > 0)
        ).scalar_one()
