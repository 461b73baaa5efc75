"""Billing Pass: charge subscriptions whose billing date has arrived.

Each candidate is handled in its own transaction: the subscription update, the
BillingRecord and any status-history row commit together or not at all.
Notifications are enqueued afterwards and can never undo a recorded charge.
"""
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from telebill.core.config import SchedulerConfig
from telebill.core.logging import get_logger
from telebill.db.base import utcnow
from telebill.db.models.billing_record import BillingRecord, BillingRecordStatus, FailureKind
from telebill.db.models.plan import BillingCycle
from telebill.db.models.subscription import Subscription, SubscriptionStatus
from telebill.db.repositories import SubscriptionRepository
from telebill.notifications.notifier import Notifier
from telebill.services.payment_gateway import ChargeResult, ChargeStatus, PaymentGateway
from telebill.services.state_machine import InvalidTransitionError, apply_transition, ensure_billable

logger = get_logger(__name__)

CYCLE_LENGTHS: dict[BillingCycle, relativedelta] = {
    BillingCycle.daily: relativedelta(days=1),
    BillingCycle.weekly: relativedelta(weeks=1),
    BillingCycle.monthly: relativedelta(months=1),
    BillingCycle.quarterly: relativedelta(months=3),
    BillingCycle.annual: relativedelta(years=1),
}


def advance_billing_date(current: datetime, cycle: BillingCycle) -> datetime:
    """One billing period after ``current``; month ends are clamped (Jan 31 -> Feb 28)."""
    return current + CYCLE_LENGTHS.get(cycle, CYCLE_LENGTHS[BillingCycle.monthly])


class RefundError(ValueError):
    pass


@dataclass
class ChargeOutcome:
    subscription_id: uuid.UUID
    user_id: uuid.UUID
    status: ChargeStatus
    amount: Decimal
    currency: str
    attempt_number: int
    billing_record_id: uuid.UUID
    error: str | None = None
    moved_to_past_due: bool = False


@dataclass
class BillingPassResult:
    started_at: datetime
    candidates: int = 0
    succeeded: int = 0
    declined: int = 0
    unavailable: int = 0
    moved_to_past_due: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.declined + self.unavailable

    def record(self, outcome: ChargeOutcome) -> None:
        if outcome.status == ChargeStatus.succeeded:
            self.succeeded += 1
        elif outcome.status == ChargeStatus.declined:
            self.declined += 1
        else:
            self.unavailable += 1
        if outcome.moved_to_past_due:
            self.moved_to_past_due += 1


class BillingPass:
    def __init__(
        self,
        gateway: PaymentGateway,
        config: SchedulerConfig,
        stop_event: threading.Event | None = None,
    ):
        self.gateway = gateway
        self.config = config
        self.stop_event = stop_event

    def run(self, db: Session, notifier: Notifier, now: datetime | None = None) -> BillingPassResult:
        now = now or utcnow()
        repo = SubscriptionRepository(db)
        result = BillingPassResult(started_at=now)

        candidate_ids = repo.due_for_billing(
            now,
            past_due_retry_after=self.config.past_due_retry_after,
            past_due_grace=self.config.past_due_grace,
            limit=self.config.batch_size,
        )
        db.commit()
        result.candidates = len(candidate_ids)
        logger.info("billing pass: %d candidates due", len(candidate_ids))

        for index, subscription_id in enumerate(candidate_ids):
            if self.stop_event is not None and self.stop_event.is_set():
                logger.info(
                    "stop requested; leaving %d billing candidates for the next cycle",
                    len(candidate_ids) - index,
                )
                break

            try:
                outcome = self.bill_subscription(repo, subscription_id, now)
                db.commit()
            except InvalidTransitionError as e:
                db.rollback()
                result.skipped += 1
                result.errors.append(f"{subscription_id}: {e}")
                logger.error("billing inconsistency, subscription left untouched: %s", e)
                continue
            except Exception as e:
                db.rollback()
                result.errors.append(f"{subscription_id}: {e}")
                logger.exception("billing failed for subscription %s; will retry next cycle", subscription_id)
                continue

            if outcome is None:
                result.skipped += 1
                continue

            result.record(outcome)
            try:
                self._notify(notifier, outcome)
            except Exception:
                logger.exception("notification for subscription %s failed; charge already recorded", subscription_id)

        logger.info(
            "billing pass complete: candidates=%d succeeded=%d declined=%d unavailable=%d "
            "past_due=%d skipped=%d errors=%d",
            result.candidates,
            result.succeeded,
            result.declined,
            result.unavailable,
            result.moved_to_past_due,
            result.skipped,
            len(result.errors),
        )
        return result

    def bill_subscription(
        self,
        repo: SubscriptionRepository,
        subscription_id: uuid.UUID,
        now: datetime,
    ) -> ChargeOutcome | None:
        """Charge one candidate and stage its writes. The caller commits or rolls back."""
        subscription = repo.lock(subscription_id)
        if subscription is None:
            logger.info("subscription %s is gone or locked by another worker; skipping", subscription_id)
            return None

        ensure_billable(subscription)

        # Re-check on the locked row; another worker may have billed it already.
        if subscription.next_billing_date is None or subscription.next_billing_date > now:
            return None
        if subscription.status == SubscriptionStatus.trial_active and (
            subscription.trial_end_date is None or subscription.trial_end_date <= now
        ):
            return None
        if (
            subscription.status == SubscriptionStatus.past_due
            and subscription.next_billing_date <= now - self.config.past_due_grace
        ):
            return None

        declines = repo.count_declines(subscription.id, subscription.next_billing_date)
        charge = self._charge(subscription, declines)

        if charge.succeeded:
            return self._record_success(repo, subscription, charge, now)
        return self._record_failure(repo, subscription, charge, now)

    def _charge(self, subscription: Subscription, declines: int) -> ChargeResult:
        if not subscription.payment_method_id:
            return ChargeResult(
                status=ChargeStatus.declined,
                amount=subscription.current_price,
                currency=subscription.currency,
                error="no payment method on file",
            )

        plan_name = subscription.plan.name if subscription.plan else subscription.plan_id
        return self.gateway.charge(
            customer_id=subscription.gateway_customer_id,
            payment_method_id=subscription.payment_method_id,
            amount=subscription.current_price,
            currency=subscription.currency,
            description=f"Recurring payment for {plan_name}",
            # Outages reuse the key: a charge captured before the connection
            # dropped must not be taken again.
            idempotency_key=(
                f"{subscription.id}:{subscription.next_billing_date.isoformat()}"
                f":{declines}"
            ),
        )

    def _record_success(
        self,
        repo: SubscriptionRepository,
        subscription: Subscription,
        charge: ChargeResult,
        now: datetime,
    ) -> ChargeOutcome:
        due_date = subscription.next_billing_date
        record = repo.add_billing_record(
            BillingRecord(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=charge.amount,
                currency=charge.currency or subscription.currency,
                status=BillingRecordStatus.succeeded,
                attempt_number=subscription.failed_payment_attempts + 1,
                gateway_transaction_id=charge.transaction_id,
                due_date=due_date,
                created_at=now,
            )
        )

        reason = {
            SubscriptionStatus.trial_active: "trial converted on first successful charge",
            SubscriptionStatus.past_due: "payment succeeded after past due",
        }.get(subscription.status, "renewal payment succeeded")
        apply_transition(repo.db, subscription, SubscriptionStatus.active, reason, now=now)

        cycle = subscription.plan.billing_cycle if subscription.plan else BillingCycle.monthly
        subscription.next_billing_date = advance_billing_date(due_date, cycle)
        if subscription.billing_cycle_anchor is None:
            subscription.billing_cycle_anchor = due_date
        subscription.last_billing_date = now
        subscription.failed_payment_attempts = 0
        subscription.last_payment_error = None
        subscription.last_payment_failed_at = None
        subscription.updated_at = now
        repo.db.flush()

        logger.info(
            "charged subscription %s amount=%s %s txn=%s next_billing_date=%s",
            subscription.id,
            record.amount,
            record.currency,
            record.gateway_transaction_id,
            subscription.next_billing_date.isoformat(),
        )
        return ChargeOutcome(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=ChargeStatus.succeeded,
            amount=record.amount,
            currency=record.currency,
            attempt_number=record.attempt_number,
            billing_record_id=record.id,
        )

    def _record_failure(
        self,
        repo: SubscriptionRepository,
        subscription: Subscription,
        charge: ChargeResult,
        now: datetime,
    ) -> ChargeOutcome:
        subscription.failed_payment_attempts = (subscription.failed_payment_attempts or 0) + 1
        attempt = subscription.failed_payment_attempts
        error = (charge.error or charge.status.value)[:2000]

        failure_kind = (
            FailureKind.gateway_unavailable
            if charge.status == ChargeStatus.unavailable
            else FailureKind.declined
        )
        record = repo.add_billing_record(
            BillingRecord(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=subscription.current_price,
                currency=subscription.currency,
                status=BillingRecordStatus.failed,
                failure_kind=failure_kind,
                attempt_number=attempt,
                gateway_transaction_id=charge.transaction_id,
                error_message=error,
                due_date=subscription.next_billing_date,
                created_at=now,
            )
        )

        subscription.last_payment_error = error
        subscription.last_payment_failed_at = now
        subscription.updated_at = now

        moved = False
        if (
            subscription.status == SubscriptionStatus.active
            and attempt >= self.config.failed_payment_threshold
        ):
            apply_transition(
                repo.db,
                subscription,
                SubscriptionStatus.past_due,
                f"{attempt} failed payment attempts",
                now=now,
            )
            moved = True
        repo.db.flush()

        if failure_kind == FailureKind.gateway_unavailable:
            logger.warning(
                "gateway unavailable for subscription %s attempt=%d: %s", subscription.id, attempt, error
            )
        else:
            logger.info("payment declined for subscription %s attempt=%d: %s", subscription.id, attempt, error)

        return ChargeOutcome(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=charge.status,
            amount=record.amount,
            currency=record.currency,
            attempt_number=attempt,
            billing_record_id=record.id,
            error=error,
            moved_to_past_due=moved,
        )

    def _notify(self, notifier: Notifier, outcome: ChargeOutcome) -> None:
        # Users hear about declines, not about our gateway outages.
        if outcome.status == ChargeStatus.succeeded:
            notifier.send_payment_receipt(
                outcome.user_id,
                outcome.amount,
                currency=outcome.currency,
                subscription_id=outcome.subscription_id,
                billing_record_id=outcome.billing_record_id,
            )
        elif outcome.status == ChargeStatus.declined:
            notifier.send_payment_failure_alert(
                outcome.user_id,
                outcome.attempt_number,
                subscription_id=outcome.subscription_id,
                billing_record_id=outcome.billing_record_id,
                reason=outcome.error,
            )

        if outcome.moved_to_past_due:
            notifier.send_past_due_notice(outcome.user_id, subscription_id=outcome.subscription_id)


def refund_billing_record(
    db: Session,
    gateway: PaymentGateway,
    record_id: uuid.UUID,
    amount: Decimal | None = None,
    now: datetime | None = None,
) -> BillingRecord:
    """Refund all or part of a succeeded charge and attach the refund to its record."""
    repo = SubscriptionRepository(db)
    record = repo.get_billing_record(record_id, for_update=True)
    if record is None:
        raise LookupError(f"billing record {record_id} not found")
    if record.status != BillingRecordStatus.succeeded or not record.gateway_transaction_id:
        raise RefundError("only succeeded charges can be refunded")

    already_refunded = record.refunded_amount or Decimal("0")
    remaining = record.amount - already_refunded
    if amount is None:
        amount = remaining
    if amount <= 0:
        raise RefundError("refund amount must be positive")
    if amount > remaining:
        raise RefundError(f"refund amount {amount} exceeds refundable balance {remaining}")

    full_refund = already_refunded == 0 and amount == record.amount
    result = gateway.refund(record.gateway_transaction_id, None if full_refund else amount)
    if not result.succeeded:
        raise RefundError(f"gateway refused refund: {result.error}")

    record.refunded_amount = already_refunded + amount
    record.refund_transaction_id = result.refund_id
    record.refunded_at = now or utcnow()
    db.commit()

    logger.info(
        "refunded %s %s on billing record %s (refund=%s)",
        amount,
        record.currency,
        record.id,
        result.refund_id,
    )
    return record


@dataclass
class BillingCycleReport:
    start_date: datetime
    end_date: datetime
    total_subscriptions_processed: int
    successful_payments: int
    failed_payments: int
    total_revenue: Decimal
    past_due_subscriptions: int
    subscriptions_with_failed_attempts: int

    @property
    def success_rate(self) -> float:
        attempts = self.successful_payments + self.failed_payments
        return round(self.successful_payments / attempts * 100, 2) if attempts else 0.0

    @property
    def failure_rate(self) -> float:
        attempts = self.successful_payments + self.failed_payments
        return round(self.failed_payments / attempts * 100, 2) if attempts else 0.0


def billing_cycle_report(
    db: Session,
    start: datetime | None = None,
    end: datetime | None = None,
) -> BillingCycleReport:
    end = end or utcnow()
    start = start or end - timedelta(days=30)
    repo = SubscriptionRepository(db)

    records = repo.billing_records_between(start, end)
    succeeded = [r for r in records if r.status == BillingRecordStatus.succeeded]
    revenue = sum((r.amount - (r.refunded_amount or Decimal("0")) for r in succeeded), Decimal("0"))

    return BillingCycleReport(
        start_date=start,
        end_date=end,
        total_subscriptions_processed=len({r.subscription_id for r in records}),
        successful_payments=len(succeeded),
        failed_payments=len(records) - len(succeeded),
        total_revenue=revenue,
        past_due_subscriptions=repo.count_by_status(SubscriptionStatus.past_due),
        subscriptions_with_failed_attempts=repo.count_with_failed_attempts(),
    )
