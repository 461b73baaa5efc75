"""User-facing billing notifications.

The billing core only talks to ``Notifier``. ``OutboxNotifier`` writes rows to
``notifications_outbox``; the email worker delivers them. Enqueueing never
raises: a notification problem must not undo a recorded charge.
"""
import abc
import uuid
from decimal import Decimal

from sqlalchemy.orm import Session

from telebill.core.logging import get_logger
from telebill.db.models.notification_outbox import NotificationOutbox
from telebill.db.models.user import User

logger = get_logger(__name__)


class Notifier(abc.ABC):
    @abc.abstractmethod
    def send_payment_receipt(
        self,
        user_id: uuid.UUID,
        amount: Decimal,
        *,
        currency: str,
        subscription_id: uuid.UUID,
        billing_record_id: uuid.UUID | None = None,
    ) -> None:
        ...

    @abc.abstractmethod
    def send_payment_failure_alert(
        self,
        user_id: uuid.UUID,
        attempt_number: int,
        *,
        subscription_id: uuid.UUID,
        billing_record_id: uuid.UUID | None = None,
        reason: str | None = None,
    ) -> None:
        ...

    @abc.abstractmethod
    def send_past_due_notice(self, user_id: uuid.UUID, *, subscription_id: uuid.UUID) -> None:
        ...

    @abc.abstractmethod
    def send_expiry_notice(self, user_id: uuid.UUID, *, subscription_id: uuid.UUID, reason: str) -> None:
        ...

    @abc.abstractmethod
    def send_suspension_notice(self, user_id: uuid.UUID, *, subscription_id: uuid.UUID) -> None:
        ...


class OutboxNotifier(Notifier):
    """Notifier that enqueues email rows in its own transaction."""

    def __init__(self, db: Session):
        self.db = db

    def send_payment_receipt(self, user_id, amount, *, currency, subscription_id, billing_record_id=None):
        self._enqueue(
            kind="payment_receipt",
            user_id=user_id,
            subscription_id=subscription_id,
            billing_record_id=billing_record_id,
            subject="Payment received",
            body=(
                f"We received your payment of {amount} {currency.upper()}.\n\n"
                f"Subscription: {subscription_id}\n"
                "Thank you for staying with us."
            ),
        )

    def send_payment_failure_alert(
        self, user_id, attempt_number, *, subscription_id, billing_record_id=None, reason=None
    ):
        body = (
            "We were unable to process your subscription payment "
            f"(attempt {attempt_number}).\n\n"
            f"Subscription: {subscription_id}\n"
        )
        if reason:
            body += f"Reason: {reason}\n"
        body += "\nPlease update your payment method to keep your plan active."
        self._enqueue(
            kind="payment_failed",
            user_id=user_id,
            subscription_id=subscription_id,
            billing_record_id=billing_record_id,
            subject="Payment failed",
            body=body,
        )

    def send_past_due_notice(self, user_id, *, subscription_id):
        self._enqueue(
            kind="subscription_past_due",
            user_id=user_id,
            subscription_id=subscription_id,
            subject="Your subscription is past due",
            body=(
                "Several payment attempts for your subscription have failed and it is now past due.\n\n"
                f"Subscription: {subscription_id}\n"
                "We will keep retrying. Update your payment method to restore your plan."
            ),
        )

    def send_expiry_notice(self, user_id, *, subscription_id, reason):
        self._enqueue(
            kind="subscription_expired",
            user_id=user_id,
            subscription_id=subscription_id,
            subject="Your subscription has expired",
            body=f"Your subscription {subscription_id} has expired ({reason}).",
        )

    def send_suspension_notice(self, user_id, *, subscription_id):
        self._enqueue(
            kind="subscription_suspended",
            user_id=user_id,
            subscription_id=subscription_id,
            subject="Your subscription has been suspended",
            body=(
                "We could not collect payment for your subscription and it has now been suspended.\n\n"
                f"Subscription: {subscription_id}\n"
                "Contact support once your payment method is updated to resume your plan."
            ),
        )

    def _enqueue(
        self,
        *,
        kind: str,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        subject: str,
        body: str,
        billing_record_id: uuid.UUID | None = None,
    ) -> NotificationOutbox | None:
        try:
            user = self.db.get(User, user_id)
            if user is None or not (user.email or "").strip():
                logger.warning(
                    "no email on file; dropping %s notification for subscription %s", kind, subscription_id
                )
                return None

            row = NotificationOutbox(
                status="pending",
                channel="email",
                kind=kind,
                subscription_id=subscription_id,
                billing_record_id=billing_record_id,
                to_email=user.email.strip(),
                subject=subject,
                body_text=body,
            )
            self.db.add(row)
            self.db.commit()
            return row

        except Exception as e:
            self.db.rollback()
            logger.error(f"[NOTIFICATION ENQUEUE FAILED] kind={kind} subscription={subscription_id}: {e}")
            return None
