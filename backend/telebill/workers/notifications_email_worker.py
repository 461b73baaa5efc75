"""Delivers queued billing notifications from the outbox table by email.

Rows move pending -> sending -> sent. A failed send goes back to pending with
a growing delay; after MAX_ATTEMPTS the row is parked as dead and, when
ADMIN_EMAIL is configured, an admin alert is queued in its place.
"""
import argparse
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from telebill.core.config import settings
from telebill.core.logging import get_logger, setup_logging
from telebill.db.base import utcnow
from telebill.db.models.notification_outbox import NotificationOutbox
from telebill.notifications.email_sender import EmailSendError, send_email

logger = get_logger(__name__)

RETRY_DELAYS = (
    timedelta(seconds=30),
    timedelta(minutes=2),
    timedelta(minutes=10),
    timedelta(minutes=30),
    timedelta(hours=2),
)
MAX_ATTEMPTS = 8
# A row stuck in "sending" this long belonged to a worker that died mid-send.
SENDING_LEASE = timedelta(minutes=5)
ADMIN_ALERT_KIND = "admin_alert"
ERROR_LIMIT = 2000


def retry_delay(attempts: int) -> timedelta:
    idx = max(attempts, 1) - 1
    return RETRY_DELAYS[min(idx, len(RETRY_DELAYS) - 1)]


def enqueue_admin_alert(db: Session, dead: NotificationOutbox) -> None:
    if dead.kind == ADMIN_ALERT_KIND or not settings.ADMIN_EMAIL:
        return

    details = [
        ("notification", dead.id),
        ("kind", dead.kind),
        ("subscription", dead.subscription_id),
        ("billing record", dead.billing_record_id),
        ("recipient", dead.to_email),
        ("attempts", dead.attempts),
        ("last error", dead.last_error),
    ]
    try:
        db.add(
            NotificationOutbox(
                channel="email",
                kind=ADMIN_ALERT_KIND,
                to_email=settings.ADMIN_EMAIL,
                subject=f"Billing notification undeliverable: {dead.kind}",
                body_text="\n".join(f"{label}: {value}" for label, value in details),
                subscription_id=dead.subscription_id,
                billing_record_id=dead.billing_record_id,
            )
        )
        db.flush()
    except Exception:
        logger.exception("could not queue admin alert for notification %s", dead.id)


def claim_batch(db: Session, batch_size: int | None = None) -> List[NotificationOutbox]:
    """Lock up to batch_size due rows and flip them to sending."""
    now = utcnow()
    due = and_(
        NotificationOutbox.channel == "email",
        NotificationOutbox.next_attempt_at <= now,
        or_(
            NotificationOutbox.status == "pending",
            and_(
                NotificationOutbox.status == "sending",
                NotificationOutbox.updated_at < now - SENDING_LEASE,
            ),
        ),
    )
    rows = (
        db.execute(
            select(NotificationOutbox)
            .where(due)
            .order_by(NotificationOutbox.created_at)
            .limit(batch_size or settings.NOTIFICATIONS_BATCH_SIZE)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )

    for row in rows:
        row.status = "sending"
        row.attempts = (row.attempts or 0) + 1
        row.updated_at = now
    db.commit()
    return list(rows)


def _finish(row: NotificationOutbox, status: str, when: datetime, error: str | None = None) -> None:
    row.status = status
    row.last_error = error[:ERROR_LIMIT] if error else None
    row.next_attempt_at = None
    row.updated_at = when


def mark_sent(db: Session, row: NotificationOutbox) -> None:
    now = utcnow()
    _finish(row, "sent", now)
    row.sent_at = now
    db.flush()


def mark_dead(db: Session, row: NotificationOutbox, reason: str) -> None:
    _finish(row, "dead", utcnow(), reason)
    db.flush()
    enqueue_admin_alert(db, row)


def mark_retry(db: Session, row: NotificationOutbox, err: Exception) -> None:
    attempts = row.attempts or 0
    if attempts >= MAX_ATTEMPTS:
        mark_dead(db, row, str(err))
        return

    now = utcnow()
    row.status = "pending"
    row.last_error = str(err)[:ERROR_LIMIT]
    row.next_attempt_at = now + retry_delay(attempts)
    row.updated_at = now
    db.flush()


def deliver(row: NotificationOutbox) -> None:
    """Send one row, or only log it while email delivery is switched off."""
    recipient = (row.to_email or "").strip()
    subject = (row.subject or "").strip()

    if not settings.ENABLE_EMAIL_NOTIFICATIONS:
        logger.info("email disabled, not sending %s %s to %s: %s", row.kind, row.id, recipient, subject)
        return

    send_email(to_email=recipient, subject=subject, body=row.body_text or "", kind=row.kind)


def drain_once(db: Session) -> int:
    """Claim and deliver one batch. Returns the number of rows claimed."""
    rows = claim_batch(db)
    if rows:
        logger.info("claimed %d outbox rows", len(rows))

    for row in rows:
        row_id, kind = row.id, row.kind
        try:
            deliver(row)
            mark_sent(db, row)
        except EmailSendError as exc:
            db.rollback()
            logger.warning("sending %s %s failed: %s", kind, row_id, exc)
            mark_retry(db, row, exc)
        except Exception as exc:
            db.rollback()
            logger.exception("unexpected error delivering %s %s", kind, row_id)
            mark_retry(db, row, exc)
        db.commit()

    return len(rows)


def main(
    once: bool = False,
    stop_event: threading.Event | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> None:
    if session_factory is None:
        from telebill.db.session import SessionLocal

        session_factory = SessionLocal
    stop_event = stop_event or threading.Event()
    logger.info("email outbox worker started (once=%s)", once)

    while not stop_event.is_set():
        try:
            with session_factory() as db:
                claimed = drain_once(db)
        except Exception:
            logger.exception("email outbox drain failed")
            time.sleep(2)
            continue

        if once:
            break
        if not claimed:
            stop_event.wait(timeout=settings.NOTIFICATIONS_POLL_SECONDS)

    logger.info("email outbox worker stopped")


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)

    parser = argparse.ArgumentParser(description="Deliver queued billing emails.")
    parser.add_argument("--once", action="store_true", help="drain a single batch and exit")
    main(once=parser.parse_args().once)
