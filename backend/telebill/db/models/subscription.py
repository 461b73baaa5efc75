"""Subscription database model."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, Numeric, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telebill.db.base import Base, UTCDateTime, utcnow


class SubscriptionStatus(str, enum.Enum):
    """Every state a subscription can be in."""

    pending = "pending"
    trial_active = "trial_active"
    active = "active"
    past_due = "past_due"
    paused = "paused"
    cancelled = "cancelled"
    expired = "expired"


class Subscription(Base):
    """Recurring telehealth plan subscription billed by the scheduler."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("plans.id"),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.pending,
        index=True,
    )

    current_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="usd", server_default=text("'usd'"))

    billing_cycle_anchor: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    last_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    trial_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    payment_method_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_customer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_subscription_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    failed_payment_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_payment_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))

    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    # Relationships
    plan: Mapped["Plan"] = relationship("Plan", back_populates="subscriptions")
    user: Mapped["User"] = relationship("User")
    billing_records: Mapped[list["BillingRecord"]] = relationship(
        "BillingRecord", back_populates="subscription", order_by="BillingRecord.created_at"
    )
    status_history: Mapped[list["SubscriptionStatusHistory"]] = relationship(
        "SubscriptionStatusHistory",
        back_populates="subscription",
        order_by="SubscriptionStatusHistory.changed_at",
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status}, "
            f"next_billing_date={self.next_billing_date}, "
            f"failed_payment_attempts={self.failed_payment_attempts})>"
        )
