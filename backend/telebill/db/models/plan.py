"""Plan database model."""
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Enum, Integer, Numeric, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telebill.db.base import Base, UTCDateTime, utcnow


class BillingCycle(str, enum.Enum):
    """Length of one billing period."""

    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"


class Plan(Base):
    """Subscription plan pricing and cadence."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(Text, primary_key=True)  # e.g. "primary-care-monthly"
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="usd", server_default=text("'usd'"))
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle, name="billing_cycle"),
        nullable=False,
        default=BillingCycle.monthly,
    )
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    stripe_product_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="plan",
    )
