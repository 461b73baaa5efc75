"""Pydantic schemas for subscription admin actions."""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from telebill.db.models.subscription import SubscriptionStatus


class SubscriptionAction(BaseModel):
    """Body for pause, resume and cancel."""

    reason: Optional[str] = Field(default=None, max_length=500)


class SubscriptionOut(BaseModel):
    id: UUID
    user_id: UUID
    plan_id: str
    status: SubscriptionStatus
    current_price: Decimal
    currency: str
    next_billing_date: Optional[datetime] = None
    last_billing_date: Optional[datetime] = None
    is_trial: bool
    trial_end_date: Optional[datetime] = None
    failed_payment_attempts: int
    auto_renew: bool
    paused_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    expired_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class StatusHistoryOut(BaseModel):
    id: UUID
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    reason: str
    changed_by: str
    changed_at: datetime

    model_config = {"from_attributes": True}
