"""Pydantic schemas for billing runs, reports and refunds."""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from telebill.db.models.billing_record import BillingRecordStatus, FailureKind


class BillingPassOut(BaseModel):
    """Outcome counts of one Billing Pass."""

    started_at: datetime
    candidates: int
    succeeded: int
    failed: int
    declined: int
    unavailable: int
    moved_to_past_due: int
    skipped: int
    errors: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class LifecyclePassOut(BaseModel):
    """Outcome counts of one Lifecycle Pass."""

    started_at: datetime
    expired: int
    trial_expired: int
    suspended: int = 0
    skipped: int
    errors: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class BillingReportOut(BaseModel):
    start_date: datetime
    end_date: datetime
    total_subscriptions_processed: int
    successful_payments: int
    failed_payments: int
    success_rate: float
    failure_rate: float
    total_revenue: Decimal
    past_due_subscriptions: int
    subscriptions_with_failed_attempts: int

    model_config = {"from_attributes": True}


class RefundRequest(BaseModel):
    """Schema for refunding a charge. Omit ``amount`` for a full refund."""

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)


class BillingRecordOut(BaseModel):
    id: UUID
    subscription_id: UUID
    user_id: UUID
    amount: Decimal
    currency: str
    status: BillingRecordStatus
    failure_kind: Optional[FailureKind] = None
    attempt_number: int
    gateway_transaction_id: Optional[str] = None
    error_message: Optional[str] = None
    due_date: Optional[datetime] = None
    refunded_amount: Optional[Decimal] = None
    refund_transaction_id: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
