"""Admin endpoints: manual passes, reporting and subscription actions."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from telebill.api.deps import get_gateway, verify_admin
from telebill.core.config import SchedulerConfig, settings
from telebill.core.logging import get_logger
from telebill.db.session import get_db
from telebill.notifications.notifier import OutboxNotifier
from telebill.schemas.billing import (
    BillingPassOut,
    BillingRecordOut,
    BillingReportOut,
    LifecyclePassOut,
    RefundRequest,
)
from telebill.schemas.subscriptions import StatusHistoryOut, SubscriptionAction, SubscriptionOut
from telebill.services import lifecycle
from telebill.services.billing import BillingPass, RefundError, billing_cycle_report, refund_billing_record
from telebill.services.lifecycle import LifecyclePass
from telebill.services.payment_gateway import PaymentGateway
from telebill.services.state_machine import InvalidTransitionError

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(verify_admin)])


def _scheduler_config() -> SchedulerConfig:
    return SchedulerConfig.from_settings(settings)


@router.post("/billing/run", response_model=BillingPassOut)
def run_billing_pass(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    logger.info("manual billing pass requested")
    return BillingPass(gateway, _scheduler_config()).run(db, OutboxNotifier(db))


@router.post("/lifecycle/run", response_model=LifecyclePassOut)
def run_lifecycle_pass(db: Session = Depends(get_db)):
    logger.info("manual lifecycle pass requested")
    return LifecyclePass(_scheduler_config()).run(db, OutboxNotifier(db))


@router.get("/billing/report", response_model=BillingReportOut)
def get_billing_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    if (start and start.tzinfo is None) or (end and end.tzinfo is None):
        raise HTTPException(status_code=400, detail="start and end must include a timezone offset")
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must be before end")
    return billing_cycle_report(db, start=start, end=end)


@router.get("/subscriptions/{subscription_id}/history", response_model=list[StatusHistoryOut])
def get_status_history(subscription_id: UUID, db: Session = Depends(get_db)):
    try:
        return lifecycle.status_history(db, subscription_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionOut)
def pause_subscription(
    subscription_id: UUID,
    payload: Optional[SubscriptionAction] = None,
    db: Session = Depends(get_db),
):
    try:
        return lifecycle.pause_subscription(db, subscription_id, reason=payload.reason if payload else None)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionOut)
def resume_subscription(
    subscription_id: UUID,
    payload: Optional[SubscriptionAction] = None,
    db: Session = Depends(get_db),
):
    try:
        return lifecycle.resume_subscription(db, subscription_id, reason=payload.reason if payload else None)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel_subscription(
    subscription_id: UUID,
    payload: Optional[SubscriptionAction] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        return lifecycle.cancel_subscription(
            db, subscription_id, reason=payload.reason if payload else None, gateway=gateway
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/billing-records/{record_id}/refund", response_model=BillingRecordOut)
def refund_billing_record_route(
    record_id: UUID,
    payload: Optional[RefundRequest] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        return refund_billing_record(db, gateway, record_id, amount=payload.amount if payload else None)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RefundError as e:
        raise HTTPException(status_code=400, detail=str(e))
