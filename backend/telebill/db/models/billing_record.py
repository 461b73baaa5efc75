"""BillingRecord database model."""
import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Integer, Numeric, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telebill.db.base import Base, UTCDateTime, utcnow


class BillingRecordStatus(str, enum.Enum):
    """Outcome of one charge attempt."""

    succeeded = "succeeded"
    failed = "failed"


class FailureKind(str, enum.Enum):
    """Why a charge attempt failed."""

    declined = "declined"
    gateway_unavailable = "gateway_unavailable"


class BillingRecord(Base):
    """One row per charge attempt. Only the refund columns change after insert."""

    __tablename__ = "billing_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[BillingRecordStatus] = mapped_column(
        Enum(BillingRecordStatus, name="billing_record_status"),
        nullable=False,
        index=True,
    )
    failure_kind: Mapped[FailureKind | None] = mapped_column(
        Enum(FailureKind, name="billing_failure_kind"),
        nullable=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    gateway_transaction_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refund_transaction_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now(), index=True
    )

    # Relationships
    subscription: Mapped["Subscription"] = relationship("Subscription", back_populates="billing_records")

    def __repr__(self) -> str:
        return (
            f"<BillingRecord(id={self.id}, subscription_id={self.subscription_id}, "
            f"amount={self.amount}, status={self.status}, failure_kind={self.failure_kind})>"
        )
