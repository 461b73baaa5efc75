"""SubscriptionStatusHistory database model."""
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telebill.db.base import Base, UTCDateTime, utcnow
from telebill.db.models.subscription import SubscriptionStatus


class SubscriptionStatusHistory(Base):
    """Append-only audit trail of status transitions."""

    __tablename__ = "subscription_status_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    from_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status"),
        nullable=False,
    )
    to_status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status"),
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    changed_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")

    changed_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    # Relationships
    subscription: Mapped["Subscription"] = relationship("Subscription", back_populates="status_history")

    def __repr__(self) -> str:
        return (
            f"<SubscriptionStatusHistory(subscription_id={self.subscription_id}, "
            f"{self.from_status} -> {self.to_status}, reason={self.reason!r})>"
        )
