import uuid
from sqlalchemy import Column, Integer, String, Text, Uuid, func

from telebill.db.base import Base, UTCDateTime, utcnow


class NotificationOutbox(Base):
    __tablename__ = "notifications_outbox"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)
    sent_at = Column(UTCDateTime, nullable=True)
    status = Column(String(20), nullable=False, default="pending", server_default="pending")
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    next_attempt_at = Column(UTCDateTime, nullable=True, default=utcnow, server_default=func.now())

    last_error = Column(Text, nullable=True)

    kind = Column(String(40), nullable=False)
    subscription_id = Column(Uuid, nullable=False)
    billing_record_id = Column(Uuid, nullable=True)

    channel = Column(String(20), nullable=False, default="email", server_default="email")

    to_email = Column(Text, nullable=False)
    subject = Column(Text, nullable=False)
    body_text = Column(Text, nullable=False)
