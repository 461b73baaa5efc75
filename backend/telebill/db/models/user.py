"""User database model."""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from telebill.db.base import Base, UTCDateTime, utcnow


class User(Base):
    """Patient account; only the fields billing needs to address notifications."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
