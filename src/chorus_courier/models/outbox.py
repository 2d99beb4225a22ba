"""SQLAlchemy model for locally-produced federation activities."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_courier.db.session import Base
from chorus_courier.db.time import utcnow


class OutboxActivity(Base):
    """Durable record of an activity authored on this instance."""

    __tablename__ = "ap_outbox_activities"
    __table_args__ = (
        Index("idx_ap_outbox_user", "local_user_id"),
        Index("idx_ap_outbox_created", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    activity_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    local_user_id: Mapped[str] = mapped_column(Text, nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. 'Create'
    activity_json: Mapped[str] = mapped_column(Text, nullable=False)
    object_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    object_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
