"""SQLAlchemy model for activities received from remote instances."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_courier.db.session import Base
from chorus_courier.db.time import utcnow

INBOX_PENDING = "pending"
INBOX_PROCESSING = "processing"
INBOX_PROCESSED = "processed"
INBOX_FAILED = "failed"


class InboxActivity(Base):
    """Received remote activity awaiting or finished side-effect processing."""

    __tablename__ = "ap_inbox_activities"
    __table_args__ = (
        Index("idx_ap_inbox_user", "local_user_id"),
        Index("idx_ap_inbox_status", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    local_user_id: Mapped[str] = mapped_column(Text, nullable=False)
    remote_actor_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Dedup boundary for replayed or duplicated federation deliveries.
    activity_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=INBOX_PENDING)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
