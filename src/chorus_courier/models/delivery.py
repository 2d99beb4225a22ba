"""SQLAlchemy model for the outbound delivery queue."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chorus_courier.db.session import Base
from chorus_courier.db.time import utcnow

DELIVERY_PENDING = "pending"
DELIVERY_PROCESSING = "processing"
DELIVERY_DELIVERED = "delivered"
DELIVERY_FAILED = "failed"

DELIVERY_STATUSES = (
    DELIVERY_PENDING,
    DELIVERY_PROCESSING,
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
)


class DeliveryQueueItem(Base):
    """One pending or completed delivery of an activity to a single inbox.

    Rows are never deleted; delivered and failed rows form the delivery audit trail.
    """

    __tablename__ = "ap_delivery_queue"
    __table_args__ = (
        UniqueConstraint(
            "activity_id", "target_inbox_url", name="uq_ap_delivery_activity_target"
        ),
        Index("idx_delivery_queue_status", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    activity_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_inbox_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DELIVERY_PENDING
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
