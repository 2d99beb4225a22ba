# models/rate_limit.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_courier.db.session import Base
from chorus_courier.db.time import utcnow


class RateLimitEntry(Base):
    __tablename__ = "ap_rate_limits"
    __table_args__ = (
        Index("idx_rate_limits_key_created", "key", "created_at"),
        Index("idx_rate_limits_created", "created_at"),
    )
    # One row per admitted event; rows are only ever inserted or deleted.
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)  # namespace:identifier
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
