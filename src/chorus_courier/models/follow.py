# src/chorus_courier/models/follow.py
"""Models tracking follow relationships between local users and remote actors."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chorus_courier.db.session import Base
from chorus_courier.db.time import utcnow

FOLLOW_PENDING = "pending"
FOLLOW_ACCEPTED = "accepted"


class FollowerRecord(Base):
    """A remote actor following a local user."""

    __tablename__ = "ap_followers"
    __table_args__ = (
        UniqueConstraint("local_user_id", "remote_actor_id", name="uq_ap_followers_pair"),
        Index("idx_ap_followers_remote_actor", "remote_actor_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    local_user_id: Mapped[str] = mapped_column(Text, nullable=False)
    remote_actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    activity_id: Mapped[str] = mapped_column(Text, nullable=False)
    # 'pending' until approved; a rejection deletes the row.
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FOLLOW_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class FollowRecord(Base):
    """A local user following a remote actor; accepted by the remote side."""

    __tablename__ = "ap_follows"
    __table_args__ = (
        UniqueConstraint("local_user_id", "remote_actor_id", name="uq_ap_follows_pair"),
        Index("idx_ap_follows_remote_actor", "remote_actor_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    local_user_id: Mapped[str] = mapped_column(Text, nullable=False)
    remote_actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    activity_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FOLLOW_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
