"""SQLAlchemy model caching metadata about remote federation actors."""

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_courier.db.session import Base
from chorus_courier.db.time import utcnow


class RemoteActor(Base):
    """Last known profile document of a remote actor, keyed by its URI."""

    __tablename__ = "ap_actors"
    __table_args__ = (Index("idx_ap_actors_domain", "domain"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True)  # actor URI
    handle: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    inbox_url: Mapped[str] = mapped_column(Text, nullable=False)
    outbox_url: Mapped[str] = mapped_column(Text, nullable=False)
    followers_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    following_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    shared_inbox_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    public_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    public_key_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
