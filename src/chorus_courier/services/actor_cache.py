"""Cache of remote actor metadata (keys and inbox endpoints)."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.orm import Session

from chorus_courier.db.statements import upsert
from chorus_courier.db.time import Clock, as_utc, utcnow
from chorus_courier.models import RemoteActor

if TYPE_CHECKING:
    from chorus_courier.services.collaborators import ActorResolver

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = (
    "handle",
    "display_name",
    "domain",
    "inbox_url",
    "outbox_url",
    "followers_url",
    "following_url",
    "shared_inbox_url",
    "public_key_pem",
    "public_key_id",
    "last_fetched_at",
)


@dataclass(frozen=True)
class ActorProfile:
    """Resolved profile of a remote actor as returned by actor discovery."""

    id: str
    handle: str
    inbox_url: str
    outbox_url: str
    public_key_pem: str
    display_name: str = ""
    domain: str | None = None
    followers_url: str | None = None
    following_url: str | None = None
    shared_inbox_url: str | None = None
    public_key_id: str | None = None


class RemoteActorCache:
    """Plain keyed store of the last resolved actor documents.

    No TTL is enforced on reads: staleness is a decision of the caller, made
    with :meth:`is_stale` or by going through :meth:`get_or_fetch`.
    """

    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self._clock = clock

    def find(self, actor_uri: str) -> RemoteActor | None:
        """Return the cached actor for ``actor_uri`` if present."""
        stmt = (
            select(RemoteActor)
            .where(RemoteActor.id == actor_uri)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(self, profile: ActorProfile, *, fetched_at: datetime | None = None) -> RemoteActor:
        """Store ``profile`` and stamp ``last_fetched_at``."""
        values = asdict(profile)
        values["domain"] = profile.domain or (urlsplit(profile.id).hostname or "").lower()
        values["last_fetched_at"] = fetched_at or self._clock()
        upsert(self.session, RemoteActor, values, ("id",), _UPDATABLE_COLUMNS)
        self.session.commit()
        actor = self.find(profile.id)
        assert actor is not None
        return actor

    def is_stale(self, actor: RemoteActor, max_age: timedelta) -> bool:
        return as_utc(actor.last_fetched_at) < self._clock() - max_age

    def resolve_inbox(self, actor_uri: str, *, prefer_shared: bool = False) -> str | None:
        """Return the delivery inbox of a cached actor without any network access."""
        actor = self.find(actor_uri)
        if actor is None:
            return None
        if prefer_shared and actor.shared_inbox_url:
            return actor.shared_inbox_url
        return actor.inbox_url

    async def get_or_fetch(
        self,
        actor_uri: str,
        resolver: ActorResolver,
        *,
        max_age: timedelta,
    ) -> RemoteActor | None:
        """Return a fresh actor, refreshing through ``resolver`` when needed.

        A failed refresh falls back to the stale cached row when one exists.
        """
        cached = self.find(actor_uri)
        if cached is not None and not self.is_stale(cached, max_age):
            return cached

        profile = await resolver.fetch_actor(actor_uri)
        if profile is None:
            if cached is not None:
                logger.warning("Using stale cache entry for %s after failed refresh", actor_uri)
            return cached
        return self.upsert(profile)
