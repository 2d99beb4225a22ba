"""Follower/following relationships and the Follow handshake.

Relationships move ``pending -> accepted``. There is no rejected state: a
rejection or an undo deletes the row.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from chorus_courier.db.statements import upsert
from chorus_courier.db.time import Clock, utcnow
from chorus_courier.models import FollowerRecord, FollowRecord
from chorus_courier.models.follow import FOLLOW_ACCEPTED, FOLLOW_PENDING
from chorus_courier.services.actor_cache import RemoteActorCache
from chorus_courier.services.collaborators import ActivityFactory, ActorResolver
from chorus_courier.services.outbox import OutboundActivity, OutboxActivityStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100

RecordT = TypeVar("RecordT", FollowerRecord, FollowRecord)


class _RelationshipStore(Generic[RecordT]):
    """Shared persistence for both directions of a follow relationship."""

    model: type[RecordT]

    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self._clock = clock

    def find(self, local_user_id: str, remote_actor_id: str) -> RecordT | None:
        model = self.model
        stmt = (
            select(model)
            .where(model.local_user_id == local_user_id, model.remote_actor_id == remote_actor_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        local_user_id: str,
        remote_actor_id: str,
        activity_id: str,
        *,
        status: str = FOLLOW_PENDING,
    ) -> RecordT:
        """Create or replace the relationship; ``created_at`` of an existing row is kept."""
        now = self._clock()
        values = {
            "id": str(uuid.uuid4()),
            "local_user_id": local_user_id,
            "remote_actor_id": remote_actor_id,
            "activity_id": activity_id,
            "status": status,
            "created_at": now,
            "accepted_at": now if status == FOLLOW_ACCEPTED else None,
        }
        upsert(
            self.session,
            self.model,
            values,
            ("local_user_id", "remote_actor_id"),
            ("activity_id", "status", "accepted_at"),
        )
        self.session.commit()
        record = self.find(local_user_id, remote_actor_id)
        assert record is not None
        return record

    def mark_accepted(self, local_user_id: str, remote_actor_id: str) -> bool:
        """Flip a pending relationship to accepted; no-op for any other state."""
        model = self.model
        result = self.session.execute(
            update(model)
            .where(
                model.local_user_id == local_user_id,
                model.remote_actor_id == remote_actor_id,
                model.status == FOLLOW_PENDING,
            )
            .values(status=FOLLOW_ACCEPTED, accepted_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return bool(result.rowcount)

    def delete(self, local_user_id: str, remote_actor_id: str) -> bool:
        model = self.model
        result = self.session.execute(
            delete(model)
            .where(model.local_user_id == local_user_id, model.remote_actor_id == remote_actor_id)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return bool(result.rowcount)

    def list(
        self,
        local_user_id: str,
        status: str | None = FOLLOW_ACCEPTED,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[RecordT]:
        """Page through relationships, newest first.

        Accepted relationships are ordered by acceptance time, everything else
        by creation time.
        """
        model = self.model
        stmt = select(model).where(model.local_user_id == local_user_id)
        if status:
            stmt = stmt.where(model.status == status)
        if status == FOLLOW_ACCEPTED:
            stmt = stmt.order_by(model.accepted_at.desc(), model.created_at.desc())
        else:
            stmt = stmt.order_by(model.created_at.desc())
        stmt = stmt.limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars())

    def count(self, local_user_id: str, status: str | None = None) -> int:
        model = self.model
        stmt = select(func.count(model.id)).where(model.local_user_id == local_user_id)
        if status:
            stmt = stmt.where(model.status == status)
        return int(self.session.execute(stmt).scalar_one())


class FollowerStore(_RelationshipStore[FollowerRecord]):
    """Remote actors following local users."""

    model = FollowerRecord


class FollowingStore(_RelationshipStore[FollowRecord]):
    """Local users following remote actors."""

    model = FollowRecord


def _follow_target(activity: Mapping[str, Any]) -> str | None:
    """Return the followed actor of the Follow embedded in an Accept or Reject."""
    follow = activity.get("object")
    if not isinstance(follow, Mapping):
        return None
    target = follow.get("object")
    if isinstance(target, Mapping):
        target = target.get("id")
    return target if isinstance(target, str) else None


def actor_of(activity: Mapping[str, Any]) -> str | None:
    """Return the actor URI of an activity whose ``actor`` is a string or object."""
    actor = activity.get("actor")
    if isinstance(actor, Mapping):
        actor = actor.get("id")
    return actor if isinstance(actor, str) and actor else None


class FollowService:
    """Follow handshake in both directions.

    Inbound ``handle_*`` methods apply received activities. Local operations
    record the relationship and publish the matching activity through the
    outbox so the delivery worker sends it.
    """

    def __init__(
        self,
        session: Session,
        *,
        activities: ActivityFactory,
        resolver: ActorResolver | None = None,
        auto_accept: bool = False,
        actor_max_age: timedelta = timedelta(hours=24),
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.activities = activities
        self.resolver = resolver
        self.auto_accept = auto_accept
        self.actor_max_age = actor_max_age
        self.followers = FollowerStore(session, clock=clock)
        self.following = FollowingStore(session, clock=clock)
        self.actors = RemoteActorCache(session, clock=clock)
        self.outbox = OutboxActivityStore(session, clock=clock)

    async def _inbox_for(self, actor_uri: str) -> str | None:
        if self.resolver is None:
            return self.actors.resolve_inbox(actor_uri)
        actor = await self.actors.get_or_fetch(actor_uri, self.resolver, max_age=self.actor_max_age)
        if actor is None:
            return None
        return actor.inbox_url or actor.shared_inbox_url

    def _publish(self, local_user_id: str, payload: Mapping[str, Any], inbox_url: str) -> None:
        activity = OutboundActivity.from_payload(local_user_id, payload)
        self.outbox.publish(activity, [inbox_url])

    # Local operations

    async def follow(
        self, local_user_id: str, remote_actor_id: str, follow_activity: Mapping[str, Any]
    ) -> FollowRecord:
        """Record a pending follow of ``remote_actor_id`` and publish the Follow."""
        record = self.following.upsert(local_user_id, remote_actor_id, str(follow_activity["id"]))
        inbox_url = await self._inbox_for(remote_actor_id)
        if inbox_url is None:
            logger.warning("No inbox known for %s; Follow recorded but not delivered", remote_actor_id)
            return record
        self._publish(local_user_id, follow_activity, inbox_url)
        return record

    async def unfollow(self, local_user_id: str, remote_actor_id: str) -> bool:
        """Delete the following relationship and publish an Undo of its Follow."""
        record = self.following.find(local_user_id, remote_actor_id)
        if record is None:
            return False
        follow = {"id": record.activity_id, "type": "Follow", "object": remote_actor_id}
        self.following.delete(local_user_id, remote_actor_id)

        inbox_url = await self._inbox_for(remote_actor_id)
        if inbox_url is not None:
            self._publish(local_user_id, self.activities.undo(local_user_id, follow), inbox_url)
        return True

    async def approve_follower(self, local_user_id: str, remote_actor_id: str) -> bool:
        """Accept a pending follower and publish the Accept."""
        record = self.followers.find(local_user_id, remote_actor_id)
        if record is None or not self.followers.mark_accepted(local_user_id, remote_actor_id):
            return False
        await self._reply("accept", local_user_id, remote_actor_id, record.activity_id)
        return True

    async def reject_follower(self, local_user_id: str, remote_actor_id: str) -> bool:
        """Remove a follower or follow request and publish the Reject."""
        record = self.followers.find(local_user_id, remote_actor_id)
        if record is None:
            return False
        self.followers.delete(local_user_id, remote_actor_id)
        await self._reply("reject", local_user_id, remote_actor_id, record.activity_id)
        return True

    async def _reply(
        self, kind: str, local_user_id: str, remote_actor_id: str, follow_activity_id: str
    ) -> None:
        inbox_url = await self._inbox_for(remote_actor_id)
        if inbox_url is None:
            logger.warning("No inbox known for %s; %s not delivered", remote_actor_id, kind)
            return
        follow = {"id": follow_activity_id, "type": "Follow", "actor": remote_actor_id}
        build = self.activities.accept if kind == "accept" else self.activities.reject
        self._publish(local_user_id, build(local_user_id, follow), inbox_url)

    def follower_inboxes(self, local_user_id: str) -> list[str]:
        """Return distinct inboxes of accepted followers, shared inboxes preferred.

        Followers whose actor is not cached are skipped.
        """
        inboxes: dict[str, None] = {}
        offset = 0
        while True:
            page = self.followers.list(local_user_id, FOLLOW_ACCEPTED, DEFAULT_PAGE_SIZE, offset)
            for follower in page:
                inbox_url = self.actors.resolve_inbox(follower.remote_actor_id, prefer_shared=True)
                if inbox_url:
                    inboxes.setdefault(inbox_url, None)
                else:
                    logger.debug("Skipping follower %s without cached inbox", follower.remote_actor_id)
            if len(page) < DEFAULT_PAGE_SIZE:
                break
            offset += DEFAULT_PAGE_SIZE
        return list(inboxes)

    # Inbound handlers

    async def handle_follow(self, local_user_id: str, activity: Mapping[str, Any]) -> None:
        follower_uri = actor_of(activity)
        if follower_uri is None:
            logger.error("Follow activity has invalid actor")
            return

        inbox_url = await self._inbox_for(follower_uri)
        if inbox_url is None:
            logger.warning("Follower %s has no inbox endpoint; ignoring Follow", follower_uri)
            return

        activity_id = activity.get("id")
        status = FOLLOW_ACCEPTED if self.auto_accept else FOLLOW_PENDING
        self.followers.upsert(
            local_user_id,
            follower_uri,
            activity_id if isinstance(activity_id, str) else f"{follower_uri}#follow",
            status=status,
        )
        logger.info("Follow from %s -> %s (%s)", follower_uri, local_user_id, status)

        if status == FOLLOW_ACCEPTED:
            self._publish(local_user_id, self.activities.accept(local_user_id, activity), inbox_url)

    async def handle_accept(self, local_user_id: str, activity: Mapping[str, Any]) -> None:
        target = self._handshake_target(activity, "Accept")
        if target is None:
            return
        if self.following.mark_accepted(local_user_id, target):
            logger.info("Follow of %s by %s accepted", target, local_user_id)
        else:
            logger.info("Accept from %s matched no pending follow", target)

    async def handle_reject(self, local_user_id: str, activity: Mapping[str, Any]) -> None:
        target = self._handshake_target(activity, "Reject")
        if target is None:
            return
        if self.following.delete(local_user_id, target):
            logger.info("Follow of %s by %s rejected", target, local_user_id)

    async def handle_undo(self, local_user_id: str, activity: Mapping[str, Any]) -> None:
        actor_uri = actor_of(activity)
        obj = activity.get("object")
        if actor_uri is None or obj is None:
            logger.error("Undo activity is missing its actor or object")
            return
        object_type = obj.get("type") if isinstance(obj, Mapping) else None
        if object_type != "Follow":
            logger.warning("Unhandled Undo of %s", object_type)
            return
        self.followers.delete(local_user_id, actor_uri)
        logger.info("Undo Follow from %s", actor_uri)

    def _handshake_target(self, activity: Mapping[str, Any], kind: str) -> str | None:
        actor_uri = actor_of(activity)
        if actor_uri is None:
            logger.error("%s activity has invalid actor", kind)
            return None
        if activity.get("object") is None:
            logger.error("%s activity does not contain a Follow object", kind)
            return None
        target = _follow_target(activity)
        if target is None:
            logger.warning("%s activity missing follow target; falling back to actor", kind)
        return target or actor_uri
