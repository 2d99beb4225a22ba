"""Outbox activity store and outbound fan-out."""
from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from chorus_courier.db.statements import upsert
from chorus_courier.db.time import Clock, utcnow
from chorus_courier.models import OutboxActivity
from chorus_courier.services.delivery_queue import DeliveryQueue

logger = logging.getLogger(__name__)

__all__ = ["OutboundActivity", "OutboxActivityStore"]


@dataclass(frozen=True)
class OutboundActivity:
    """A locally-produced activity ready to be recorded in the outbox."""

    activity_id: str
    local_user_id: str
    activity_type: str
    payload: Mapping[str, Any]
    object_id: str | None = None
    object_type: str | None = None

    @classmethod
    def from_payload(
        cls, local_user_id: str, payload: Mapping[str, Any]
    ) -> OutboundActivity:
        """Build an outbound record from an activity document with ``id`` and ``type``."""
        obj = payload.get("object")
        object_id = obj.get("id") if isinstance(obj, Mapping) else obj
        object_type = obj.get("type") if isinstance(obj, Mapping) else None
        return cls(
            activity_id=str(payload["id"]),
            local_user_id=local_user_id,
            activity_type=str(payload["type"]),
            payload=payload,
            object_id=object_id if isinstance(object_id, str) else None,
            object_type=object_type if isinstance(object_type, str) else None,
        )


class OutboxActivityStore:
    """Durable, append-mostly record of activities authored on this instance."""

    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self._clock = clock

    def get(self, activity_id: str) -> OutboxActivity | None:
        """Return the outbox row for ``activity_id``."""
        stmt = (
            select(OutboxActivity)
            .where(OutboxActivity.activity_id == activity_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(self, activity: OutboundActivity) -> OutboxActivity:
        """Record ``activity``; re-publishing replaces only the payload and object fields.

        ``created_at`` and ``local_user_id`` of an existing row are preserved.
        """
        values = {
            "id": str(uuid.uuid4()),
            "activity_id": activity.activity_id,
            "local_user_id": activity.local_user_id,
            "activity_type": activity.activity_type,
            "activity_json": json.dumps(activity.payload, separators=(",", ":")),
            "object_id": activity.object_id,
            "object_type": activity.object_type,
            "created_at": self._clock(),
        }
        upsert(
            self.session,
            OutboxActivity,
            values,
            ("activity_id",),
            ("activity_json", "object_id", "object_type"),
        )
        self.session.commit()
        stored = self.get(activity.activity_id)
        assert stored is not None
        return stored

    def publish(
        self,
        activity: OutboundActivity,
        inbox_urls: Iterable[str],
        *,
        queue: DeliveryQueue | None = None,
    ) -> int:
        """Record ``activity`` and fan it out to every distinct inbox.

        Safe to call again after a partial failure: neither the outbox row nor
        existing deliveries are duplicated.

        Returns:
            The number of delivery rows newly enqueued.
        """
        self.upsert(activity)
        queue = queue or DeliveryQueue(self.session, clock=self._clock)
        enqueued = queue.enqueue_many(activity.activity_id, inbox_urls)
        logger.info(
            "Published %s %s to %d new inbox(es)",
            activity.activity_type,
            activity.activity_id,
            enqueued,
        )
        return enqueued
