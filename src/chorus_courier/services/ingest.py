"""Admission of authenticated inbound activities into the inbox queue."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from chorus_courier.db.time import Clock, utcnow
from chorus_courier.services.delivery import FederationError, PolicyDeniedError
from chorus_courier.services.follows import actor_of
from chorus_courier.services.inbox_queue import InboundActivity, InboxQueue
from chorus_courier.services.policy import FederationPolicy, extract_hostname
from chorus_courier.services.rate_limit import (
    INBOX_PER_ACTOR,
    INBOX_PER_INSTANCE,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
)

logger = logging.getLogger(__name__)

INGEST_QUEUED = "queued"
INGEST_DUPLICATE = "duplicate"
INGEST_RATE_LIMITED = "rate_limited"


class ActivityParseError(FederationError):
    """Raised when an inbound payload is not a usable activity document."""


class FederationDisabledError(FederationError):
    """Raised when inbound federation is switched off for this instance."""


@dataclass(frozen=True)
class IngestResult:
    """Outcome of admitting one inbound activity."""

    status: str
    activity_id: str
    rate_limit: RateLimitResult | None = None

    @property
    def accepted(self) -> bool:
        return self.status != INGEST_RATE_LIMITED


def parse_activity(payload: Mapping[str, Any] | str | bytes) -> Mapping[str, Any]:
    """Return ``payload`` as an activity mapping with string ``id`` and ``type``.

    Raises:
        ActivityParseError: If the payload is not JSON or lacks ``id`` or ``type``.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise ActivityParseError("invalid activity json") from exc
    if not isinstance(payload, Mapping):
        raise ActivityParseError("activity must be a JSON object")
    for field_name in ("id", "type"):
        value = payload.get(field_name)
        if not isinstance(value, str) or not value:
            raise ActivityParseError(f"activity is missing '{field_name}'")
    return payload


class InboxIngestor:
    """Applies federation policy and inbox rate limits, then enqueues."""

    def __init__(
        self,
        session: Session,
        *,
        policy: FederationPolicy | None = None,
        instance_limit: RateLimitConfig = INBOX_PER_INSTANCE,
        actor_limit: RateLimitConfig = INBOX_PER_ACTOR,
        rate_limit_enabled: bool = True,
        enabled: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self.enabled = enabled
        self.queue = InboxQueue(session, clock=clock)
        self.policy = policy or FederationPolicy()
        self.instance_limiter = RateLimiter(
            session, instance_limit, enabled=rate_limit_enabled, clock=clock
        )
        self.actor_limiter = RateLimiter(
            session, actor_limit, enabled=rate_limit_enabled, clock=clock
        )

    def ingest(
        self, payload: Mapping[str, Any] | str | bytes, local_user_id: str
    ) -> IngestResult:
        """Admit ``payload`` addressed to ``local_user_id``.

        Raises:
            ActivityParseError: For malformed payloads.
            FederationDisabledError: When federation is turned off.
            PolicyDeniedError: When the sending actor's instance is not federated with.
        """
        if not self.enabled:
            raise FederationDisabledError("federation is disabled")
        activity = parse_activity(payload)
        activity_id = activity["id"]
        actor_uri = actor_of(activity)
        if actor_uri is None:
            raise ActivityParseError("activity is missing 'actor'")
        if not self.policy.allows_actor(actor_uri):
            raise PolicyDeniedError(f"federation with {extract_hostname(actor_uri)} is not allowed")

        instance = extract_hostname(actor_uri) or actor_uri
        for limiter, key in ((self.instance_limiter, instance), (self.actor_limiter, actor_uri)):
            decision = limiter.check(key)
            if not decision.allowed:
                return IngestResult(INGEST_RATE_LIMITED, activity_id, decision)

        queued = self.queue.enqueue(
            InboundActivity(
                activity_id=activity_id,
                activity_type=activity["type"],
                payload=activity,
                remote_actor_id=actor_uri,
                local_user_id=local_user_id,
            )
        )
        if queued:
            logger.info("Queued %s %s for %s", activity["type"], activity_id, local_user_id)
        return IngestResult(INGEST_QUEUED if queued else INGEST_DUPLICATE, activity_id, decision)
