"""Periodic processing of received activities.

Each claimed row is parsed, dispatched to the handler registered for its
activity type and resolved to ``processed`` or ``failed``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from chorus_courier.db.time import Clock, utcnow
from chorus_courier.models.inbox import INBOX_FAILED, INBOX_PROCESSED
from chorus_courier.services.follows import FollowService, actor_of
from chorus_courier.services.inbox_queue import ClaimedInboxActivity, InboxQueue
from chorus_courier.services.policy import FederationPolicy

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
INVALID_JSON_ERROR = "invalid activity json"

ActivityHandler = Callable[[str, Mapping[str, Any]], Awaitable[None]]


@dataclass
class InboxTickResult:
    """Counters describing one inbox tick."""

    claimed: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0


def clamp_batch_size(batch_size: int) -> int:
    return min(max(batch_size, 1), MAX_BATCH_SIZE)


class InboxWorker:
    """Dispatches claimed inbox activities to per-type handlers.

    Follow, Accept, Reject and Undo are handled by the follow service. Other
    types can be added with :meth:`register`; activities of unregistered types
    are marked processed without side effects.
    """

    def __init__(
        self,
        session: Session,
        follows: FollowService,
        *,
        policy: FederationPolicy | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.queue = InboxQueue(session, clock=clock)
        self.policy = policy or FederationPolicy()
        self.handlers: dict[str, ActivityHandler] = {
            "Follow": follows.handle_follow,
            "Accept": follows.handle_accept,
            "Reject": follows.handle_reject,
            "Undo": follows.handle_undo,
        }

    def register(self, activity_type: str, handler: ActivityHandler) -> None:
        self.handlers[activity_type] = handler

    async def run_tick(self, batch_size: int) -> InboxTickResult:
        result = InboxTickResult()
        claimed = self.queue.claim_batch(clamp_batch_size(batch_size))
        result.claimed = len(claimed)
        if not claimed:
            logger.debug("No pending inbox activities")
            return result

        logger.info("Processing %d inbox activities", len(claimed))
        for item in claimed:
            status = await self._process(item)
            if status == INBOX_FAILED:
                result.failed += 1
            elif status is None:
                result.skipped += 1
            else:
                result.processed += 1

        logger.info(
            "Inbox tick finished: %d processed, %d skipped, %d failed",
            result.processed,
            result.skipped,
            result.failed,
        )
        return result

    async def _process(self, item: ClaimedInboxActivity) -> str | None:
        """Handle one row; returns the reported status, or None when skipped."""
        try:
            activity = json.loads(item.activity_json)
        except ValueError:
            logger.error("Failed to parse inbox activity %s", item.id)
            self.queue.report_outcome(item.id, INBOX_FAILED, INVALID_JSON_ERROR)
            return INBOX_FAILED
        if not isinstance(activity, Mapping):
            self.queue.report_outcome(item.id, INBOX_FAILED, INVALID_JSON_ERROR)
            return INBOX_FAILED

        activity_type = activity.get("type")
        handler = self.handlers.get(activity_type) if isinstance(activity_type, str) else None
        if handler is None:
            logger.warning("Skipping unknown activity type: %s", activity_type)
            self.queue.report_outcome(item.id, INBOX_PROCESSED)
            return None

        actor_uri = actor_of(activity)
        if actor_uri is not None and not self.policy.allows_actor(actor_uri):
            self.queue.report_outcome(item.id, INBOX_PROCESSED)
            return None

        try:
            await handler(item.local_user_id, activity)
        except Exception as exc:
            logger.exception("Failed to process inbox activity %s", item.id)
            self.session.rollback()
            self.queue.report_outcome(item.id, INBOX_FAILED, str(exc) or exc.__class__.__name__)
            return INBOX_FAILED

        self.queue.report_outcome(item.id, INBOX_PROCESSED)
        logger.info("Processed activity %s (%s)", item.id, activity_type)
        return INBOX_PROCESSED


async def run_inbox_tick(
    session: Session,
    follows: FollowService,
    *,
    batch_size: int = 10,
    policy: FederationPolicy | None = None,
    clock: Clock = utcnow,
) -> InboxTickResult:
    """Run one inbox tick; see :class:`InboxWorker`."""
    worker = InboxWorker(session, follows, policy=policy, clock=clock)
    return await worker.run_tick(batch_size)
