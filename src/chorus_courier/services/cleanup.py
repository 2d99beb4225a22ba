"""Retention sweeps and queue statistics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from chorus_courier.db.time import Clock, utcnow
from chorus_courier.models import InboxActivity
from chorus_courier.models.inbox import INBOX_PROCESSED
from chorus_courier.services.delivery_queue import DeliveryQueue
from chorus_courier.services.inbox_queue import InboxQueue
from chorus_courier.services.rate_limit import prune_expired

logger = logging.getLogger(__name__)

DEFAULT_INBOX_RETENTION = timedelta(days=7)
DEFAULT_RATE_LIMIT_RETENTION = timedelta(days=1)
DEFAULT_STUCK_GRACE_MINUTES = 15


@dataclass
class CleanupResult:
    """Rows removed by one cleanup tick and rows still stuck in processing."""

    inbox_deleted: int = 0
    rate_limits_deleted: int = 0
    stuck_inbox_ids: list[str] = field(default_factory=list)


def queue_stats(session: Session) -> dict[str, dict[str, int]]:
    """Return per-status row counts for both queues."""
    return {
        "delivery": DeliveryQueue(session).stats(),
        "inbox": InboxQueue(session).stats(),
    }


def run_cleanup_tick(
    session: Session,
    *,
    inbox_retention: timedelta = DEFAULT_INBOX_RETENTION,
    rate_limit_retention: timedelta = DEFAULT_RATE_LIMIT_RETENTION,
    stuck_grace_minutes: int = DEFAULT_STUCK_GRACE_MINUTES,
    clock: Clock = utcnow,
) -> CleanupResult:
    """Delete expired inbox and rate limit rows. Delivery rows are kept."""
    now = clock()
    result = CleanupResult()

    deleted = session.execute(
        delete(InboxActivity)
        .where(
            InboxActivity.status == INBOX_PROCESSED,
            InboxActivity.processed_at < now - inbox_retention,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    result.inbox_deleted = int(deleted.rowcount or 0)
    result.rate_limits_deleted = prune_expired(session, now - rate_limit_retention)

    stuck = InboxQueue(session, clock=clock).find_stuck(stuck_grace_minutes)
    result.stuck_inbox_ids = [row.id for row in stuck]
    if stuck:
        logger.warning(
            "%d inbox activities stuck in processing for over %d minutes",
            len(stuck),
            stuck_grace_minutes,
        )

    logger.info(
        "Cleanup removed %d inbox activities and %d rate limit entries",
        result.inbox_deleted,
        result.rate_limits_deleted,
    )
    return result
