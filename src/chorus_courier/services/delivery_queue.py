"""Durable queue of outbound deliveries, one row per (activity, inbox) pair.

Workers claim rows with a single ``UPDATE ... RETURNING`` statement that flips
``pending`` rows to ``processing``. That statement is the only mutual
exclusion between overlapping worker invocations; a crashed worker's rows are
returned to ``pending`` by :meth:`DeliveryQueue.reset_stale`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from chorus_courier.db.statements import insert_ignore
from chorus_courier.db.time import Clock, utcnow
from chorus_courier.models import DeliveryQueueItem, OutboxActivity
from chorus_courier.models.delivery import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_PROCESSING,
    DELIVERY_STATUSES,
)

logger = logging.getLogger(__name__)

DEFAULT_RECLAIM_GUARD_MINUTES = 5


@dataclass(frozen=True)
class ClaimedDelivery:
    """A claimed queue row joined with its outbox payload."""

    id: str
    activity_id: str
    target_inbox_url: str
    retry_count: int
    created_at: datetime
    activity_json: str | None
    activity_type: str | None
    local_user_id: str | None


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one delivery attempt reported back to the queue.

    ``permanent`` marks a failure that must not be retried; the row moves to
    the terminal ``failed`` state instead of back to ``pending``.
    """

    delivered: bool
    error: str | None = None
    permanent: bool = False

    @classmethod
    def success(cls) -> DeliveryOutcome:
        return cls(delivered=True)

    @classmethod
    def failure(cls, error: str, *, permanent: bool = False) -> DeliveryOutcome:
        return cls(delivered=False, error=error, permanent=permanent)


class DeliveryQueue:
    """Claim-based work queue over ``ap_delivery_queue``."""

    def __init__(
        self,
        session: Session,
        *,
        reclaim_guard_minutes: int = DEFAULT_RECLAIM_GUARD_MINUTES,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.reclaim_guard = timedelta(minutes=reclaim_guard_minutes)
        self._clock = clock

    def _row(self, target_inbox_url: str, activity_id: str, now: datetime) -> dict[str, object]:
        return {
            "id": str(uuid.uuid4()),
            "activity_id": activity_id,
            "target_inbox_url": target_inbox_url,
            "status": DELIVERY_PENDING,
            "retry_count": 0,
            "created_at": now,
        }

    def enqueue(self, activity_id: str, target_inbox_url: str) -> bool:
        """Queue one delivery. Returns False if the pair was already queued."""
        return self.enqueue_many(activity_id, [target_inbox_url]) == 1

    def enqueue_many(self, activity_id: str, target_inbox_urls: Iterable[str]) -> int:
        """Queue deliveries of ``activity_id`` to each distinct inbox.

        Pairs that already exist are skipped silently.

        Returns:
            The number of rows inserted.
        """
        now = self._clock()
        urls = list(dict.fromkeys(url for url in target_inbox_urls if url))
        rows = [self._row(url, activity_id, now) for url in urls]
        inserted = insert_ignore(
            self.session,
            DeliveryQueueItem,
            rows,
            ("activity_id", "target_inbox_url"),
        )
        self.session.commit()
        if inserted < len(rows):
            logger.debug(
                "Skipped %d already-queued deliveries for %s", len(rows) - inserted, activity_id
            )
        return inserted

    def get(self, item_id: str) -> DeliveryQueueItem | None:
        stmt = (
            select(DeliveryQueueItem)
            .where(DeliveryQueueItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def claim_batch(self, batch_size: int) -> list[ClaimedDelivery]:
        """Atomically claim up to ``batch_size`` eligible rows, oldest first.

        A row is eligible when it is ``pending`` and was not attempted within the
        re-claim guard. Claimed rows are ``processing`` with ``last_attempt_at``
        set to now once this returns.
        """
        if batch_size <= 0:
            return []

        now = self._clock()
        guard_cutoff = now - self.reclaim_guard
        eligible = (
            select(DeliveryQueueItem.id)
            .where(
                DeliveryQueueItem.status == DELIVERY_PENDING,
                or_(
                    DeliveryQueueItem.last_attempt_at.is_(None),
                    DeliveryQueueItem.last_attempt_at < guard_cutoff,
                ),
            )
            .order_by(DeliveryQueueItem.created_at.asc(), DeliveryQueueItem.id.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        claim = (
            update(DeliveryQueueItem)
            .where(
                DeliveryQueueItem.id.in_(eligible),
                DeliveryQueueItem.status == DELIVERY_PENDING,
            )
            .values(status=DELIVERY_PROCESSING, last_attempt_at=now)
            .returning(DeliveryQueueItem.id)
            .execution_options(synchronize_session=False)
        )

        try:
            ids = list(self.session.execute(claim).scalars())
            if not ids:
                self.session.commit()
                return []

            rows = self.session.execute(
                select(DeliveryQueueItem, OutboxActivity)
                .outerjoin(
                    OutboxActivity,
                    OutboxActivity.activity_id == DeliveryQueueItem.activity_id,
                )
                .where(DeliveryQueueItem.id.in_(ids))
                .order_by(DeliveryQueueItem.created_at.asc(), DeliveryQueueItem.id.asc())
                .execution_options(populate_existing=True)
            ).all()
            claimed = [
                ClaimedDelivery(
                    id=item.id,
                    activity_id=item.activity_id,
                    target_inbox_url=item.target_inbox_url,
                    retry_count=item.retry_count,
                    created_at=item.created_at,
                    activity_json=activity.activity_json if activity else None,
                    activity_type=activity.activity_type if activity else None,
                    local_user_id=activity.local_user_id if activity else None,
                )
                for item, activity in rows
            ]
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.debug("Claimed %d deliveries", len(claimed))
        return claimed

    def report_outcome(self, item_id: str, outcome: DeliveryOutcome) -> bool:
        """Record the result of a claimed delivery.

        Only rows still in ``processing`` are updated, so a report arriving after
        :meth:`reset_stale` recycled the row is ignored.

        Returns:
            True if the row was updated.
        """
        now = self._clock()
        if outcome.delivered:
            values: dict[str, object] = {
                "status": DELIVERY_DELIVERED,
                "delivered_at": now,
                "last_attempt_at": now,
            }
        else:
            values = {
                "status": DELIVERY_FAILED if outcome.permanent else DELIVERY_PENDING,
                "retry_count": DeliveryQueueItem.retry_count + 1,
                "last_error": outcome.error or "unknown error",
                "last_attempt_at": now,
            }

        result = self.session.execute(
            update(DeliveryQueueItem)
            .where(
                DeliveryQueueItem.id == item_id,
                DeliveryQueueItem.status == DELIVERY_PROCESSING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        updated = bool(result.rowcount)
        if not updated:
            logger.warning("Ignored outcome for delivery %s: row is no longer claimed", item_id)
        return updated

    def reset_stale(self, threshold_minutes: int) -> int:
        """Return rows stuck in ``processing`` for longer than the threshold to ``pending``."""
        cutoff = self._clock() - timedelta(minutes=threshold_minutes)
        result = self.session.execute(
            update(DeliveryQueueItem)
            .where(
                DeliveryQueueItem.status == DELIVERY_PROCESSING,
                or_(
                    DeliveryQueueItem.last_attempt_at.is_(None),
                    DeliveryQueueItem.last_attempt_at < cutoff,
                ),
            )
            .values(status=DELIVERY_PENDING, last_attempt_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        reset = int(result.rowcount or 0)
        if reset:
            logger.warning("Reset %d stale deliveries to pending", reset)
        return reset

    def release(self, item_ids: Sequence[str]) -> int:
        """Hand claimed rows back to ``pending`` without counting an attempt."""
        if not item_ids:
            return 0
        result = self.session.execute(
            update(DeliveryQueueItem)
            .where(
                DeliveryQueueItem.id.in_(list(item_ids)),
                DeliveryQueueItem.status == DELIVERY_PROCESSING,
            )
            .values(status=DELIVERY_PENDING, last_attempt_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return int(result.rowcount or 0)

    def stats(self) -> dict[str, int]:
        """Return the number of rows per status."""
        counts = dict.fromkeys(DELIVERY_STATUSES, 0)
        rows = self.session.execute(
            select(DeliveryQueueItem.status, func.count(DeliveryQueueItem.id)).group_by(
                DeliveryQueueItem.status
            )
        ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts
