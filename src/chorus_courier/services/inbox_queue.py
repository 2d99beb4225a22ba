"""Queue of received remote activities awaiting side-effect processing."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from chorus_courier.db.statements import insert_ignore
from chorus_courier.db.time import Clock, utcnow
from chorus_courier.models import InboxActivity
from chorus_courier.models.inbox import (
    INBOX_FAILED,
    INBOX_PENDING,
    INBOX_PROCESSED,
    INBOX_PROCESSING,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (INBOX_PROCESSED, INBOX_FAILED)


@dataclass(frozen=True)
class InboundActivity:
    """An authenticated remote activity addressed to a local user."""

    activity_id: str
    activity_type: str
    payload: Mapping[str, Any]
    remote_actor_id: str | None
    local_user_id: str


@dataclass(frozen=True)
class ClaimedInboxActivity:
    """Snapshot of a claimed inbox row."""

    id: str
    local_user_id: str
    remote_actor_id: str | None
    activity_id: str
    activity_type: str
    activity_json: str
    created_at: datetime


class InboxQueue:
    """Deduplicating claim-based queue over ``ap_inbox_activities``.

    Claimed rows are not retried automatically: the worker must resolve each
    one to ``processed`` or ``failed``. Rows left in ``processing`` are reported
    by :meth:`find_stuck` for monitoring.
    """

    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self._clock = clock

    def enqueue(self, activity: InboundActivity) -> bool:
        """Store ``activity``; returns False when its id was already received."""
        row = {
            "id": str(uuid.uuid4()),
            "local_user_id": activity.local_user_id,
            "remote_actor_id": activity.remote_actor_id,
            "activity_id": activity.activity_id,
            "activity_type": activity.activity_type,
            "activity_json": json.dumps(activity.payload, separators=(",", ":")),
            "status": INBOX_PENDING,
            "created_at": self._clock(),
        }
        inserted = insert_ignore(self.session, InboxActivity, [row], ("activity_id",))
        self.session.commit()
        if not inserted:
            logger.info("Ignoring duplicate inbox activity %s", activity.activity_id)
        return bool(inserted)

    def get(self, item_id: str) -> InboxActivity | None:
        stmt = (
            select(InboxActivity)
            .where(InboxActivity.id == item_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def find_by_activity_id(self, activity_id: str) -> InboxActivity | None:
        stmt = (
            select(InboxActivity)
            .where(InboxActivity.activity_id == activity_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def claim_batch(self, batch_size: int) -> list[ClaimedInboxActivity]:
        """Atomically move up to ``batch_size`` pending rows to ``processing``, oldest first."""
        if batch_size <= 0:
            return []

        eligible = (
            select(InboxActivity.id)
            .where(InboxActivity.status == INBOX_PENDING)
            .order_by(InboxActivity.created_at.asc(), InboxActivity.id.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        claim = (
            update(InboxActivity)
            .where(InboxActivity.id.in_(eligible), InboxActivity.status == INBOX_PENDING)
            .values(status=INBOX_PROCESSING, processed_at=None)
            .returning(InboxActivity.id)
            .execution_options(synchronize_session=False)
        )

        try:
            ids = list(self.session.execute(claim).scalars())
            if not ids:
                self.session.commit()
                return []
            rows = self.session.execute(
                select(InboxActivity)
                .where(InboxActivity.id.in_(ids))
                .order_by(InboxActivity.created_at.asc(), InboxActivity.id.asc())
                .execution_options(populate_existing=True)
            ).scalars()
            claimed = [
                ClaimedInboxActivity(
                    id=row.id,
                    local_user_id=row.local_user_id,
                    remote_actor_id=row.remote_actor_id,
                    activity_id=row.activity_id,
                    activity_type=row.activity_type,
                    activity_json=row.activity_json,
                    created_at=row.created_at,
                )
                for row in rows
            ]
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.debug("Claimed %d inbox activities", len(claimed))
        return claimed

    def report_outcome(
        self, item_id: str, status: str, error_message: str | None = None
    ) -> bool:
        """Resolve a claimed row to ``processed`` or ``failed``."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Inbox outcome must be one of {TERMINAL_STATUSES}, got {status!r}")

        values: dict[str, object] = {"status": status, "processed_at": self._clock()}
        if error_message is not None:
            values["error_message"] = error_message

        result = self.session.execute(
            update(InboxActivity)
            .where(InboxActivity.id == item_id, InboxActivity.status == INBOX_PROCESSING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        updated = bool(result.rowcount)
        if not updated:
            logger.warning("Ignored outcome for inbox activity %s: row is not processing", item_id)
        return updated

    def find_stuck(self, grace_minutes: int) -> list[InboxActivity]:
        """Return rows that have stayed in ``processing`` longer than the grace period.

        Claims do not record a timestamp, so age is measured from ``created_at``.
        """
        cutoff = self._clock() - timedelta(minutes=grace_minutes)
        stmt = (
            select(InboxActivity)
            .where(
                InboxActivity.status == INBOX_PROCESSING,
                or_(InboxActivity.created_at < cutoff, InboxActivity.created_at.is_(None)),
            )
            .order_by(InboxActivity.created_at.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def stats(self) -> dict[str, int]:
        """Return the number of rows per status."""
        counts = dict.fromkeys((INBOX_PENDING, INBOX_PROCESSING, *TERMINAL_STATUSES), 0)
        rows = self.session.execute(
            select(InboxActivity.status, func.count(InboxActivity.id)).group_by(
                InboxActivity.status
            )
        ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts
