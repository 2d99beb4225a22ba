from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from chorus_courier.db.time import as_utc
from chorus_courier.models.inbox import (
    INBOX_FAILED,
    INBOX_PENDING,
    INBOX_PROCESSED,
    INBOX_PROCESSING,
)
from chorus_courier.services.inbox_queue import InboundActivity, InboxQueue

REMOTE_ACTOR = "https://remote.example/users/bob"


def _activity(number: int, activity_type: str = "Like") -> InboundActivity:
    activity_id = f"https://remote.example/activities/{number}"
    return InboundActivity(
        activity_id=activity_id,
        activity_type=activity_type,
        payload={"id": activity_id, "type": activity_type, "actor": REMOTE_ACTOR},
        remote_actor_id=REMOTE_ACTOR,
        local_user_id="alice",
    )


def test_enqueue_deduplicates_by_activity_id(db_session: Session, clock) -> None:
    queue = InboxQueue(db_session, clock=clock)

    assert queue.enqueue(_activity(1)) is True
    assert queue.enqueue(_activity(1)) is False

    stored = queue.find_by_activity_id("https://remote.example/activities/1")
    assert stored is not None
    assert stored.status == INBOX_PENDING
    assert stored.remote_actor_id == REMOTE_ACTOR
    assert queue.stats()[INBOX_PENDING] == 1


def test_claim_batch_is_fifo_and_exclusive(db_session: Session, clock) -> None:
    queue = InboxQueue(db_session, clock=clock)
    for number in range(5):
        queue.enqueue(_activity(number))
        clock.advance(seconds=1)

    first = queue.claim_batch(3)
    second = queue.claim_batch(3)

    assert [item.activity_id.rsplit("/", 1)[-1] for item in first] == ["0", "1", "2"]
    assert [item.activity_id.rsplit("/", 1)[-1] for item in second] == ["3", "4"]
    assert queue.claim_batch(3) == []
    assert queue.stats()[INBOX_PROCESSING] == 5


def test_report_outcome_resolves_claimed_rows(db_session: Session, clock) -> None:
    queue = InboxQueue(db_session, clock=clock)
    queue.enqueue(_activity(1))
    queue.enqueue(_activity(2))
    ok, bad = queue.claim_batch(2)

    clock.advance(seconds=30)
    assert queue.report_outcome(ok.id, INBOX_PROCESSED)
    assert queue.report_outcome(bad.id, INBOX_FAILED, "handler exploded")

    processed = queue.get(ok.id)
    assert processed.status == INBOX_PROCESSED
    assert as_utc(processed.processed_at) == clock.now
    assert processed.error_message is None

    failed = queue.get(bad.id)
    assert failed.status == INBOX_FAILED
    assert failed.error_message == "handler exploded"

    # Failed rows are terminal and never claimed again.
    assert queue.claim_batch(10) == []
    assert queue.report_outcome(bad.id, INBOX_PROCESSED) is False


def test_report_outcome_rejects_non_terminal_status(db_session: Session, clock) -> None:
    queue = InboxQueue(db_session, clock=clock)
    with pytest.raises(ValueError):
        queue.report_outcome("whatever", INBOX_PENDING)


def test_find_stuck_reports_old_processing_rows(db_session: Session, clock) -> None:
    queue = InboxQueue(db_session, clock=clock)
    queue.enqueue(_activity(1))
    (item,) = queue.claim_batch(1)

    clock.advance(minutes=5)
    assert queue.find_stuck(15) == []

    clock.advance(minutes=11)
    assert [row.id for row in queue.find_stuck(15)] == [item.id]
