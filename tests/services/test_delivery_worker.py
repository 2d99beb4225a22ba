from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from chorus_courier.models import DeliveryQueueItem
from chorus_courier.models.delivery import DELIVERY_DELIVERED, DELIVERY_FAILED, DELIVERY_PENDING
from chorus_courier.services.delivery import (
    DeliveryConfig,
    InboxDeliveryClient,
    is_direct_activity,
    max_retries_for,
)
from chorus_courier.services.delivery_queue import DeliveryQueue
from chorus_courier.services.delivery_worker import run_delivery_tick
from chorus_courier.services.outbox import OutboundActivity, OutboxActivityStore
from chorus_courier.services.policy import FederationPolicy

CONFIG = DeliveryConfig(user_agent="ChorusCourier/test", timeout_seconds=5, max_retries=3)
PUBLIC_NOTE = {
    "id": "https://courier.test/ap/activities/create-1",
    "type": "Create",
    "actor": "https://courier.test/ap/users/alice",
    "to": ["https://www.w3.org/ns/activitystreams#Public"],
    "object": {"id": "https://courier.test/ap/notes/1", "type": "Note"},
}
DIRECT_NOTE = {
    "id": "https://courier.test/ap/activities/create-2",
    "type": "Create",
    "actor": "https://courier.test/ap/users/alice",
    "object": {
        "id": "https://courier.test/ap/notes/2",
        "type": "Note",
        "to": ["https://remote.example/users/bob"],
    },
}


class HeaderSigner:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def sign(self, *, method, url, body, headers, local_user_id):
        self.calls.append({"method": method, "url": url, "user": local_user_id})
        return {"Signature": f'keyId="{local_user_id}#main-key"'}


def _publish(session: Session, clock, payload: dict, inboxes: list[str]) -> None:
    OutboxActivityStore(session, clock=clock).publish(
        OutboundActivity.from_payload("alice", payload), inboxes
    )


def _client(handler, **kwargs) -> InboxDeliveryClient:
    return InboxDeliveryClient(CONFIG, transport=httpx.MockTransport(handler), **kwargs)


def _ids(session: Session) -> list[str]:
    return list(session.execute(select(DeliveryQueueItem.id)).scalars())


def test_direct_activity_detection() -> None:
    assert is_direct_activity(DIRECT_NOTE) is True
    assert is_direct_activity(PUBLIC_NOTE) is False
    assert is_direct_activity({"to": "https://courier.test/ap/users/alice/followers"}) is False
    assert is_direct_activity({"type": "Follow"}) is False
    assert max_retries_for(json.dumps(DIRECT_NOTE), CONFIG) == 2
    assert max_retries_for(json.dumps(PUBLIC_NOTE), CONFIG) == 3
    assert max_retries_for("{broken", CONFIG) == 3


@pytest.mark.asyncio
async def test_successful_delivery_is_signed_and_marked_delivered(db_session: Session, clock) -> None:
    _publish(db_session, clock, PUBLIC_NOTE, ["https://a.example/inbox", "https://b.example/inbox"])
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    signer = HeaderSigner()
    client = _client(handler, signer=signer)
    try:
        result = await run_delivery_tick(db_session, client, clock=clock)
    finally:
        await client.close()

    assert (result.claimed, result.delivered, result.retried, result.failed) == (2, 2, 0, 0)
    assert sorted(str(request.url) for request in requests) == [
        "https://a.example/inbox",
        "https://b.example/inbox",
    ]
    request = requests[0]
    assert request.method == "POST"
    assert request.headers["Content-Type"] == "application/activity+json"
    assert request.headers["User-Agent"] == "ChorusCourier/test"
    assert request.headers["Signature"] == 'keyId="alice#main-key"'
    assert json.loads(request.content)["id"] == PUBLIC_NOTE["id"]
    assert {call["user"] for call in signer.calls} == {"alice"}
    assert DeliveryQueue(db_session).stats()[DELIVERY_DELIVERED] == 2


@pytest.mark.asyncio
async def test_server_errors_retry_until_the_ceiling(db_session: Session, clock) -> None:
    _publish(db_session, clock, PUBLIC_NOTE, ["https://flaky.example/inbox"])
    client = _client(lambda request: httpx.Response(500, text="x" * 500))
    queue = DeliveryQueue(db_session)

    try:
        first = await run_delivery_tick(db_session, client, clock=clock)
        # The re-claim guard holds the row back until it expires.
        blocked = await run_delivery_tick(db_session, client, clock=clock)
        clock.advance(minutes=6)
        second = await run_delivery_tick(db_session, client, clock=clock)
        clock.advance(minutes=6)
        third = await run_delivery_tick(db_session, client, clock=clock)
    finally:
        await client.close()

    assert (first.retried, blocked.claimed, second.retried, third.failed) == (1, 0, 1, 1)
    (row,) = [queue.get(item_id) for item_id in _ids(db_session)]
    assert row.status == DELIVERY_FAILED
    assert row.retry_count == 3
    assert row.last_error == "HTTP 500: " + "x" * 200


@pytest.mark.asyncio
async def test_direct_messages_give_up_sooner(db_session: Session, clock) -> None:
    _publish(db_session, clock, DIRECT_NOTE, ["https://remote.example/users/bob/inbox"])
    client = _client(lambda request: httpx.Response(503))

    try:
        first = await run_delivery_tick(db_session, client, clock=clock)
        clock.advance(minutes=6)
        second = await run_delivery_tick(db_session, client, clock=clock)
    finally:
        await client.close()

    assert first.retried == 1
    assert second.failed == 1
    assert DeliveryQueue(db_session).stats()[DELIVERY_FAILED] == 1


@pytest.mark.asyncio
async def test_transport_errors_are_retried(db_session: Session, clock) -> None:
    _publish(db_session, clock, PUBLIC_NOTE, ["https://down.example/inbox"])

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    try:
        result = await run_delivery_tick(db_session, client, clock=clock)
    finally:
        await client.close()

    assert result.retried == 1
    (row_id,) = _ids(db_session)
    row = DeliveryQueue(db_session).get(row_id)
    assert row.status == DELIVERY_PENDING
    assert "connection refused" in row.last_error


@pytest.mark.asyncio
async def test_blocked_and_unusable_rows_fail_without_a_request(db_session: Session, clock) -> None:
    _publish(db_session, clock, PUBLIC_NOTE, ["https://inbox.bad.example/inbox", "not-a-url"])
    DeliveryQueue(db_session, clock=clock).enqueue(
        "https://courier.test/ap/activities/gone", "https://ok.example/inbox"
    )
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    client = _client(handler)
    try:
        result = await run_delivery_tick(
            db_session,
            client,
            policy=FederationPolicy.from_lists(blocked=["bad.example"]),
            clock=clock,
        )
    finally:
        await client.close()

    assert requests == []
    assert result.failed == 3
    queue = DeliveryQueue(db_session)
    errors = sorted(queue.get(item_id).last_error for item_id in _ids(db_session))
    assert errors == [
        "blocked by federation policy (blocked)",
        "invalid inbox url",
        "missing activity payload",
    ]


@pytest.mark.asyncio
async def test_signer_errors_count_as_attempts(db_session: Session, clock) -> None:
    _publish(db_session, clock, PUBLIC_NOTE, ["https://ok.example/inbox", "https://keyless.example/inbox"])
    requests: list[httpx.Request] = []

    class KeylessSigner(HeaderSigner):
        def sign(self, *, method, url, body, headers, local_user_id):
            if "keyless" in url:
                raise ValueError("no key pair for user")
            return super().sign(
                method=method, url=url, body=body, headers=headers, local_user_id=local_user_id
            )

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    client = _client(handler, signer=KeylessSigner())
    results = []
    try:
        for _ in range(3):
            results.append(await run_delivery_tick(db_session, client, clock=clock))
            clock.advance(minutes=6)
        idle = await run_delivery_tick(db_session, client, clock=clock)
    finally:
        await client.close()

    assert [(r.delivered, r.retried, r.failed) for r in results] == [(1, 1, 0), (0, 1, 0), (0, 0, 1)]
    assert idle.claimed == 0
    assert [str(request.url) for request in requests] == ["https://ok.example/inbox"]
    queue = DeliveryQueue(db_session)
    (failed,) = [
        row for row in (queue.get(item_id) for item_id in _ids(db_session))
        if row.status == DELIVERY_FAILED
    ]
    assert failed.retry_count == 3
    assert failed.last_error == "no key pair for user"
    assert queue.stats()[DELIVERY_DELIVERED] == 1


@pytest.mark.asyncio
async def test_stale_claims_are_reset_before_claiming(db_session: Session, clock) -> None:
    _publish(db_session, clock, PUBLIC_NOTE, ["https://a.example/inbox"])
    DeliveryQueue(db_session, clock=clock).claim_batch(10)
    clock.advance(minutes=10)

    client = _client(lambda request: httpx.Response(200))
    try:
        result = await run_delivery_tick(db_session, client, clock=clock)
    finally:
        await client.close()

    assert (result.reset, result.claimed, result.delivered) == (1, 1, 1)
