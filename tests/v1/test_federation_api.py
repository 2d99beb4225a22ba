"""Tests for the federation stats and tick endpoints."""

from collections.abc import Iterator

import httpx
import pytest
from fastapi import FastAPI, status
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from chorus_courier.api.v1.dependencies import get_settings, get_tick_collaborators
from chorus_courier.core.settings import Settings
from chorus_courier.services.delivery import DeliveryConfig, InboxDeliveryClient
from chorus_courier.services.delivery_queue import DeliveryQueue
from chorus_courier.services.inbox_queue import InboundActivity, InboxQueue
from chorus_courier.services.outbox import OutboundActivity, OutboxActivityStore
from chorus_courier.services.ticks import TickCollaborators

SECRET_HEADERS = {"X-Cron-Secret": "tick-secret"}


@pytest.fixture()
def use_settings(app: FastAPI) -> Iterator:
    def _use(config: Settings) -> None:
        app.dependency_overrides[get_settings] = lambda: config

    yield _use
    app.dependency_overrides.pop(get_settings, None)
    app.dependency_overrides.pop(get_tick_collaborators, None)


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"status": "ok", "database": "ok"}


def test_root(client: TestClient) -> None:
    r = client.get("/")
    assert r.status_code == status.HTTP_200_OK
    assert r.json()["name"]


def test_queue_stats(client: TestClient, db_session: Session) -> None:
    DeliveryQueue(db_session).enqueue("https://courier.test/a/1", "https://x.example/inbox")
    InboxQueue(db_session).enqueue(
        InboundActivity(
            activity_id="https://remote.example/a/1",
            activity_type="Like",
            payload={"id": "https://remote.example/a/1", "type": "Like"},
            remote_actor_id="https://remote.example/users/bob",
            local_user_id="alice",
        )
    )

    r = client.get("/api/v1/federation/stats")

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["delivery"]["pending"] == 1
    assert data["inbox"]["pending"] == 1


def test_ticks_disabled_without_secret(client: TestClient, use_settings) -> None:
    use_settings(Settings(CRON_SECRET=""))
    r = client.post("/api/v1/federation/ticks/cleanup", headers=SECRET_HEADERS)
    assert r.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


def test_ticks_require_matching_secret(
    client: TestClient, use_settings, test_settings: Settings
) -> None:
    use_settings(test_settings)

    assert client.post("/api/v1/federation/ticks/cleanup").status_code == 401
    wrong = client.post("/api/v1/federation/ticks/cleanup", headers={"X-Cron-Secret": "nope"})
    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED

    bearer = client.post(
        "/api/v1/federation/ticks/cleanup",
        headers={"Authorization": "Bearer tick-secret"},
    )
    assert bearer.status_code == status.HTTP_200_OK


def test_unknown_tick(client: TestClient, use_settings, test_settings: Settings) -> None:
    use_settings(test_settings)
    r = client.post("/api/v1/federation/ticks/compact", headers=SECRET_HEADERS)
    assert r.status_code == status.HTTP_404_NOT_FOUND


def test_cleanup_tick(client: TestClient, use_settings, test_settings: Settings) -> None:
    use_settings(test_settings)

    r = client.post("/api/v1/federation/ticks/cleanup", headers=SECRET_HEADERS)

    assert r.status_code == status.HTTP_200_OK
    data = r.json()
    assert data["name"] == "cleanup"
    assert data["ran"] is True
    assert data["result"] == {"inbox_deleted": 0, "rate_limits_deleted": 0, "stuck_inbox_ids": []}


def test_federation_disabled_skips_worker_ticks(client: TestClient, use_settings) -> None:
    use_settings(Settings(CRON_SECRET="tick-secret", FEDERATION_ENABLED=False))

    r = client.post("/api/v1/federation/ticks/delivery", headers=SECRET_HEADERS)

    assert r.status_code == status.HTTP_200_OK
    assert r.json()["ran"] is False


def test_delivery_tick_delivers_queued_activity(
    app: FastAPI, client: TestClient, db_session: Session, use_settings, test_settings: Settings
) -> None:
    use_settings(test_settings)
    payload = {"id": "https://courier.test/ap/activities/1", "type": "Create", "to": []}
    OutboxActivityStore(db_session).publish(
        OutboundActivity.from_payload("alice", payload), ["https://remote.example/inbox"]
    )
    delivered: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        delivered.append(str(request.url))
        return httpx.Response(202)

    delivery_client = InboxDeliveryClient(
        DeliveryConfig(user_agent="test", timeout_seconds=5),
        transport=httpx.MockTransport(handler),
    )
    app.dependency_overrides[get_tick_collaborators] = lambda: TickCollaborators(
        client=delivery_client
    )

    r = client.post(
        "/api/v1/federation/ticks/delivery", params={"batch_size": 5}, headers=SECRET_HEADERS
    )

    assert r.status_code == status.HTTP_200_OK
    result = r.json()["result"]
    assert (result["claimed"], result["delivered"]) == (1, 1)
    assert delivered == ["https://remote.example/inbox"]


def test_batch_size_is_validated(client: TestClient, use_settings, test_settings: Settings) -> None:
    use_settings(test_settings)
    r = client.post(
        "/api/v1/federation/ticks/inbox", params={"batch_size": 0}, headers=SECRET_HEADERS
    )
    assert r.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
