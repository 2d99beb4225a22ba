# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")

from chorus_courier.core.settings import Settings
from chorus_courier.db.session import Base
from chorus_courier.db.session import get_db as app_get_session
from chorus_courier.main import app as fastapi_app
from chorus_courier.services.actor_cache import ActorProfile
from chorus_courier.services.collaborators import InstanceActivityFactory

TEST_DB_URL = "sqlite://"
INSTANCE_DOMAIN = "courier.test"


class FakeClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class StaticResolver:
    """Actor resolver answering from a fixed profile table."""

    def __init__(self, *profiles: ActorProfile) -> None:
        self.profiles = {profile.id: profile for profile in profiles}
        self.calls: list[str] = []

    async def fetch_actor(self, actor_uri: str) -> ActorProfile | None:
        self.calls.append(actor_uri)
        return self.profiles.get(actor_uri)


def make_profile(actor_uri: str, *, shared_inbox_url: str | None = None) -> ActorProfile:
    return ActorProfile(
        id=actor_uri,
        handle=actor_uri.rstrip("/").rsplit("/", 1)[-1],
        inbox_url=f"{actor_uri}/inbox",
        outbox_url=f"{actor_uri}/outbox",
        public_key_pem="-----BEGIN PUBLIC KEY-----\nMIIB\n-----END PUBLIC KEY-----",
        shared_inbox_url=shared_inbox_url,
        public_key_id=f"{actor_uri}#main-key",
    )


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()

        # Services commit, so every test cleans the tables it touched.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def file_session_factory(tmp_path: Path) -> Iterator[sessionmaker[Session]]:
    """Session factory over a file database so threads get separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'courier.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def activities() -> InstanceActivityFactory:
    return InstanceActivityFactory(INSTANCE_DOMAIN)


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def test_settings() -> Settings:
    """Settings with a cron secret and the test instance domain."""
    return Settings(CRON_SECRET="tick-secret", INSTANCE_DOMAIN=INSTANCE_DOMAIN)


@pytest.fixture()
def profile_factory():
    return make_profile


@pytest.fixture()
def resolver_factory():
    return StaticResolver
