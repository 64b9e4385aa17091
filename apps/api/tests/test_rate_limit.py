from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import _resolve_route_group, reset_rate_limiter
from app.pipeline.api import get_current_actor
from app.pipeline.roles import Actor, Role


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_PIPELINE_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> Actor:
        return Actor(
            user_id="sdr-1",
            name="Sofia SDR",
            role=Role.SDR,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_pipeline_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = []
    for index in range(5):
        response = client.post(
            "/api/pipeline/leads",
            json={"name": f"Rate Limit Lead {index}", "phone": "11999990000"},
        )
        responses.append(response)

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["details"]["route_group"] == "leads"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/pipeline/leads", json={"name": "Readable Lead", "phone": "11999990000"})
    assert create.status_code == 201

    responses = [client.get("/api/pipeline/board") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_route_groups_are_limited_separately(client: TestClient) -> None:
    lead = client.post("/api/pipeline/leads", json={"name": "Grouped Lead", "phone": "11999990000"}).json()

    notes = [
        client.post(f"/api/pipeline/leads/{lead['id']}/notes", json={"note": f"note {index}"}) for index in range(3)
    ]
    assert all(response.status_code == 201 for response in notes)

    move = client.post(
        f"/api/pipeline/leads/{lead['id']}/move",
        json={"from_stage": "first-contact", "to_stage": "qualifying"},
    )
    assert move.status_code == 200


def test_route_group_resolution() -> None:
    assert _resolve_route_group("/api/pipeline/leads") == "leads"
    assert _resolve_route_group("/api/pipeline/leads/abc/move") == "move"
    assert _resolve_route_group("/api/pipeline/leads/abc/confirm-payment") == "confirm-payment"
    assert _resolve_route_group("/api/pipeline") == "pipeline"


def test_buckets_are_tracked_per_token_subject(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    settings = get_settings()

    def headers_for(subject: str) -> dict[str, str]:
        token = jwt.encode({"sub": subject, "roles": ["sdr"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}

    first_user = [
        client.post("/api/pipeline/leads", json={"name": f"A Lead {index}", "phone": "11999990000"}, headers=headers_for("sdr-a"))
        for index in range(4)
    ]
    assert first_user[-1].status_code == 429

    other_user = client.post(
        "/api/pipeline/leads",
        json={"name": "B Lead", "phone": "11999990000"},
        headers=headers_for("sdr-b"),
    )
    assert other_user.status_code == 201

    limited_logs = [record for record in caplog.records if record.getMessage() == "pipeline.rate_limited"]
    assert limited_logs
    assert getattr(limited_logs[-1], "actor_id", None) == "sdr-a"
