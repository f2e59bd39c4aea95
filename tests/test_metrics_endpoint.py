from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.routing import Route

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import seed_default_stages
from app.crm.service import ActorUser
from app.main import app
from app.metrics import resolve_http_path_label


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
    seed_default_stages(session)
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(user_id="metrics-user", correlation_id="metrics-corr-1")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: TestClient) -> None:
    health = client.get("/api/health")
    assert health.status_code == 200

    lead = client.post("/api/leads", json={"name": "Metrics Lead"})
    assert lead.status_code == 201
    converted = client.post(f"/api/leads/{lead.json()['id']}/convert")
    assert converted.status_code == 200

    deal = client.post("/api/deals", json={"name": "Metrics Deal", "value": 100})
    assert deal.status_code == 201
    won = client.patch(f"/api/deals/{deal.json()['id']}/stage", json={"stage_id": "stage_5"})
    assert won.status_code == 200

    activity = client.post("/api/activities", json={"type": "meeting"})
    completed = client.patch(f"/api/activities/{activity.json()['id']}/complete")
    assert completed.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_conversions_total" in body
    assert "crm_deal_stage_transitions_total" in body
    assert "crm_activity_completions_total" in body

    assert 'path="/api/health"' in body
    assert 'path="/api/leads/{id}/convert"' in body
    assert 'path="/api/deals/{id}/stage"' in body
    assert 'outcome="won"' in body
    assert 'type="meeting"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
    assert response.json()["error"] == "Not Found"


def test_unmatched_paths_are_sanitized() -> None:
    request = Request({"type": "http", "method": "GET", "path": "/api/leads/lead_abc123/convert", "headers": []})
    assert resolve_http_path_label(request) == "/api/leads/{id}/convert"

    numeric = Request({"type": "http", "method": "GET", "path": "/api/things/42", "headers": []})
    assert resolve_http_path_label(numeric) == "/api/things/{id}"


def _route_request(route_path: str, url_path: str) -> Request:
    def endpoint(request: Request) -> None:
        return None

    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": url_path,
            "headers": [],
            "route": Route(route_path, endpoint=endpoint),
        }
    )


def test_route_templates_keep_the_mount_prefix() -> None:
    mounted = _route_request("/leads/{lead_id}/convert", "/api/leads/lead_abc123/convert")
    assert resolve_http_path_label(mounted) == "/api/leads/{id}/convert"

    mounted_collection = _route_request("/deals", "/api/deals")
    assert resolve_http_path_label(mounted_collection) == "/api/deals"

    flat = _route_request("/api/deals/{deal_id}", "/api/deals/deal_missing")
    assert resolve_http_path_label(flat) == "/api/deals/{id}"

    root = _route_request("/", "/")
    assert resolve_http_path_label(root) == "/"
