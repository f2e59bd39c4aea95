from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import seed_default_stages
from app.crm.service import ActorUser
from app.main import app


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="user_1", correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/contacts/contact_missing")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["error"] == "Not Found"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/contacts/contact_missing", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/api/health", headers={"X-Correlation-Id": "x" * 200})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "x" * 200


def test_successful_responses_carry_correlation_id(client: TestClient) -> None:
    response = client.get("/api/leads", headers={"X-Correlation-Id": "list-corr-1"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "list-corr-1"


def test_unknown_route_uses_error_envelope(client: TestClient) -> None:
    response = client.get("/api/unknown", headers={"X-Correlation-Id": "missing-route-1"})
    assert response.status_code == 404
    body = response.json()
    assert body == {
        "error": "Not Found",
        "message": "The requested resource was not found",
        "correlation_id": "missing-route-1",
    }


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    response = client.post("/api/companies", json={"name": "Corr Co"}, headers={"X-Correlation-Id": "corr-audit-1"})
    assert response.status_code == 201

    company_audits = audit.entries_for("crm.company", response.json()["id"])
    assert company_audits
    assert company_audits[-1]["correlation_id"] == "corr-audit-1"
    assert company_audits[-1]["actor_user_id"] == "user_1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post("/api/leads", json={"name": "Corr Lead"}, headers={"X-Correlation-Id": "corr-event-1"})
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    envelope = created_events[-1]
    assert envelope["correlation_id"] == "corr-event-1"
    assert envelope["actor_user_id"] == "user_1"
    assert envelope["version"] == 1
    assert envelope["event_id"]
    assert envelope["occurred_at"]


def test_stage_change_events_share_request_correlation_id(client: TestClient, db_session: Session) -> None:
    seed_default_stages(db_session)
    db_session.commit()
    deal = client.post("/api/deals", json={"name": "Corr Deal", "value": 1}).json()

    response = client.patch(
        f"/api/deals/{deal['id']}/stage",
        json={"stage_id": "stage_5"},
        headers={"X-Correlation-Id": "corr-stage-1"},
    )
    assert response.status_code == 200

    stage_events = [
        item
        for item in events.published_events
        if item["event_type"] in {"crm.deal.stage_changed", "crm.deal.closed_won"}
    ]
    assert len(stage_events) == 2
    assert all(item["correlation_id"] == "corr-stage-1" for item in stage_events)
