from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

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
from app.crm.models import utcnow
from app.crm.seed import seed_default_user
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


def _iso(delta: timedelta) -> str:
    return (utcnow() + delta).isoformat()


def _create_activity(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {"type": "call", "subject": "Discovery call"}
    payload.update(overrides)
    response = client.post("/api/activities", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_activity_applies_defaults(client: TestClient) -> None:
    activity = _create_activity(client, due_date=_iso(timedelta(days=1)), duration_minutes=30)

    assert activity["id"].startswith("activity_")
    assert activity["status"] == "pending"
    assert activity["priority"] == "medium"
    assert activity["user_id"] is None
    assert activity["completed_at"] is None
    assert activity["duration_minutes"] == 30
    assert activity["due_date"] is not None


@pytest.mark.parametrize(
    "payload",
    [
        {"subject": "Missing type"},
        {"type": "fax"},
        {"type": "call", "priority": "urgent"},
        {"type": "call", "status": "done"},
        {"type": "call", "duration_minutes": -5},
        {"type": "call", "due_date": "next tuesday"},
    ],
)
def test_create_activity_rejects_invalid_payloads(client: TestClient, payload: dict) -> None:
    response = client.post("/api/activities", json=payload)
    assert response.status_code == 400


def test_activity_read_joins_related_names(client: TestClient, db_session: Session) -> None:
    seed_default_user(db_session)
    db_session.commit()
    lead = client.post("/api/leads", json={"name": "Ada Lovelace"}).json()
    contact = client.post("/api/contacts", json={"first_name": "Hank", "last_name": "Scorpio"}).json()
    deal = client.post("/api/deals", json={"name": "Hammock District", "value": 50}).json()

    activity = _create_activity(
        client,
        lead_id=lead["id"],
        contact_id=contact["id"],
        deal_id=deal["id"],
        user_id="user_1",
    )
    assert activity["lead_name"] == "Ada Lovelace"
    assert activity["contact_first_name"] == "Hank"
    assert activity["contact_last_name"] == "Scorpio"
    assert activity["deal_name"] == "Hammock District"
    assert activity["user_name"] == get_settings().default_user_name


def test_complete_activity_sets_outcome_and_is_repeatable(client: TestClient) -> None:
    activity = _create_activity(client)

    completed = client.patch(f"/api/activities/{activity['id']}/complete", json={"outcome": "Left voicemail"})
    assert completed.status_code == 200
    body = completed.json()
    assert body["status"] == "completed"
    assert body["outcome"] == "Left voicemail"
    assert body["completed_at"] is not None

    again = client.patch(f"/api/activities/{activity['id']}/complete")
    assert again.status_code == 200
    assert again.json()["status"] == "completed"
    assert again.json()["outcome"] is None
    assert again.json()["row_version"] == body["row_version"] + 1

    event_types = [item["event_type"] for item in events.published_events]
    assert event_types.count("crm.activity.completed") == 2

    missing = client.patch("/api/activities/activity_missing/complete")
    assert missing.status_code == 404
    assert missing.json()["message"] == "Activity not found"


def test_cancel_is_a_plain_status_update(client: TestClient) -> None:
    activity = _create_activity(client)
    response = client.put(f"/api/activities/{activity['id']}", json={"status": "cancelled", "priority": "high"})
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["priority"] == "high"

    null_type = client.put(f"/api/activities/{activity['id']}", json={"type": None})
    assert null_type.status_code == 400


def test_upcoming_and_overdue_filters(client: TestClient) -> None:
    overdue = _create_activity(client, subject="Overdue", due_date=_iso(-timedelta(days=2)))
    upcoming = _create_activity(client, subject="Upcoming", due_date=_iso(timedelta(days=2)))
    done = _create_activity(client, subject="Done", due_date=_iso(-timedelta(days=3)))
    client.patch(f"/api/activities/{done['id']}/complete")

    overdue_page = client.get("/api/activities", params={"overdue": "true"}).json()
    assert [item["id"] for item in overdue_page["data"]] == [overdue["id"]]

    upcoming_page = client.get("/api/activities", params={"upcoming": "true"}).json()
    assert [item["id"] for item in upcoming_page["data"]] == [upcoming["id"]]

    completed_page = client.get("/api/activities", params={"status": "completed"}).json()
    assert [item["id"] for item in completed_page["data"]] == [done["id"]]


def test_list_activities_filters_by_type_and_owner_records(client: TestClient) -> None:
    company = client.post("/api/companies", json={"name": "Initech"}).json()
    _create_activity(client, type="email", subject="Follow up", company_id=company["id"])
    _create_activity(client, type="meeting", subject="Quarterly review")
    _create_activity(client, type="note", subject="Budget notes", description="Printer budget")

    by_type = client.get("/api/activities", params={"type": "meeting"}).json()
    assert [item["subject"] for item in by_type["data"]] == ["Quarterly review"]

    by_company = client.get("/api/activities", params={"companyId": company["id"]}).json()
    assert [item["subject"] for item in by_company["data"]] == ["Follow up"]

    searched = client.get("/api/activities", params={"search": "printer"}).json()
    assert [item["subject"] for item in searched["data"]] == ["Budget notes"]


def test_list_activities_sorts_by_due_date(client: TestClient) -> None:
    _create_activity(client, subject="Later", due_date=_iso(timedelta(days=5)))
    _create_activity(client, subject="Sooner", due_date=_iso(timedelta(days=1)))
    _create_activity(client, subject="Undated")

    ascending = client.get("/api/activities", params={"sortOrder": "asc"}).json()
    assert [item["subject"] for item in ascending["data"]] == ["Sooner", "Later", "Undated"]


def test_delete_activity(client: TestClient) -> None:
    activity = _create_activity(client)
    response = client.delete(f"/api/activities/{activity['id']}")
    assert response.status_code == 200
    assert response.json()["message"] == "Activity deleted successfully"
    assert client.get(f"/api/activities/{activity['id']}").status_code == 404
