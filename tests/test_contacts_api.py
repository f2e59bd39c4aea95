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
from app.crm.models import CRMActivity, CRMDeal, CRMLead
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


def _create_contact(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {"first_name": "Jane", "last_name": "Doe", "email": "jane@initech.io"}
    payload.update(overrides)
    response = client.post("/api/contacts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_contact_with_company_and_tags(client: TestClient) -> None:
    company = client.post("/api/companies", json={"name": "Initech"}).json()
    contact = _create_contact(client, company_id=company["id"], tags=["vip", "q3"], mobile="", title=" CTO ")

    assert contact["id"].startswith("contact_")
    assert contact["company_id"] == company["id"]
    assert contact["company_name"] == "Initech"
    assert contact["tags"] == ["vip", "q3"]
    assert contact["mobile"] is None
    assert contact["title"] == "CTO"

    created = [item for item in events.published_events if item["event_type"] == "crm.contact.created"]
    assert created[-1]["payload"]["contact_id"] == contact["id"]


def test_create_contact_defaults_tags_to_empty_list(client: TestClient) -> None:
    contact = _create_contact(client)
    assert contact["tags"] == []
    assert contact["company_name"] is None


@pytest.mark.parametrize(
    "payload",
    [
        {"first_name": "Jane"},
        {"last_name": "Doe"},
        {"first_name": "", "last_name": "Doe"},
        {"first_name": "Jane", "last_name": "Doe", "email": "jane-at-initech"},
        {"first_name": "Jane", "last_name": "Doe", "tags": "vip"},
    ],
)
def test_create_contact_rejects_invalid_payloads(client: TestClient, payload: dict) -> None:
    response = client.post("/api/contacts", json=payload)
    assert response.status_code == 400


def test_list_contacts_filters_by_company_and_search(client: TestClient) -> None:
    company = client.post("/api/companies", json={"name": "Initech"}).json()
    _create_contact(client, first_name="Peter", last_name="Gibbons", email="peter@initech.io", company_id=company["id"])
    _create_contact(client, first_name="Michael", last_name="Bolton", email="michael@initech.io")
    _create_contact(client, first_name="Joanna", last_name="Smith", email="joanna@chotchkies.io")

    by_company = client.get("/api/contacts", params={"companyId": company["id"]}).json()
    assert [contact["first_name"] for contact in by_company["data"]] == ["Peter"]
    assert by_company["data"][0]["company_name"] == "Initech"

    by_email = client.get("/api/contacts", params={"search": "initech"}).json()
    assert {contact["first_name"] for contact in by_email["data"]} == {"Peter", "Michael"}

    by_last_name = client.get("/api/contacts", params={"search": "bolton"}).json()
    assert [contact["first_name"] for contact in by_last_name["data"]] == ["Michael"]

    sorted_page = client.get("/api/contacts", params={"sortBy": "last_name", "sortOrder": "asc", "limit": 2}).json()
    assert [contact["last_name"] for contact in sorted_page["data"]] == ["Bolton", "Gibbons"]
    assert sorted_page["totalPages"] == 2


def test_get_contact_includes_deals_and_activities(client: TestClient) -> None:
    contact = _create_contact(client)
    client.post("/api/deals", json={"name": "TPS reports", "value": 99, "contact_id": contact["id"]})
    client.post("/api/activities", json={"type": "call", "subject": "Check in", "contact_id": contact["id"]})

    detail = client.get(f"/api/contacts/{contact['id']}")
    assert detail.status_code == 200
    body = detail.json()
    assert [deal["name"] for deal in body["deals"]] == ["TPS reports"]
    assert body["deals"][0]["contact_first_name"] == "Jane"
    assert [activity["subject"] for activity in body["activities"]] == ["Check in"]

    assert client.get("/api/contacts/contact_missing").status_code == 404


def test_update_contact(client: TestClient) -> None:
    contact = _create_contact(client, tags=["a"])

    response = client.put(f"/api/contacts/{contact['id']}", json={"department": "Engineering", "tags": None})
    assert response.status_code == 200
    updated = response.json()
    assert updated["department"] == "Engineering"
    assert updated["tags"] == []
    assert updated["email"] == "jane@initech.io"
    assert updated["row_version"] == 2

    invalid = client.put(f"/api/contacts/{contact['id']}", json={"last_name": None})
    assert invalid.status_code == 400

    missing = client.put("/api/contacts/contact_missing", json={"department": "Sales"})
    assert missing.status_code == 404


def test_delete_contact_detaches_deals_activities_and_leads(client: TestClient, db_session: Session) -> None:
    lead = client.post("/api/leads", json={"name": "Jane Doe"}).json()
    converted = client.post(f"/api/leads/{lead['id']}/convert").json()
    contact_id = converted["contact"]["id"]
    deal = client.post("/api/deals", json={"name": "Upsell", "value": 5, "contact_id": contact_id}).json()
    activity = client.post("/api/activities", json={"type": "call", "contact_id": contact_id}).json()

    response = client.delete(f"/api/contacts/{contact_id}")
    assert response.status_code == 200
    assert response.json()["message"] == "Contact deleted successfully"

    db_session.expire_all()
    assert db_session.get(CRMDeal, deal["id"]).contact_id is None
    assert db_session.get(CRMActivity, activity["id"]).contact_id is None
    assert db_session.get(CRMLead, lead["id"]).converted_contact_id is None
    assert db_session.get(CRMLead, lead["id"]).status == "converted"
