from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import DEFAULT_STAGES, seed_default_stages, seed_defaults
from app.crm.models import CRMPipelineStage, CRMUser, utcnow
from app.crm.service import ActorUser, outcome_for_stage_name, stage_transition_values
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
    seed_default_stages(db_session)
    db_session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="user_1", correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_seed_defaults_is_idempotent(db_session: Session) -> None:
    seed_defaults(db_session)
    seed_defaults(db_session)

    stages = db_session.scalars(select(CRMPipelineStage).order_by(CRMPipelineStage.position)).all()
    assert [stage.name for stage in stages] == [entry[1] for entry in DEFAULT_STAGES]
    assert [stage.outcome for stage in stages][-2:] == ["won", "lost"]
    assert db_session.get(CRMUser, get_settings().default_user_id) is not None


def test_list_stages_returns_seeded_pipeline_in_order(client: TestClient) -> None:
    response = client.get("/api/pipeline/stages")
    assert response.status_code == 200
    stages = response.json()
    assert [stage["id"] for stage in stages] == [f"stage_{index}" for index in range(1, 7)]
    assert [stage["probability"] for stage in stages] == [10, 25, 50, 75, 100, 0]
    assert stages[4]["outcome"] == "won"
    assert stages[5]["outcome"] == "lost"


def test_create_stage_appends_with_defaults(client: TestClient) -> None:
    response = client.post("/api/pipeline/stages", json={"name": "Discovery"})
    assert response.status_code == 201
    stage = response.json()
    assert stage["id"].startswith("stage_")
    assert stage["position"] == 7
    assert stage["color"] == "#6366f1"
    assert stage["probability"] == 0
    assert stage["outcome"] == "open"

    named_terminal = client.post("/api/pipeline/stages", json={"name": "Closed Won", "probability": 100}).json()
    assert named_terminal["outcome"] == "won"
    assert named_terminal["position"] == 8


def test_create_stage_requires_name(client: TestClient) -> None:
    assert client.post("/api/pipeline/stages", json={"color": "#000000"}).status_code == 400
    assert client.post("/api/pipeline/stages", json={"name": "   "}).status_code == 400


def test_update_stage(client: TestClient) -> None:
    response = client.put("/api/pipeline/stages/stage_2", json={"name": "Discovery", "probability": 30})
    assert response.status_code == 200
    stage = response.json()
    assert stage["name"] == "Discovery"
    assert stage["probability"] == 30
    assert stage["position"] == 2
    assert stage["row_version"] == 2

    missing = client.put("/api/pipeline/stages/stage_missing", json={"name": "Nope"})
    assert missing.status_code == 404
    assert missing.json()["message"] == "Stage not found"


def test_reorder_stages_assigns_positions_from_one(client: TestClient) -> None:
    order = ["stage_6", "stage_5", "stage_4", "stage_3", "stage_2", "stage_1"]
    response = client.post("/api/pipeline/stages/reorder", json={"stageIds": order})
    assert response.status_code == 200
    stages = response.json()
    assert [stage["id"] for stage in stages] == order
    assert [stage["position"] for stage in stages] == [1, 2, 3, 4, 5, 6]

    listed = client.get("/api/pipeline/stages").json()
    assert [stage["id"] for stage in listed] == order

    reorder_events = [item for item in events.published_events if item["event_type"] == "crm.stage.reordered"]
    assert reorder_events[-1]["payload"]["stage_ids"] == order


def test_reorder_stages_requires_array(client: TestClient) -> None:
    response = client.post("/api/pipeline/stages/reorder", json={"stageIds": "stage_1"})
    assert response.status_code == 400
    assert "stageIds must be an array" in response.json()["message"]


def test_delete_stage_guarded_by_deals(client: TestClient) -> None:
    deal = client.post("/api/deals", json={"name": "Guarded", "value": 10, "stage_id": "stage_2"}).json()

    blocked = client.delete("/api/pipeline/stages/stage_2")
    assert blocked.status_code == 400
    assert blocked.json()["message"] == "Cannot delete stage with 1 deals. Move or delete deals first."

    client.patch(f"/api/deals/{deal['id']}/stage", json={"stage_id": "stage_3"})
    allowed = client.delete("/api/pipeline/stages/stage_2")
    assert allowed.status_code == 200
    assert allowed.json()["message"] == "Stage deleted successfully"

    assert "stage_2" not in [stage["id"] for stage in client.get("/api/pipeline/stages").json()]
    assert client.delete("/api/pipeline/stages/stage_2").status_code == 404


def test_stage_outcome_helpers() -> None:
    assert outcome_for_stage_name("Closed Won") == "won"
    assert outcome_for_stage_name("Closed Lost") == "lost"
    assert outcome_for_stage_name("closed won") == "open"

    now = utcnow()
    assert stage_transition_values(None, now) == {"status": "open", "actual_close_date": None, "probability": 0}
    won = CRMPipelineStage(name="Closed Won", position=5, probability=100, outcome="won")
    assert stage_transition_values(won, now) == {"status": "won", "actual_close_date": now, "probability": 100}
    open_stage = CRMPipelineStage(name="Proposal", position=3, probability=50, outcome="open")
    assert stage_transition_values(open_stage, now) == {"status": "open", "actual_close_date": None, "probability": 50}
