from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app


ALL_PERMISSIONS = {
    "crm.pipelines.read",
    "crm.pipelines.manage",
    "crm.scoring.manage",
    "crm.priorities.manage",
    "crm.routing.manage",
    "crm.settings.manage",
    "crm.leads.read",
    "crm.leads.write",
    "crm.opportunities.read",
    "crm.opportunities.write",
    "crm.jobs.read",
    "crm.audit.read",
}
NEW_OWNER = "00000000-0000-0000-0000-0000000000bb"


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
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _setup_lead_pipeline(client: TestClient) -> dict[str, str]:
    pipeline = client.post("/api/crm/pipelines", json={"module": "leads", "name": "Leads"})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    stages = {}
    for payload in (
        {"name": "New"},
        {"name": "Qualified"},
        {"name": "Converted", "is_won": True},
        {"name": "Disqualified", "is_lost": True},
    ):
        response = client.post("/api/crm/stages", json={"pipeline_id": pipeline_id, **payload})
        assert response.status_code == 201
        stages[payload["name"]] = response.json()["id"]

    fields = client.put(
        f"/api/crm/stages/{stages['Qualified']}/fields",
        json={"fields": [{"field_key": "email", "field_label": "Email"}]},
    )
    assert fields.status_code == 200
    return stages


def _setup_scoring(client: TestClient) -> str:
    template = client.post(
        "/api/crm/scoring-templates",
        json={"name": "Lead fit", "module": "leads", "max_score": 100, "is_default": True},
    )
    assert template.status_code == 201
    template_id = template.json()["id"]
    for payload in (
        {"name": "Has email", "field_key": "email", "operator": "is_not_empty", "score_delta": 20},
        {"name": "Referral", "field_key": "source", "operator": "equals", "value": "Referral", "score_delta": 50},
    ):
        rule = client.post(f"/api/crm/scoring-templates/{template_id}/rules", json=payload)
        assert rule.status_code == 201
    return template_id


def test_lead_lifecycle_over_http(client: TestClient) -> None:
    stages = _setup_lead_pipeline(client)
    _setup_scoring(client)

    created = client.post("/api/crm/records/leads", json={"first_name": "Ada", "source": "Referral"})
    assert created.status_code == 201
    body = created.json()
    lead_id = body["record"]["id"]
    assert body["record"]["stage_id"] == stages["New"]
    assert body["record"]["score"] == 50
    assert body["score"]["breakdown"] == {"Referral": 50}

    blocked = client.post(f"/api/crm/records/leads/{lead_id}/stage", json={"stage_id": stages["Qualified"]})
    assert blocked.status_code == 400
    assert blocked.json()["code"] == "missing_required_fields"
    assert blocked.json()["details"] == [{"field_key": "email", "field_label": "Email"}]

    moved = client.post(
        f"/api/crm/records/leads/{lead_id}/stage",
        json={"stage_id": stages["Qualified"], "fields": {"email": "ada@example.com"}, "row_version": 1},
    )
    assert moved.status_code == 200
    assert moved.json()["record"]["score"] == 70
    assert moved.json()["record"]["row_version"] == 2

    fetched = client.get(f"/api/crm/records/leads/{lead_id}")
    assert fetched.status_code == 200
    assert fetched.json()["email"] == "ada@example.com"

    history = client.get(f"/api/crm/records/leads/{lead_id}/stage-history")
    assert history.status_code == 200
    assert len(history.json()) == 2

    converted = client.post(f"/api/crm/records/leads/{lead_id}/stage", json={"stage_id": stages["Converted"]})
    assert converted.status_code == 200
    assert converted.json()["record"]["converted_at"] is not None

    frozen = client.post(f"/api/crm/records/leads/{lead_id}/stage", json={"stage_id": stages["New"]})
    assert frozen.status_code == 409
    assert frozen.json()["code"] == "record_read_only"

    event_types = [item["event_type"] for item in events.published_events]
    assert "crm.lead.created" in event_types
    assert "crm.lead.converted" in event_types


def test_patch_rescores_and_hands_off_owner(client: TestClient) -> None:
    _setup_lead_pipeline(client)
    _setup_scoring(client)
    lead = client.post("/api/crm/records/leads", json={"first_name": "Grace"}).json()["record"]

    updated = client.patch(
        f"/api/crm/records/leads/{lead['id']}",
        json={"row_version": lead["row_version"], "fields": {"email": "grace@example.com"}, "owner_user_id": NEW_OWNER},
    )
    assert updated.status_code == 200
    assert updated.json()["record"]["score"] == 20
    assert updated.json()["record"]["owner_user_id"] == NEW_OWNER

    stale = client.patch(
        f"/api/crm/records/leads/{lead['id']}",
        json={"row_version": lead["row_version"], "fields": {"company": "Navy"}},
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "conflict"

    team = client.get(f"/api/crm/records/leads/{lead['id']}/team")
    assert team.status_code == 200
    assert [item["role_name"] for item in team.json()] == ["Lead Generator"]


def test_unlock_reason_error_and_audit_trail(client: TestClient) -> None:
    stages = _setup_lead_pipeline(client)
    settings = client.put(
        "/api/crm/settings/leads/stages",
        json={"lockPreviousStages": True, "requireUnlockReason": True},
    )
    assert settings.status_code == 200
    lead = client.post("/api/crm/records/leads", json={"first_name": "Alan", "email": "alan@example.com"}).json()
    lead_id = lead["record"]["id"]
    assert client.post(f"/api/crm/records/leads/{lead_id}/stage", json={"stage_id": stages["Qualified"]}).status_code == 200

    rejected = client.post(f"/api/crm/records/leads/{lead_id}/stage", json={"stage_id": stages["New"]})
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "unlock_reason_required"

    accepted = client.post(
        f"/api/crm/records/leads/{lead_id}/stage",
        json={"stage_id": stages["New"], "unlock_reason": "budget reopened"},
        headers={"X-Correlation-Id": "unlock-1"},
    )
    assert accepted.status_code == 200

    audit = client.get("/api/crm/audit", params={"entity_id": lead_id})
    assert audit.status_code == 200
    backward = [item for item in audit.json() if item["action"] == "change_stage_backward"]
    assert backward
    assert backward[0]["reason"] == "budget reopened"
    assert backward[0]["correlation_id"] == "unlock-1"


def test_settings_merge_is_shallow(client: TestClient) -> None:
    first = client.put("/api/crm/settings/leads/general", json={"autoScoring": False, "customFlag": "x"})
    assert first.status_code == 200

    second = client.put("/api/crm/settings/leads/general", json={"autoPriorityFromScore": False})
    assert second.json() == {"autoScoring": False, "customFlag": "x", "autoPriorityFromScore": False}

    listed = client.get("/api/crm/settings/leads")
    assert listed.json()["general"]["customFlag"] == "x"

    invalid = client.put("/api/crm/settings/leads/ownership", json={"previousOwnerAccess": "admin"})
    assert invalid.status_code == 400


def test_auto_scoring_off_leaves_score_at_zero(client: TestClient) -> None:
    _setup_lead_pipeline(client)
    _setup_scoring(client)
    client.put("/api/crm/settings/leads/general", json={"autoScoring": False})

    created = client.post("/api/crm/records/leads", json={"first_name": "Off", "source": "Referral"})

    assert created.json()["record"]["score"] == 0


def test_score_preview_and_rescore_all(client: TestClient) -> None:
    _setup_lead_pipeline(client)
    client.put("/api/crm/settings/leads/general", json={"autoScoring": False})
    lead = client.post("/api/crm/records/leads", json={"first_name": "Late", "source": "Referral"}).json()["record"]
    template_id = _setup_scoring(client)

    preview = client.get(f"/api/crm/records/leads/{lead['id']}/score")
    assert preview.status_code == 200
    assert preview.json()["total"] == 50
    assert client.get(f"/api/crm/records/leads/{lead['id']}").json()["score"] == 0

    job = client.post(f"/api/crm/scoring-templates/{template_id}/rescore-all?sync=true")
    assert job.status_code == 202
    assert job.json()["status"] == "Succeeded"
    assert job.json()["result"]["updated_count"] == 1

    status_response = client.get(f"/api/crm/jobs/{job.json()['id']}")
    assert status_response.status_code == 200
    assert status_response.json()["job_type"] == "RESCORE_ALL"
    assert client.get(f"/api/crm/records/leads/{lead['id']}").json()["score"] == 50

    resume = client.post(f"/api/crm/jobs/{job.json()['id']}/resume?sync=true")
    assert resume.status_code == 409


def test_unknown_record_is_not_found(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/opportunities/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_invalid_rule_value_is_rejected(client: TestClient) -> None:
    template = client.post("/api/crm/scoring-templates", json={"name": "T", "module": "leads"}).json()

    response = client.post(
        f"/api/crm/scoring-templates/{template['id']}/rules",
        json={"name": "Bad", "field_key": "amount", "operator": "greater_than", "value": "lots", "score_delta": 5},
    )

    assert response.status_code == 422


def test_rescore_all_is_queued_without_sync(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from app.crm import tasks

    queued: list[str] = []
    monkeypatch.setattr(tasks.rescore_all, "delay", lambda job_id: queued.append(job_id))
    template_id = _setup_scoring(client)

    response = client.post(f"/api/crm/scoring-templates/{template_id}/rescore-all")

    assert response.status_code == 202
    assert response.json()["status"] == "Queued"
    assert queued == [response.json()["id"]]


def test_rejected_priority_update_leaves_priority_unchanged(client: TestClient) -> None:
    created = client.post(
        "/api/crm/priorities",
        json={"module": "leads", "name": "Cold", "score_min": 0, "score_max": 49, "is_default": True},
    )
    assert created.status_code == 201
    priority_id = created.json()["id"]

    inverted = client.put(f"/api/crm/priorities/{priority_id}", json={"name": "Frozen", "score_min": 60})
    assert inverted.status_code == 400
    assert inverted.json()["code"] == "validation_error"

    renamed = client.put(f"/api/crm/priorities/{priority_id}", json={"color": "#111111"})
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Cold"
    assert renamed.json()["score_min"] == 0
    assert renamed.json()["score_max"] == 49
