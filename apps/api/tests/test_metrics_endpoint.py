from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def metrics_roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, metrics_roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={
                "crm.pipelines.manage",
                "crm.scoring.manage",
                "crm.leads.read",
                "crm.leads.write",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=metrics_roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_pipeline_with_stages(client: TestClient) -> dict[str, str]:
    pipeline = client.post("/api/crm/pipelines", json={"module": "leads", "name": "Metrics Pipeline"})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    stages = {}
    for payload in ({"name": "New"}, {"name": "Qualified"}, {"name": "Converted", "is_won": True}):
        stage = client.post("/api/crm/stages", json={"pipeline_id": pipeline_id, **payload})
        assert stage.status_code == 201
        stages[payload["name"]] = stage.json()["id"]
    return stages


def test_metrics_endpoint_exposes_http_transition_and_job_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    stages = _create_pipeline_with_stages(client)
    lead = client.post("/api/crm/records/leads", json={"first_name": "Metrics"})
    assert lead.status_code == 201

    moved = client.post(
        f"/api/crm/records/leads/{lead.json()['record']['id']}/stage",
        json={"stage_id": stages["Qualified"]},
    )
    assert moved.status_code == 200

    template = client.post("/api/crm/scoring-templates", json={"name": "Fit", "module": "leads", "is_default": True})
    job = client.post(f"/api/crm/scoring-templates/{template.json()['id']}/rescore-all?sync=true")
    assert job.status_code == 202

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_stage_transitions_total" in body
    assert "crm_jobs_total" in body
    assert "crm_job_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/records/{module}/{id}/stage"' in body
    assert 'outcome="succeeded"' in body
    assert 'job_type="RESCORE_ALL"' in body


def test_metrics_require_role(client: TestClient, metrics_roles: list[str]) -> None:
    metrics_roles.clear()

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_disabled_is_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
