from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


ALL_PERMISSIONS = {
    "crm.pipelines.manage",
    "crm.scoring.manage",
    "crm.leads.read",
    "crm.leads.write",
}


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
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


def _create_pipeline_with_stages(client: TestClient) -> dict[str, str]:
    pipeline = client.post("/api/crm/pipelines", json={"module": "leads", "name": "Default"})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    stages = {}
    for payload in ({"name": "New"}, {"name": "Qualified"}, {"name": "Converted", "is_won": True}):
        stage = client.post("/api/crm/stages", json={"pipeline_id": pipeline_id, **payload})
        assert stage.status_code == 201
        stages[payload["name"]] = stage.json()["id"]
    return stages


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/records/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/records/{module}/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_transition_logs_carry_record_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    stages = _create_pipeline_with_stages(client)
    lead = client.post("/api/crm/records/leads", json={"first_name": "Logged"}).json()["record"]

    response = client.post(
        f"/api/crm/records/leads/{lead['id']}/stage",
        json={"stage_id": stages["Qualified"]},
        headers={"X-Correlation-Id": "transition-corr-1"},
    )
    assert response.status_code == 200

    engine_records = [record for record in caplog.records if record.name == "app.crm.engine"]
    assert any(
        record.getMessage() == "transition.completed"
        and getattr(record, "record_id", None) == lead["id"]
        and getattr(record, "to_stage_id", None) == stages["Qualified"]
        and getattr(record, "correlation_id", None) == "transition-corr-1"
        for record in engine_records
    )


def test_job_logs_carry_job_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    _create_pipeline_with_stages(client)
    template = client.post("/api/crm/scoring-templates", json={"name": "Fit", "module": "leads", "is_default": True})

    job = client.post(
        f"/api/crm/scoring-templates/{template.json()['id']}/rescore-all?sync=true",
        headers={"X-Correlation-Id": "job-corr-1"},
    )
    assert job.status_code == 202

    job_records = [record for record in caplog.records if record.name == "app.crm.jobs"]
    assert any(
        getattr(record, "job_id", None) == job.json()["id"]
        and getattr(record, "job_type", None) == "RESCORE_ALL"
        and getattr(record, "correlation_id", None) == "job-corr-1"
        and record.getMessage() in {"job.started", "job.finished"}
        for record in job_records
    )


def test_json_formatter_keeps_only_known_fields() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm.engine",
            "levelname": "INFO",
            "msg": "transition.completed",
            "correlation_id": "fmt-1",
            "record_id": "r-1",
            "email": "secret@example.com",
        }
    )

    rendered = JsonLogFormatter().format(record)

    assert '"correlation_id": "fmt-1"' in rendered
    assert '"record_id": "r-1"' in rendered
    assert "secret@example.com" not in rendered
