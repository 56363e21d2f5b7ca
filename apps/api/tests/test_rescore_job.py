from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.crm.service as crm_service
from app.core.config import get_settings
from app.core.database import Base
from app.crm.errors import ConflictError
from app.crm.models import CRMLead, utcnow
from app.crm.repositories import JobRepository
from app.crm.rules import evaluate_template
from app.crm.schemas import (
    LeadCreate,
    PipelineCreate,
    PriorityCreate,
    ScoringRuleCreate,
    ScoringTemplateCreate,
    StageChangeRequest,
    StageCreate,
)
from app.crm.service import (
    ActorUser,
    PipelineService,
    PriorityService,
    RecordService,
    RescoreJobRunner,
    RescoreJobService,
    ScoringService,
    StageGraphService,
    TransitionService,
)


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
def setup_env(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> Generator[None, None, None]:
    monkeypatch.setenv("RESCORE_PAGE_SIZE", "2")
    caplog.set_level(logging.INFO)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id=str(uuid.uuid4()), correlation_id="rescore-corr-1")


@pytest.fixture()
def seeded(db_session: Session, actor: ActorUser) -> dict[str, uuid.UUID]:
    pipeline = PipelineService().create_pipeline(db_session, actor, PipelineCreate(module="leads", name="Leads"))
    graph = StageGraphService()
    graph.create_stage(db_session, actor, StageCreate(pipeline_id=pipeline.id, name="New"))
    converted = graph.create_stage(db_session, actor, StageCreate(pipeline_id=pipeline.id, name="Converted", is_won=True))

    priorities = PriorityService()
    hot = priorities.create_priority(db_session, actor, PriorityCreate(module="leads", name="Hot", score_min=30, score_max=100))
    cold = priorities.create_priority(
        db_session, actor, PriorityCreate(module="leads", name="Cold", score_min=0, score_max=29, is_default=True)
    )
    template = ScoringService().create_template(
        db_session, actor, ScoringTemplateCreate(name="Fit", module="leads", is_default=True)
    )

    records = RecordService()
    ids = {}
    for name, email, budget in (
        ("a", "a@example.com", 5000),
        ("b", None, 20000),
        ("c", "c@example.com", None),
        ("d", None, None),
        ("e", "e@example.com", 50000),
    ):
        created = records.create_lead(
            db_session,
            actor,
            LeadCreate(first_name=name, email=email, qualification={"budget": budget} if budget else {}),
        )
        ids[name] = created.record.id

    terminal = records.create_lead(db_session, actor, LeadCreate(first_name="closed", email="z@example.com"))
    TransitionService().change_stage(db_session, actor, "leads", terminal.record.id, StageChangeRequest(stage_id=converted.id))
    ids["closed"] = terminal.record.id

    # rules added after intake leave stored scores stale
    scoring = ScoringService()
    scoring.add_rule(
        db_session,
        actor,
        template.id,
        ScoringRuleCreate(name="Has email", field_key="email", operator="is_not_empty", score_delta=10),
    )
    scoring.add_rule(
        db_session,
        actor,
        template.id,
        ScoringRuleCreate(name="Budget", field_key="qualification.budget", operator="greater_than", value=10000, score_delta=30),
    )
    return {**ids, "template": template.id, "hot": hot.id, "cold": cold.id}


def _lead(session: Session, lead_id: uuid.UUID) -> CRMLead:
    session.expire_all()
    return session.scalar(select(CRMLead).where(CRMLead.id == lead_id))


def test_rescore_updates_open_records_in_pages(db_session: Session, actor: ActorUser, seeded: dict[str, uuid.UUID]) -> None:
    job = RescoreJobService().create_job(db_session, actor, seeded["template"])
    assert json.loads(job.params_json)["page_size"] == 2

    finished = RescoreJobRunner().run_rescore_job(db_session, job.id)

    assert finished.status == "Succeeded"
    result = json.loads(finished.result_json)
    assert result["processed_count"] == 5
    assert result["updated_count"] == 4
    assert result["unchanged_count"] == 1
    assert result["skipped_count"] == 0

    assert _lead(db_session, seeded["a"]).score == 10
    assert _lead(db_session, seeded["b"]).score == 30
    assert _lead(db_session, seeded["d"]).score == 0
    e = _lead(db_session, seeded["e"])
    assert e.score == 40
    assert e.score_breakdown == {"Has email": 10, "Budget": 30}
    assert e.priority_id == seeded["hot"]
    assert e.row_version == 1
    assert _lead(db_session, seeded["closed"]).score == 0


def test_second_run_changes_nothing(db_session: Session, actor: ActorUser, seeded: dict[str, uuid.UUID]) -> None:
    runner = RescoreJobRunner()
    jobs = RescoreJobService()
    runner.run_rescore_job(db_session, jobs.create_job(db_session, actor, seeded["template"]).id)
    scores = {key: _lead(db_session, seeded[key]).score for key in ("a", "b", "c", "d", "e")}

    again = runner.run_rescore_job(db_session, jobs.create_job(db_session, actor, seeded["template"]).id)

    result = json.loads(again.result_json)
    assert result["updated_count"] == 0
    assert result["unchanged_count"] == 5
    assert {key: _lead(db_session, seeded[key]).score for key in scores} == scores


def test_failing_record_is_skipped_and_job_partially_succeeds(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def flaky(max_score, rules, source, **kwargs):
        if source.system.get("first_name") == "c":
            raise ValueError("corrupt record")
        return evaluate_template(max_score, rules, source, **kwargs)

    monkeypatch.setattr(crm_service, "evaluate_template", flaky)
    caplog.set_level(logging.INFO, logger="app.crm.jobs")

    job = RescoreJobService().create_job(db_session, actor, seeded["template"])
    finished = RescoreJobRunner().run_rescore_job(db_session, job.id)

    assert finished.status == "PartiallySucceeded"
    result = json.loads(finished.result_json)
    assert result["processed_count"] == 5
    assert result["skipped_count"] == 1
    assert _lead(db_session, seeded["c"]).score == 0
    assert _lead(db_session, seeded["a"]).score == 10
    assert any(
        record.getMessage() == "rescore.record_skipped" and getattr(record, "record_id", None) == str(seeded["c"])
        for record in caplog.records
    )
    assert any(
        record.getMessage() == "job.finished"
        and getattr(record, "status", None) == "PartiallySucceeded"
        and getattr(record, "skipped_count", None) == 1
        for record in caplog.records
    )
    assert finished.correlation_id == "rescore-corr-1"


def test_cancelled_job_stops_and_resumes_from_cursor(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
) -> None:
    jobs = RescoreJobService()
    runner = RescoreJobRunner()
    job = jobs.create_job(db_session, actor, seeded["template"])
    jobs.request_cancel(db_session, actor, job.id)

    cancelled = runner.run_rescore_job(db_session, job.id)
    assert cancelled.status == "Cancelled"
    assert json.loads(cancelled.result_json)["processed_count"] == 0

    with pytest.raises(ConflictError):
        jobs.request_cancel(db_session, actor, job.id)

    jobs.prepare_resume(db_session, job.id)
    resumed = runner.run_rescore_job(db_session, job.id)

    assert resumed.status == "Succeeded"
    assert json.loads(resumed.result_json)["processed_count"] == 5


def test_resume_continues_after_stored_cursor(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
) -> None:
    jobs = RescoreJobService()
    job = jobs.create_job(db_session, actor, seeded["template"])
    open_ids = sorted(seeded[key] for key in ("a", "b", "c", "d", "e"))
    job.status = "Failed"
    job.result_json = json.dumps({"processed_count": 2, "updated_count": 2, "cursor": str(open_ids[1])})
    db_session.commit()

    jobs.prepare_resume(db_session, job.id)
    resumed = RescoreJobRunner().run_rescore_job(db_session, job.id)

    result = json.loads(resumed.result_json)
    assert resumed.status == "Succeeded"
    assert result["processed_count"] == 5
    assert result["cursor"] == str(open_ids[-1])
    assert all(_lead(db_session, lead_id).score == 0 for lead_id in open_ids[:2])


def test_finished_job_is_not_rerun(db_session: Session, actor: ActorUser, seeded: dict[str, uuid.UUID]) -> None:
    jobs = RescoreJobService()
    runner = RescoreJobRunner()
    job = runner.run_rescore_job(db_session, jobs.create_job(db_session, actor, seeded["template"]).id)

    assert runner.run_rescore_job(db_session, job.id).finished_at == job.finished_at
    with pytest.raises(ConflictError):
        jobs.prepare_resume(db_session, job.id)


def _mark_running(session: Session, job_id: uuid.UUID, *, cursor: str | None, heartbeat_age: timedelta | None) -> None:
    job = RescoreJobService().get_job(session, job_id)
    job.status = "Running"
    job.run_attempt = 1
    job.started_at = utcnow() - timedelta(hours=1)
    job.heartbeat_at = utcnow() - heartbeat_age if heartbeat_age is not None else None
    job.result_json = json.dumps({"processed_count": 2, "updated_count": 2, "cursor": cursor})
    session.commit()


def test_redelivered_job_left_running_resumes_from_cursor(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
) -> None:
    job = RescoreJobService().create_job(db_session, actor, seeded["template"])
    open_ids = sorted(seeded[key] for key in ("a", "b", "c", "d", "e"))
    _mark_running(db_session, job.id, cursor=str(open_ids[1]), heartbeat_age=timedelta(hours=1))

    resumed = RescoreJobRunner().run_rescore_job(db_session, job.id)

    result = json.loads(resumed.result_json)
    assert resumed.status == "Succeeded"
    assert resumed.run_attempt == 2
    assert result["processed_count"] == 5
    assert result["cursor"] == str(open_ids[-1])
    assert all(_lead(db_session, lead_id).score == 0 for lead_id in open_ids[:2])


def test_stale_running_job_can_be_resumed_explicitly(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
) -> None:
    jobs = RescoreJobService()
    job = jobs.create_job(db_session, actor, seeded["template"])
    open_ids = sorted(seeded[key] for key in ("a", "b", "c", "d", "e"))
    _mark_running(db_session, job.id, cursor=str(open_ids[2]), heartbeat_age=None)

    assert jobs.prepare_resume(db_session, job.id).status == "Queued"
    resumed = RescoreJobRunner().run_rescore_job(db_session, job.id)

    assert resumed.status == "Succeeded"
    assert json.loads(resumed.result_json)["processed_count"] == 4


def test_job_with_live_run_is_not_started_again(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
    caplog: pytest.LogCaptureFixture,
) -> None:
    jobs = RescoreJobService()
    job = jobs.create_job(db_session, actor, seeded["template"])
    attempt = JobRepository().claim(db_session, job.id, jobs.resumable_statuses, stale_before=jobs.stale_before())
    assert attempt == 1

    second = RescoreJobRunner().run_rescore_job(db_session, job.id)

    assert second.status == "Running"
    assert second.run_attempt == 1
    assert second.result_json is None
    assert _lead(db_session, seeded["e"]).score == 0
    assert any(
        record.getMessage() == "job.claim_skipped" and getattr(record, "job_id", None) == str(job.id)
        for record in caplog.records
    )
    with pytest.raises(ConflictError):
        jobs.prepare_resume(db_session, job.id)


def test_claim_is_exclusive_and_supersedes_abandoned_run(
    db_session: Session,
    actor: ActorUser,
    seeded: dict[str, uuid.UUID],
) -> None:
    jobs = RescoreJobService()
    repository = JobRepository()
    job = jobs.create_job(db_session, actor, seeded["template"])

    first = repository.claim(db_session, job.id, jobs.resumable_statuses, stale_before=jobs.stale_before())
    assert first == 1
    assert repository.claim(db_session, job.id, jobs.resumable_statuses, stale_before=jobs.stale_before()) is None

    later = utcnow() + timedelta(seconds=get_settings().job_stale_after_seconds + 1)
    second = repository.claim(db_session, job.id, jobs.resumable_statuses, stale_before=later)
    assert second == 2

    assert repository.save_run_state(db_session, job.id, first, {"result_json": "{}"}) is False
    assert repository.save_run_state(db_session, job.id, second, {"result_json": "{}"}) is True
    db_session.commit()
    assert jobs.get_job(db_session, job.id).result_json == "{}"
