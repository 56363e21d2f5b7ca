from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.crm.errors import ConflictError, NotFoundError, ValidationError
from app.crm.fields import FieldSource
from app.crm.schemas import (
    LeadCreate,
    PipelineCreate,
    StageCreate,
    StageFieldRequirementInput,
    StageFieldsReplace,
    StageReorderRequest,
    StageUpdate,
)
from app.crm.service import ActorUser, FieldRequirementGate, PipelineService, RecordService, StageGraphService


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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id=str(uuid.uuid4()), correlation_id="stage-graph-test")


def _seed_pipeline(session: Session, actor: ActorUser) -> tuple[uuid.UUID, dict[str, uuid.UUID]]:
    pipeline = PipelineService().create_pipeline(session, actor, PipelineCreate(module="leads", name="Sales"))
    graph = StageGraphService()
    stages: dict[str, uuid.UUID] = {}
    for payload in (
        {"name": "New", "is_system": True},
        {"name": "Contacted"},
        {"name": "Qualified"},
        {"name": "Converted", "is_won": True},
        {"name": "Disqualified", "is_lost": True},
    ):
        stage = graph.create_stage(session, actor, StageCreate(pipeline_id=pipeline.id, **payload))
        stages[stage.name] = stage.id
    return pipeline.id, stages


def test_stages_are_listed_in_sort_order(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, _ = _seed_pipeline(db_session, actor)

    stages = StageGraphService().list_stages(db_session, pipeline_id)

    assert [stage.name for stage in stages] == ["New", "Contacted", "Qualified", "Converted", "Disqualified"]
    assert [stage.sort_order for stage in stages] == [1, 2, 3, 4, 5]
    assert stages[0].slug == "new"


def test_backward_is_decided_by_position(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, stages = _seed_pipeline(db_session, actor)
    graph = StageGraphService()

    assert graph.is_backward(db_session, pipeline_id, "leads", stages["Qualified"], stages["New"])
    assert not graph.is_backward(db_session, pipeline_id, "leads", stages["New"], stages["Qualified"])
    assert not graph.is_backward(db_session, pipeline_id, "leads", stages["Contacted"], stages["Disqualified"])


def test_stage_outside_pipeline_is_not_found(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, stages = _seed_pipeline(db_session, actor)

    with pytest.raises(NotFoundError):
        StageGraphService().is_backward(db_session, pipeline_id, "leads", stages["New"], uuid.uuid4())


def test_reorder_changes_backward_classification(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, stages = _seed_pipeline(db_session, actor)
    graph = StageGraphService()
    order = [stages[name] for name in ("Qualified", "New", "Contacted", "Converted", "Disqualified")]

    reordered = graph.reorder(db_session, actor, StageReorderRequest(ordered_ids=order))

    assert [stage.name for stage in reordered] == ["Qualified", "New", "Contacted", "Converted", "Disqualified"]
    assert [stage.sort_order for stage in reordered] == [1, 2, 3, 4, 5]
    assert graph.is_backward(db_session, pipeline_id, "leads", stages["New"], stages["Qualified"])


def test_reorder_requires_every_stage(db_session: Session, actor: ActorUser) -> None:
    _, stages = _seed_pipeline(db_session, actor)

    with pytest.raises(ValidationError):
        StageGraphService().reorder(db_session, actor, StageReorderRequest(ordered_ids=[stages["New"], stages["Qualified"]]))


def test_duplicate_stage_name_is_rejected(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, _ = _seed_pipeline(db_session, actor)

    with pytest.raises(ValidationError):
        StageGraphService().create_stage(db_session, actor, StageCreate(pipeline_id=pipeline_id, name="qualified"))


def test_pipeline_allows_one_won_stage(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, stages = _seed_pipeline(db_session, actor)
    graph = StageGraphService()

    with pytest.raises(ValidationError):
        graph.create_stage(db_session, actor, StageCreate(pipeline_id=pipeline_id, name="Won Again", is_won=True))
    with pytest.raises(ValidationError):
        graph.update_stage(db_session, actor, stages["Qualified"], StageUpdate(is_lost=True))

    assert len(graph.list_stages(db_session, pipeline_id)) == 5


def test_system_stage_cannot_be_deleted(db_session: Session, actor: ActorUser) -> None:
    _, stages = _seed_pipeline(db_session, actor)

    with pytest.raises(ConflictError):
        StageGraphService().delete_stage(db_session, actor, stages["New"])


def test_stage_holding_records_cannot_be_deleted(db_session: Session, actor: ActorUser) -> None:
    _, stages = _seed_pipeline(db_session, actor)
    RecordService().create_lead(db_session, actor, LeadCreate(first_name="Ada", stage_id=stages["Contacted"]))

    with pytest.raises(ConflictError):
        StageGraphService().delete_stage(db_session, actor, stages["Contacted"])


def test_deleting_a_stage_closes_the_gap(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, stages = _seed_pipeline(db_session, actor)
    graph = StageGraphService()

    graph.delete_stage(db_session, actor, stages["Contacted"])

    remaining = graph.list_stages(db_session, pipeline_id)
    assert [stage.name for stage in remaining] == ["New", "Qualified", "Converted", "Disqualified"]
    assert [stage.sort_order for stage in remaining] == [1, 2, 3, 4]


def test_default_pipeline_cannot_be_deleted(db_session: Session, actor: ActorUser) -> None:
    pipeline_id, _ = _seed_pipeline(db_session, actor)

    with pytest.raises(ConflictError):
        PipelineService().delete_pipeline(db_session, actor, pipeline_id)


def test_gate_reports_blank_required_fields_in_display_order(db_session: Session, actor: ActorUser) -> None:
    _, stages = _seed_pipeline(db_session, actor)
    gate = FieldRequirementGate()
    gate.replace_requirements(
        db_session,
        actor,
        stages["Qualified"],
        StageFieldsReplace(
            fields=[
                StageFieldRequirementInput(field_key="email", field_label="Email"),
                StageFieldRequirementInput(field_key="qualification.budget", field_label="Budget"),
                StageFieldRequirementInput(field_key="phone||custom.mobile", field_label="Phone"),
                StageFieldRequirementInput(field_key="company", is_required=False),
            ]
        ),
    )

    empty = gate.missing_required_fields(db_session, stages["Qualified"], FieldSource(system={"email": "  "}))
    assert [item.field_key for item in empty] == ["email", "qualification.budget", "phone||custom.mobile"]

    filled = FieldSource(
        system={"email": "ada@example.com"},
        qualification={"budget": 0},
        custom={"mobile": "+49 30 1234"},
    )
    assert gate.missing_required_fields(db_session, stages["Qualified"], filled) == []


def test_requirement_labels_default_to_key(db_session: Session, actor: ActorUser) -> None:
    _, stages = _seed_pipeline(db_session, actor)

    listed = FieldRequirementGate().replace_requirements(
        db_session,
        actor,
        stages["Contacted"],
        StageFieldsReplace(fields=[StageFieldRequirementInput(field_key="qualification.timeline")]),
    )

    assert listed[0].field_label == "qualification.timeline"
    assert listed[0].display_order == 0


def test_duplicate_requirement_keys_are_rejected(db_session: Session, actor: ActorUser) -> None:
    _, stages = _seed_pipeline(db_session, actor)

    with pytest.raises(ValidationError):
        FieldRequirementGate().replace_requirements(
            db_session,
            actor,
            stages["Contacted"],
            StageFieldsReplace(
                fields=[StageFieldRequirementInput(field_key="email"), StageFieldRequirementInput(field_key="email")]
            ),
        )


def test_gate_fails_open_when_requirements_cannot_be_loaded(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _, stages = _seed_pipeline(db_session, actor)
    gate = FieldRequirementGate()
    gate.replace_requirements(
        db_session,
        actor,
        stages["Qualified"],
        StageFieldsReplace(fields=[StageFieldRequirementInput(field_key="email")]),
    )

    def broken(session: Session, stage_id: uuid.UUID):
        raise OperationalError("SELECT crm_stage_field_requirements", {}, Exception("database unavailable"))

    monkeypatch.setattr(gate, "requirements_for", broken)
    caplog.set_level(logging.WARNING, logger="app.crm.engine")

    assert gate.missing_required_fields(db_session, stages["Qualified"], FieldSource()) == []
    assert any(record.getMessage() == "gate.requirements_unavailable" for record in caplog.records)
