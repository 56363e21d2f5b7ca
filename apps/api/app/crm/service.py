from __future__ import annotations

import json
import logging
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.context import reset_actor_user_id, reset_correlation_id, set_actor_user_id, set_correlation_id
from app.core.config import get_settings
from app.crm.errors import (
    ConflictError,
    MissingRequiredFieldsError,
    NotFoundError,
    RecordReadOnlyError,
    UnlockReasonRequiredError,
    ValidationError,
)
from app.crm.fields import (
    FieldChanges,
    FieldSource,
    is_field_present,
    overlay,
    references_field,
    requirement_alternatives,
    snapshot_record,
    split_supplied_fields,
)
from app.crm.models import (
    CRMJob,
    CRMLead,
    CRMModuleSetting,
    CRMOpportunity,
    CRMPipeline,
    CRMPipelineStage,
    CRMPriority,
    CRMRecordTeamMember,
    CRMRoutingRule,
    CRMScoringRule,
    CRMScoringTemplate,
    CRMStageFieldRequirement,
    CRMStageHistory,
    CRMTeam,
    utcnow,
)
from app.crm.repositories import JobRepository, RecordRepository, RoutingRuleRepository
from app.crm.rules import ScoreResult, evaluate_template, match_routing_rule, normalize_rule_value, pick_weighted, select_priority
from app.crm.schemas import (
    SETTINGS_SECTIONS,
    AuditRead,
    ConversionSettings,
    GeneralSettings,
    LeadCreate,
    LeadRead,
    OpportunityCreate,
    OpportunityRead,
    OwnershipSettings,
    PipelineCreate,
    PipelineRead,
    PipelineUpdate,
    PriorityCreate,
    PriorityRead,
    PriorityUpdate,
    RecordResult,
    RecordTeamMemberRead,
    RecordUpdate,
    RoutingRuleCreate,
    RoutingRuleRead,
    RoutingRuleUpdate,
    ScoreRead,
    ScoringRuleCreate,
    ScoringRuleRead,
    ScoringRuleUpdate,
    ScoringTemplateCreate,
    ScoringTemplateRead,
    ScoringTemplateUpdate,
    StageChangeRequest,
    StageCreate,
    StageFieldRequirementRead,
    StageFieldsReplace,
    StageHistoryRead,
    StageRead,
    StageReorderRequest,
    StageSettings,
    StageUpdate,
)
from app.metrics import (
    observe_gate_fail_open,
    observe_job,
    observe_rescore_records,
    observe_routing_assignment,
    observe_stage_transition,
)
from app.models.audit import AuditLog


logger = logging.getLogger("app.crm.engine")
job_logger = logging.getLogger("app.crm.jobs")
tracer = trace.get_tracer("app.crm.engine")

DEFAULT_STAGE_COLOR = "#3B82F6"
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _coerce_user_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"crm-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


@dataclass(frozen=True)
class ModuleProfile:
    module: str
    entity_type: str
    won_column: str
    lost_column: str
    won_event: str
    lost_event: str


MODULE_PROFILES: dict[str, ModuleProfile] = {
    "leads": ModuleProfile(
        module="leads",
        entity_type="lead",
        won_column="converted_at",
        lost_column="disqualified_at",
        won_event="crm.lead.converted",
        lost_event="crm.lead.disqualified",
    ),
    "opportunities": ModuleProfile(
        module="opportunities",
        entity_type="opportunity",
        won_column="won_at",
        lost_column="lost_at",
        won_event="crm.opportunity.won",
        lost_event="crm.opportunity.lost",
    ),
}


def module_profile(module: str) -> ModuleProfile:
    try:
        return MODULE_PROFILES[module]
    except KeyError:
        raise NotFoundError(f"unknown module: {module}") from None


def to_record_read(module: str, record: CRMLead | CRMOpportunity) -> LeadRead | OpportunityRead:
    if module == "leads":
        return LeadRead.model_validate(record)
    return OpportunityRead.model_validate(record)


def _coerce_column_value(key: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if key == "amount":
            return Decimal(str(value))
        if key == "probability":
            probability = int(value)
            if not 0 <= probability <= 100:
                raise ValueError("probability out of range")
            return probability
        if key == "expected_close_date":
            return value if isinstance(value, date) else date.fromisoformat(str(value))
        if key == "last_activity_at":
            moment = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            return _as_aware(moment)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"invalid value for {key}", details={"field_key": key}) from None
    if isinstance(value, (dict, list)):
        raise ValidationError(f"invalid value for {key}", details={"field_key": key})
    return str(value)


def _coerce_changes(changes: FieldChanges) -> FieldChanges:
    return FieldChanges(
        system={key: _coerce_column_value(key, value) for key, value in changes.system.items()},
        qualification=dict(changes.qualification),
        custom=dict(changes.custom),
    )


def _changed_values(record: CRMLead | CRMOpportunity, changes: FieldChanges) -> dict[str, Any]:
    values: dict[str, Any] = dict(changes.system)
    if "name" in values and not str(values["name"] or "").strip():
        raise ValidationError("name must not be blank", details={"field_key": "name"})
    if changes.qualification:
        values["qualification"] = {**(record.qualification or {}), **changes.qualification}
    if changes.custom:
        values["custom_fields"] = {**(record.custom_fields or {}), **changes.custom}
    return values


class SettingsService:
    valid_keys = set(SETTINGS_SECTIONS)

    def get_all(self, session: Session, module: str) -> dict[str, dict[str, Any]]:
        module_profile(module)
        rows = session.scalars(select(CRMModuleSetting).where(CRMModuleSetting.module == module)).all()
        return {row.setting_key: dict(row.setting_value or {}) for row in rows}

    def get_document(self, session: Session, module: str, key: str) -> dict[str, Any]:
        row = self._load(session, module, key)
        return dict(row.setting_value or {}) if row is not None else {}

    def merge(
        self,
        session: Session,
        actor_user: ActorUser,
        module: str,
        key: str,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        module_profile(module)
        if key not in self.valid_keys:
            raise NotFoundError(f"unknown settings section: {key}")
        row = self._load(session, module, key)
        before = dict(row.setting_value or {}) if row is not None else {}
        merged = {**before, **patch}
        # typed readers must still accept the merged document
        try:
            SETTINGS_SECTIONS[key].model_validate(merged)
        except ValueError as exc:
            raise ValidationError(f"invalid {key} settings", details=str(exc)) from None

        if row is None:
            row = CRMModuleSetting(module=module, setting_key=key, setting_value=merged)
            session.add(row)
        else:
            row.setting_value = merged
        row.updated_by_user_id = _coerce_user_uuid(actor_user.user_id)
        session.flush()

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm.settings",
            entity_id=f"{module}.{key}",
            action="merge",
            before=before,
            after=merged,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return merged

    def general(self, session: Session, module: str) -> GeneralSettings:
        return GeneralSettings.model_validate(self.get_document(session, module, "general"))

    def stages(self, session: Session, module: str) -> StageSettings:
        return StageSettings.model_validate(self.get_document(session, module, "stages"))

    def conversion(self, session: Session, module: str) -> ConversionSettings:
        return ConversionSettings.model_validate(self.get_document(session, module, "conversion"))

    def ownership(self, session: Session, module: str) -> OwnershipSettings:
        return OwnershipSettings.model_validate(self.get_document(session, module, "ownership"))

    def _load(self, session: Session, module: str, key: str) -> CRMModuleSetting | None:
        return session.scalar(
            select(CRMModuleSetting).where(
                and_(CRMModuleSetting.module == module, CRMModuleSetting.setting_key == key)
            )
        )


class PipelineService:
    entity_type = "crm.pipeline"

    def __init__(self) -> None:
        self.records = RecordRepository()

    def list_pipelines(self, session: Session, module: str | None = None) -> list[PipelineRead]:
        stmt = select(CRMPipeline)
        if module is not None:
            stmt = stmt.where(CRMPipeline.module == module)
        rows = session.scalars(stmt.order_by(CRMPipeline.module, CRMPipeline.is_default.desc(), CRMPipeline.name)).all()
        return [PipelineRead.model_validate(row) for row in rows]

    def get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = session.scalar(select(CRMPipeline).where(CRMPipeline.id == pipeline_id))
        if pipeline is None:
            raise NotFoundError("pipeline not found")
        return pipeline

    def get_default_pipeline(self, session: Session, module: str) -> CRMPipeline:
        pipeline = session.scalar(
            select(CRMPipeline).where(and_(CRMPipeline.module == module, CRMPipeline.is_default.is_(True)))
        )
        if pipeline is None:
            raise NotFoundError(f"no default pipeline configured for {module}")
        return pipeline

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        has_default = session.scalar(
            select(func.count())
            .select_from(CRMPipeline)
            .where(and_(CRMPipeline.module == dto.module, CRMPipeline.is_default.is_(True)))
        )
        pipeline = CRMPipeline(
            module=dto.module,
            name=dto.name.strip(),
            is_default=dto.is_default or not has_default,
        )
        session.add(pipeline)
        session.flush()

        if pipeline.is_default:
            self._unset_other_defaults(session, pipeline)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={"module": pipeline.module, "name": pipeline.name, "is_default": pipeline.is_default},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return PipelineRead.model_validate(pipeline)

    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        pipeline = self.get_pipeline(session, pipeline_id)
        before = PipelineRead.model_validate(pipeline).model_dump(mode="json")

        if dto.is_default is False and pipeline.is_default:
            raise ValidationError("mark another pipeline as default instead of clearing the default")
        if dto.name is not None:
            pipeline.name = dto.name.strip()
        if dto.is_default:
            pipeline.is_default = True
        pipeline.row_version += 1
        session.flush()

        if pipeline.is_default:
            self._unset_other_defaults(session, pipeline)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="update",
            before=before,
            after=PipelineRead.model_validate(pipeline).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return PipelineRead.model_validate(pipeline)

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        pipeline = self.get_pipeline(session, pipeline_id)
        if pipeline.is_default:
            raise ConflictError("the default pipeline cannot be deleted")
        stage_ids = [stage.id for stage in pipeline.stages]
        in_use = self.records.count_in_stages(session, stage_ids)
        if in_use:
            raise ConflictError("pipeline has records in its stages", details={"record_count": in_use})

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="delete",
            before=PipelineRead.model_validate(pipeline).model_dump(mode="json"),
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.delete(pipeline)
        session.commit()

    def _unset_other_defaults(self, session: Session, pipeline: CRMPipeline) -> None:
        session.execute(
            update(CRMPipeline)
            .where(
                and_(
                    CRMPipeline.id != pipeline.id,
                    CRMPipeline.module == pipeline.module,
                    CRMPipeline.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow(), row_version=CRMPipeline.row_version + 1)
            .execution_options(synchronize_session="fetch")
        )


class StageGraphService:
    """Ordered, module-scoped stages of a pipeline."""

    entity_type = "crm.pipeline.stage"

    def __init__(self) -> None:
        self.pipelines = PipelineService()
        self.records = RecordRepository()

    def stages_for(self, session: Session, pipeline_id: uuid.UUID, module: str) -> list[CRMPipelineStage]:
        return list(
            session.scalars(
                select(CRMPipelineStage)
                .where(and_(CRMPipelineStage.pipeline_id == pipeline_id, CRMPipelineStage.module == module))
                .order_by(CRMPipelineStage.sort_order, CRMPipelineStage.id)
            ).all()
        )

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = session.scalar(select(CRMPipelineStage).where(CRMPipelineStage.id == stage_id))
        if stage is None:
            raise NotFoundError("stage not found")
        return stage

    def index_of(self, stages: list[CRMPipelineStage], stage_id: uuid.UUID) -> int:
        for index, stage in enumerate(stages):
            if stage.id == stage_id:
                return index
        raise NotFoundError("stage not found in pipeline")

    def is_backward(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        module: str,
        from_stage_id: uuid.UUID,
        to_stage_id: uuid.UUID,
    ) -> bool:
        stages = self.stages_for(session, pipeline_id, module)
        return self.index_of(stages, to_stage_id) < self.index_of(stages, from_stage_id)

    def first_open_stage(self, session: Session, pipeline_id: uuid.UUID, module: str) -> CRMPipelineStage:
        for stage in self.stages_for(session, pipeline_id, module):
            if not stage.is_terminal:
                return stage
        raise NotFoundError("pipeline has no open stage")

    def list_stages(self, session: Session, pipeline_id: uuid.UUID, module: str | None = None) -> list[StageRead]:
        pipeline = self.pipelines.get_pipeline(session, pipeline_id)
        return [StageRead.model_validate(stage) for stage in self.stages_for(session, pipeline.id, module or pipeline.module)]

    def create_stage(self, session: Session, actor_user: ActorUser, dto: StageCreate) -> StageRead:
        pipeline = self.pipelines.get_pipeline(session, dto.pipeline_id)
        stages = self.stages_for(session, pipeline.id, pipeline.module)
        slug = self._slugify(dto.name)
        if any(stage.slug == slug for stage in stages):
            raise ValidationError("a stage with this name already exists in the pipeline", details={"slug": slug})

        stage = CRMPipelineStage(
            pipeline_id=pipeline.id,
            module=pipeline.module,
            name=dto.name.strip(),
            slug=slug,
            color=dto.color or DEFAULT_STAGE_COLOR,
            sort_order=len(stages) + 1,
            probability=dto.probability,
            is_system=dto.is_system,
            is_won=dto.is_won,
            is_lost=dto.is_lost,
            lock_previous_fields=dto.lock_previous_fields,
        )
        session.add(stage)
        session.flush()
        self._validate_terminal_stages(session, pipeline.id, pipeline.module)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=StageRead.model_validate(stage).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return StageRead.model_validate(stage)

    def update_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID, dto: StageUpdate) -> StageRead:
        stage = self.get_stage(session, stage_id)
        before = StageRead.model_validate(stage).model_dump(mode="json")

        updates = dto.model_dump(exclude_unset=True)
        if updates.get("name") is not None:
            stage.name = updates["name"].strip()
        if "color" in updates:
            stage.color = updates["color"] or DEFAULT_STAGE_COLOR
        if "probability" in updates:
            stage.probability = updates["probability"]
        for flag in ("is_won", "is_lost", "lock_previous_fields"):
            if updates.get(flag) is not None:
                setattr(stage, flag, updates[flag])
        if stage.is_won and stage.is_lost:
            raise ValidationError("a stage cannot be both won and lost")
        stage.row_version += 1
        session.flush()
        self._validate_terminal_stages(session, stage.pipeline_id, stage.module)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="update",
            before=before,
            after=StageRead.model_validate(stage).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return StageRead.model_validate(stage)

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        stage = self.get_stage(session, stage_id)
        if stage.is_system:
            raise ConflictError("system stages cannot be deleted")
        in_use = self.records.count_in_stages(session, [stage.id])
        if in_use:
            raise ConflictError("stage has records in it", details={"record_count": in_use})

        pipeline_id, module = stage.pipeline_id, stage.module
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="delete",
            before=StageRead.model_validate(stage).model_dump(mode="json"),
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.delete(stage)
        session.flush()
        remaining = self.stages_for(session, pipeline_id, module)
        self._write_sort_orders(session, [item.id for item in remaining])
        session.commit()

    def reorder(self, session: Session, actor_user: ActorUser, dto: StageReorderRequest) -> list[StageRead]:
        first = self.get_stage(session, dto.ordered_ids[0])
        stages = self.stages_for(session, first.pipeline_id, first.module)
        if {stage.id for stage in stages} != set(dto.ordered_ids):
            raise ValidationError(
                "ordered_ids must list every stage of the pipeline exactly once",
                details={"expected_count": len(stages), "received_count": len(dto.ordered_ids)},
            )

        before = [str(stage.id) for stage in stages]
        self._write_sort_orders(session, dto.ordered_ids)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm.pipeline",
            entity_id=str(first.pipeline_id),
            action="reorder_stages",
            before={"ordered_ids": before},
            after={"ordered_ids": [str(item) for item in dto.ordered_ids]},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.expire_all()
        return [StageRead.model_validate(stage) for stage in self.stages_for(session, first.pipeline_id, first.module)]

    def _write_sort_orders(self, session: Session, ordered_ids: list[uuid.UUID]) -> None:
        # park every row on a negative slot first so the unique (pipeline, module, sort_order) never collides
        for index, stage_id in enumerate(ordered_ids, start=1):
            session.execute(
                update(CRMPipelineStage)
                .where(CRMPipelineStage.id == stage_id)
                .values(sort_order=-index)
                .execution_options(synchronize_session=False)
            )
        for index, stage_id in enumerate(ordered_ids, start=1):
            session.execute(
                update(CRMPipelineStage)
                .where(CRMPipelineStage.id == stage_id)
                .values(sort_order=index, updated_at=utcnow(), row_version=CRMPipelineStage.row_version + 1)
                .execution_options(synchronize_session=False)
            )

    def _validate_terminal_stages(self, session: Session, pipeline_id: uuid.UUID, module: str) -> None:
        stages = self.stages_for(session, pipeline_id, module)
        won_count = sum(1 for stage in stages if stage.is_won)
        lost_count = sum(1 for stage in stages if stage.is_lost)
        if won_count > 1 or lost_count > 1:
            session.rollback()
            raise ValidationError("pipeline can have at most one won stage and one lost stage")

    def _slugify(self, name: str) -> str:
        slug = _SLUG_RE.sub("_", name.strip().lower()).strip("_")
        if not slug:
            raise ValidationError("stage name must contain letters or digits")
        return slug


class FieldRequirementGate:
    def __init__(self) -> None:
        self.stage_graph = StageGraphService()

    def requirements_for(self, session: Session, stage_id: uuid.UUID) -> list[CRMStageFieldRequirement]:
        return list(
            session.scalars(
                select(CRMStageFieldRequirement)
                .where(CRMStageFieldRequirement.stage_id == stage_id)
                .order_by(CRMStageFieldRequirement.display_order, CRMStageFieldRequirement.id)
            ).all()
        )

    def missing_required_fields(
        self,
        session: Session,
        stage_id: uuid.UUID,
        source: FieldSource,
    ) -> list[CRMStageFieldRequirement]:
        """Required fields of ``stage_id`` that are blank in ``source``.

        A storage failure while loading the requirement list is treated as an empty
        list: progressing a record is never blocked by a requirements outage.
        """
        try:
            requirements = self.requirements_for(session, stage_id)
        except SQLAlchemyError as exc:
            session.rollback()
            observe_gate_fail_open()
            logger.warning(
                "gate.requirements_unavailable",
                exc_info=True,
                extra={"to_stage_id": str(stage_id), "error": str(exc)},
            )
            return []
        return [
            requirement
            for requirement in requirements
            if requirement.is_required and not is_field_present(source, requirement.field_key)
        ]

    def list_requirements(self, session: Session, stage_id: uuid.UUID) -> list[StageFieldRequirementRead]:
        stage = self.stage_graph.get_stage(session, stage_id)
        return [StageFieldRequirementRead.model_validate(item) for item in self.requirements_for(session, stage.id)]

    def replace_requirements(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: StageFieldsReplace,
    ) -> list[StageFieldRequirementRead]:
        stage = self.stage_graph.get_stage(session, stage_id)
        keys = [item.field_key.strip() for item in dto.fields]
        if len(set(keys)) != len(keys):
            raise ValidationError("field keys must be unique within a stage")
        if any(not requirement_alternatives(key) for key in keys):
            raise ValidationError("field keys must not be blank")

        before = [StageFieldRequirementRead.model_validate(item).model_dump(mode="json") for item in stage.requirements]
        stage.requirements.clear()
        session.flush()
        for index, item in enumerate(dto.fields):
            key = item.field_key.strip()
            stage.requirements.append(
                CRMStageFieldRequirement(
                    field_key=key,
                    field_label=(item.field_label or "").strip() or key,
                    is_required=item.is_required,
                    display_order=index,
                )
            )
        session.flush()

        after = [StageFieldRequirementRead.model_validate(item).model_dump(mode="json") for item in stage.requirements]
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm.pipeline.stage",
            entity_id=str(stage.id),
            action="replace_fields",
            before={"fields": before},
            after={"fields": after},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self.list_requirements(session, stage.id)


class ScoringService:
    entity_type = "crm.scoring_template"

    def default_template(self, session: Session, module: str) -> CRMScoringTemplate | None:
        return session.scalar(
            select(CRMScoringTemplate)
            .where(
                and_(
                    CRMScoringTemplate.module == module,
                    CRMScoringTemplate.is_default.is_(True),
                    CRMScoringTemplate.is_active.is_(True),
                )
            )
            .options(selectinload(CRMScoringTemplate.rules))
        )

    def evaluate(self, template: CRMScoringTemplate | None, source: FieldSource) -> ScoreResult:
        if template is None:
            return ScoreResult(total=0)
        return evaluate_template(template.max_score, template.rules, source)

    def reads_any(self, template: CRMScoringTemplate | None, module: str, changed_keys: set[str]) -> bool:
        if template is None or not changed_keys:
            return False
        return any(
            rule.is_active and references_field(module, rule.field_key, changed_keys) for rule in template.rules
        )

    def score_read(self, template: CRMScoringTemplate | None, result: ScoreResult) -> ScoreRead:
        return ScoreRead(
            template_id=template.id if template is not None else None,
            total=result.total,
            max_score=template.max_score if template is not None else None,
            breakdown=result.breakdown,
        )

    def list_templates(self, session: Session, module: str | None = None) -> list[ScoringTemplateRead]:
        stmt = select(CRMScoringTemplate).options(selectinload(CRMScoringTemplate.rules))
        if module is not None:
            stmt = stmt.where(CRMScoringTemplate.module == module)
        return [self._to_template_read(row) for row in session.scalars(stmt.order_by(CRMScoringTemplate.name)).all()]

    def get_template(self, session: Session, template_id: uuid.UUID) -> CRMScoringTemplate:
        template = session.scalar(
            select(CRMScoringTemplate)
            .where(CRMScoringTemplate.id == template_id)
            .options(selectinload(CRMScoringTemplate.rules))
        )
        if template is None:
            raise NotFoundError("scoring template not found")
        return template

    def create_template(self, session: Session, actor_user: ActorUser, dto: ScoringTemplateCreate) -> ScoringTemplateRead:
        template = CRMScoringTemplate(
            module=dto.module,
            name=dto.name.strip(),
            max_score=dto.max_score,
            is_active=dto.is_active,
            is_default=dto.is_default,
        )
        session.add(template)
        session.flush()
        if template.is_default:
            self._unset_other_defaults(session, template)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(template.id),
            action="create",
            before=None,
            after={"name": template.name, "module": template.module, "max_score": template.max_score},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._to_template_read(self.get_template(session, template.id))

    def update_template(
        self,
        session: Session,
        actor_user: ActorUser,
        template_id: uuid.UUID,
        dto: ScoringTemplateUpdate,
    ) -> ScoringTemplateRead:
        template = self.get_template(session, template_id)
        before = {"name": template.name, "max_score": template.max_score, "is_active": template.is_active}
        updates = dto.model_dump(exclude_unset=True)
        if updates.get("name") is not None:
            template.name = updates["name"].strip()
        for key in ("max_score", "is_active", "is_default"):
            if updates.get(key) is not None:
                setattr(template, key, updates[key])
        session.flush()
        if template.is_default:
            self._unset_other_defaults(session, template)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(template.id),
            action="update",
            before=before,
            after={"name": template.name, "max_score": template.max_score, "is_active": template.is_active},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self._to_template_read(self.get_template(session, template.id))

    def add_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        template_id: uuid.UUID,
        dto: ScoringRuleCreate,
    ) -> ScoringRuleRead:
        template = self.get_template(session, template_id)
        name = dto.name.strip()
        if any(rule.name == name for rule in template.rules):
            raise ValidationError("a rule with this name already exists in the template", details={"name": name})

        rule = CRMScoringRule(
            template_id=template.id,
            name=name,
            category=dto.category,
            field_key=dto.field_key.strip(),
            operator=dto.operator,
            value=dto.value,
            score_delta=dto.score_delta,
            is_active=dto.is_active,
            sort_order=dto.sort_order,
        )
        session.add(rule)
        session.flush()
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm.scoring_rule",
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=ScoringRuleRead.model_validate(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ScoringRuleRead.model_validate(rule)

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: ScoringRuleUpdate,
    ) -> ScoringRuleRead:
        rule = self._load_rule(session, rule_id)
        before = ScoringRuleRead.model_validate(rule).model_dump(mode="json")
        updates = dto.model_dump(exclude_unset=True)

        name = updates.get("name")
        if name is not None and name.strip() != rule.name:
            clash = session.scalar(
                select(CRMScoringRule.id).where(
                    and_(CRMScoringRule.template_id == rule.template_id, CRMScoringRule.name == name.strip())
                )
            )
            if clash is not None:
                raise ValidationError("a rule with this name already exists in the template", details={"name": name})
            rule.name = name.strip()

        operator = updates.get("operator") or rule.operator
        value = updates["value"] if "value" in updates else rule.value
        try:
            rule.value = normalize_rule_value(operator, value)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"operator": operator}) from None
        rule.operator = operator

        if updates.get("field_key") is not None:
            rule.field_key = updates["field_key"].strip()
        if "category" in updates:
            rule.category = updates["category"]
        for key in ("score_delta", "is_active", "sort_order"):
            if updates.get(key) is not None:
                setattr(rule, key, updates[key])
        session.flush()

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm.scoring_rule",
            entity_id=str(rule.id),
            action="update",
            before=before,
            after=ScoringRuleRead.model_validate(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return ScoringRuleRead.model_validate(rule)

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._load_rule(session, rule_id)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm.scoring_rule",
            entity_id=str(rule.id),
            action="delete",
            before=ScoringRuleRead.model_validate(rule).model_dump(mode="json"),
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.delete(rule)
        session.commit()

    def _load_rule(self, session: Session, rule_id: uuid.UUID) -> CRMScoringRule:
        rule = session.scalar(select(CRMScoringRule).where(CRMScoringRule.id == rule_id))
        if rule is None:
            raise NotFoundError("scoring rule not found")
        return rule

    def _unset_other_defaults(self, session: Session, template: CRMScoringTemplate) -> None:
        session.execute(
            update(CRMScoringTemplate)
            .where(
                and_(
                    CRMScoringTemplate.id != template.id,
                    CRMScoringTemplate.module == template.module,
                    CRMScoringTemplate.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )

    def _to_template_read(self, template: CRMScoringTemplate) -> ScoringTemplateRead:
        rules = sorted(template.rules, key=lambda item: (item.sort_order, item.name))
        return ScoringTemplateRead(
            id=template.id,
            module=template.module,  # type: ignore[arg-type]
            name=template.name,
            max_score=template.max_score,
            is_active=template.is_active,
            is_default=template.is_default,
            rules=[ScoringRuleRead.model_validate(rule) for rule in rules],
        )


class PriorityService:
    entity_type = "crm.priority"

    def __init__(self) -> None:
        self.records = RecordRepository()

    def priorities_for(self, session: Session, module: str) -> list[CRMPriority]:
        return list(
            session.scalars(
                select(CRMPriority)
                .where(CRMPriority.module == module)
                .order_by(CRMPriority.sort_order, CRMPriority.id)
            ).all()
        )

    def resolve(self, session: Session, module: str, score: int) -> CRMPriority | None:
        return select_priority(self.priorities_for(session, module), score)  # type: ignore[return-value]

    def default_priority(self, session: Session, module: str) -> CRMPriority | None:
        for item in self.priorities_for(session, module):
            if item.is_default and item.is_active:
                return item
        return None

    def list_priorities(self, session: Session, module: str) -> list[PriorityRead]:
        return [PriorityRead.model_validate(item) for item in self.priorities_for(session, module)]

    def create_priority(self, session: Session, actor_user: ActorUser, dto: PriorityCreate) -> PriorityRead:
        has_default = any(item.is_default and item.is_active for item in self.priorities_for(session, dto.module))
        priority = CRMPriority(
            module=dto.module,
            name=dto.name.strip(),
            color=dto.color,
            icon=dto.icon,
            score_min=dto.score_min,
            score_max=dto.score_max,
            sort_order=dto.sort_order,
            is_active=dto.is_active,
            is_default=dto.is_default or (dto.is_active and not has_default),
        )
        if priority.is_default and not priority.is_active:
            raise ValidationError("the default priority must be active")
        session.add(priority)
        session.flush()
        if priority.is_default:
            self._unset_other_defaults(session, priority)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(priority.id),
            action="create",
            before=None,
            after=PriorityRead.model_validate(priority).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return PriorityRead.model_validate(priority)

    def update_priority(
        self,
        session: Session,
        actor_user: ActorUser,
        priority_id: uuid.UUID,
        dto: PriorityUpdate,
    ) -> PriorityRead:
        priority = self._load(session, priority_id)
        before = PriorityRead.model_validate(priority).model_dump(mode="json")
        updates = dto.model_dump(exclude_unset=True)

        if updates.get("is_default") is False and priority.is_default:
            raise ValidationError("mark another priority as default instead of clearing the default")
        if updates.get("is_active") is False and (priority.is_default or updates.get("is_default")):
            raise ValidationError("the default priority must stay active")
        score_min = updates["score_min"] if "score_min" in updates else priority.score_min
        score_max = updates["score_max"] if "score_max" in updates else priority.score_max
        if score_min is not None and score_max is not None and score_min > score_max:
            raise ValidationError("score_min must not exceed score_max")

        if updates.get("name") is not None:
            priority.name = updates["name"].strip()
        for key in ("color", "sort_order", "is_active", "is_default"):
            if updates.get(key) is not None:
                setattr(priority, key, updates[key])
        for key in ("icon", "score_min", "score_max"):
            if key in updates:
                setattr(priority, key, updates[key])
        session.flush()
        if priority.is_default:
            self._unset_other_defaults(session, priority)

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(priority.id),
            action="update",
            before=before,
            after=PriorityRead.model_validate(priority).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return PriorityRead.model_validate(priority)

    def delete_priority(self, session: Session, actor_user: ActorUser, priority_id: uuid.UUID) -> None:
        priority = self._load(session, priority_id)
        others = [item for item in self.priorities_for(session, priority.module) if item.id != priority.id]
        if priority.is_default and others:
            raise ConflictError("mark another priority as default before deleting this one")
        in_use = self.records.count_with_priority(session, priority.id)
        if in_use:
            raise ConflictError("priority is assigned to records; deactivate it instead", details={"record_count": in_use})

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(priority.id),
            action="delete",
            before=PriorityRead.model_validate(priority).model_dump(mode="json"),
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.delete(priority)
        session.commit()

    def _load(self, session: Session, priority_id: uuid.UUID) -> CRMPriority:
        priority = session.scalar(select(CRMPriority).where(CRMPriority.id == priority_id))
        if priority is None:
            raise NotFoundError("priority not found")
        return priority

    def _unset_other_defaults(self, session: Session, priority: CRMPriority) -> None:
        session.execute(
            update(CRMPriority)
            .where(
                and_(
                    CRMPriority.id != priority.id,
                    CRMPriority.module == priority.module,
                    CRMPriority.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )


@dataclass
class RoutingDecision:
    owner_user_id: uuid.UUID
    rule: CRMRoutingRule | None = None


class RoutingService:
    entity_type = "crm.routing_rule"

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rules = RoutingRuleRepository()
        self.rng = rng or random.Random()

    def assign_owner(
        self,
        session: Session,
        module: str,
        source: FieldSource,
        fallback_user_id: uuid.UUID,
    ) -> RoutingDecision:
        rule = match_routing_rule(self.rules.active_rules(session, module), source)
        if rule is None:
            observe_routing_assignment(module, "fallback")
            return RoutingDecision(owner_user_id=fallback_user_id)

        owner_user_id = self._owner_for_rule(session, rule)  # type: ignore[arg-type]
        observe_routing_assignment(module, rule.assignment_type)
        logger.info(
            "routing.assigned",
            extra={"crm_module": module, "rule_id": str(rule.id), "assignment_type": rule.assignment_type},
        )
        return RoutingDecision(owner_user_id=owner_user_id, rule=rule)

    def _owner_for_rule(self, session: Session, rule: CRMRoutingRule) -> uuid.UUID:
        entries = list(rule.assigned_to or [])
        if not entries:
            raise ConflictError("routing rule has no assignees", details={"rule_id": str(rule.id)})

        if rule.assignment_type == "specific_user":
            return uuid.UUID(str(entries[0]["id"]))
        if rule.assignment_type == "team_lead":
            team = session.scalar(select(CRMTeam).where(CRMTeam.id == uuid.UUID(str(entries[0]["id"]))))
            if team is None:
                raise NotFoundError("team not found", details={"rule_id": str(rule.id)})
            if team.lead_user_id is None:
                raise NotFoundError("team has no lead", details={"team_id": str(team.id)})
            return team.lead_user_id
        if rule.assignment_type == "round_robin":
            slot = self.rules.claim_round_robin_slot(
                session,
                rule.id,
                len(entries),
                max_retries=get_settings().round_robin_max_retries,
            )
            return uuid.UUID(str(entries[slot]["id"]))
        if rule.assignment_type == "weighted":
            return uuid.UUID(pick_weighted(entries, self.rng))
        raise ValidationError(f"unsupported assignment type: {rule.assignment_type}")

    def list_rules(self, session: Session, module: str | None = None) -> list[RoutingRuleRead]:
        stmt = select(CRMRoutingRule)
        if module is not None:
            stmt = stmt.where(CRMRoutingRule.module == module)
        rows = session.scalars(stmt.order_by(CRMRoutingRule.priority, CRMRoutingRule.created_at, CRMRoutingRule.id)).all()
        return [RoutingRuleRead.model_validate(row) for row in rows]

    def create_rule(self, session: Session, actor_user: ActorUser, dto: RoutingRuleCreate) -> RoutingRuleRead:
        rule = CRMRoutingRule(
            module=dto.module,
            name=dto.name.strip(),
            priority=dto.priority,
            conditions=[item.model_dump(mode="json") for item in dto.conditions],
            assignment_type=dto.assignment_type,
            assigned_to=[item.model_dump(mode="json") for item in dto.assigned_to],
            round_robin_index=0,
            is_active=dto.is_active,
        )
        session.add(rule)
        session.flush()
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=RoutingRuleRead.model_validate(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return RoutingRuleRead.model_validate(rule)

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: RoutingRuleUpdate,
    ) -> RoutingRuleRead:
        rule = self._load(session, rule_id)
        before = RoutingRuleRead.model_validate(rule).model_dump(mode="json")
        updates = dto.model_dump(exclude_unset=True)

        if updates.get("name") is not None:
            rule.name = updates["name"].strip()
        for key in ("priority", "assignment_type", "is_active"):
            if updates.get(key) is not None:
                setattr(rule, key, updates[key])
        if dto.conditions is not None:
            rule.conditions = [item.model_dump(mode="json") for item in dto.conditions]
        if dto.assigned_to is not None:
            rule.assigned_to = [item.model_dump(mode="json") for item in dto.assigned_to]
            # a new assignee list restarts the rotation
            rule.round_robin_index = 0
        session.flush()

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="update",
            before=before,
            after=RoutingRuleRead.model_validate(rule).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return RoutingRuleRead.model_validate(rule)

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._load(session, rule_id)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="delete",
            before=RoutingRuleRead.model_validate(rule).model_dump(mode="json"),
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.delete(rule)
        session.commit()

    def _load(self, session: Session, rule_id: uuid.UUID) -> CRMRoutingRule:
        rule = session.scalar(select(CRMRoutingRule).where(CRMRoutingRule.id == rule_id))
        if rule is None:
            raise NotFoundError("routing rule not found")
        return rule


class RecordTeamService:
    def list_members(self, session: Session, module: str, record_id: uuid.UUID) -> list[RecordTeamMemberRead]:
        profile = module_profile(module)
        rows = session.scalars(
            select(CRMRecordTeamMember)
            .where(and_(CRMRecordTeamMember.entity_type == profile.entity_type, CRMRecordTeamMember.entity_id == record_id))
            .order_by(CRMRecordTeamMember.created_at, CRMRecordTeamMember.id)
        ).all()
        return [RecordTeamMemberRead.model_validate(row) for row in rows]

    def upsert_member(
        self,
        session: Session,
        actor_user: ActorUser,
        module: str,
        record_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        role_name: str,
        access_level: str,
    ) -> CRMRecordTeamMember:
        profile = module_profile(module)
        member = session.scalar(
            select(CRMRecordTeamMember).where(
                and_(
                    CRMRecordTeamMember.entity_type == profile.entity_type,
                    CRMRecordTeamMember.entity_id == record_id,
                    CRMRecordTeamMember.user_id == user_id,
                )
            )
        )
        if member is None:
            member = CRMRecordTeamMember(
                entity_type=profile.entity_type,
                entity_id=record_id,
                user_id=user_id,
                role_name=role_name,
                access_level=access_level,
                added_by_user_id=_coerce_user_uuid(actor_user.user_id),
            )
            session.add(member)
        else:
            member.role_name = role_name
            member.access_level = access_level
        session.flush()
        return member


class RecordService:
    """Record intake and field edits for leads and opportunities."""

    def __init__(self) -> None:
        self.records = RecordRepository()
        self.pipelines = PipelineService()
        self.stage_graph = StageGraphService()
        self.scoring = ScoringService()
        self.priorities = PriorityService()
        self.routing = RoutingService()
        self.settings = SettingsService()
        self.teams = RecordTeamService()

    def get_record(self, session: Session, module: str, record_id: uuid.UUID) -> LeadRead | OpportunityRead:
        return to_record_read(module, self.records.get(session, module, record_id))

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> RecordResult:
        values = dto.model_dump(exclude={"owner_user_id", "pipeline_id", "stage_id"})
        for key in ("email", "phone", "company", "first_name", "last_name"):
            if isinstance(values.get(key), str):
                values[key] = values[key].strip() or None
        return self._create(session, actor_user, "leads", values, dto.owner_user_id, dto.pipeline_id, dto.stage_id)

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> RecordResult:
        values = dto.model_dump(exclude={"owner_user_id", "pipeline_id", "stage_id"})
        values["name"] = values["name"].strip()
        return self._create(
            session,
            actor_user,
            "opportunities",
            values,
            dto.owner_user_id,
            dto.pipeline_id,
            dto.stage_id,
        )

    def _create(
        self,
        session: Session,
        actor_user: ActorUser,
        module: str,
        values: dict[str, Any],
        owner_user_id: uuid.UUID | None,
        pipeline_id: uuid.UUID | None,
        stage_id: uuid.UUID | None,
    ) -> RecordResult:
        profile = module_profile(module)
        model = self.records.model_for(module)
        creator_id = _coerce_user_uuid(actor_user.user_id)

        if pipeline_id is not None:
            pipeline = self.pipelines.get_pipeline(session, pipeline_id)
            if pipeline.module != module:
                raise NotFoundError("pipeline not found")
        else:
            pipeline = self.pipelines.get_default_pipeline(session, module)

        if stage_id is not None:
            stage = self.stage_graph.get_stage(session, stage_id)
            if stage.pipeline_id != pipeline.id or stage.module != module:
                raise NotFoundError("stage not found in pipeline")
            if stage.is_terminal:
                raise ValidationError("records cannot be created in a terminal stage")
        else:
            stage = self.stage_graph.first_open_stage(session, pipeline.id, module)

        now = utcnow()
        record = model(
            **values,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            created_by_user_id=creator_id,
            owner_user_id=creator_id,
            score=0,
            score_breakdown={},
            stage_entered_at=now,
        )
        if module == "opportunities":
            record.probability = stage.probability
        source = snapshot_record(module, record)

        decision = self.routing.assign_owner(session, module, source, owner_user_id or creator_id)
        record.owner_user_id = decision.owner_user_id

        general = self.settings.general(session, module)
        template = self.scoring.default_template(session, module) if general.auto_scoring else None
        result = self.scoring.evaluate(template, source)
        record.score = result.total
        record.score_breakdown = result.breakdown
        if general.auto_priority_from_score:
            priority = self.priorities.resolve(session, module, result.total)
        else:
            priority = self.priorities.default_priority(session, module)
        record.priority_id = priority.id if priority is not None else None

        session.add(record)
        session.flush()
        session.add(
            CRMStageHistory(
                entity_type=profile.entity_type,
                entity_id=record.id,
                from_stage_id=None,
                to_stage_id=stage.id,
                changed_by_user_id=creator_id,
                changed_at=now,
            )
        )
        read = to_record_read(module, record)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{profile.entity_type}",
            entity_id=str(record.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                f"crm.{profile.entity_type}.created",
                actor_user.user_id,
                {
                    f"{profile.entity_type}_id": str(record.id),
                    "owner_user_id": str(record.owner_user_id),
                    "routing_rule_id": str(decision.rule.id) if decision.rule is not None else None,
                    "score": record.score,
                },
            )
        )
        session.commit()
        return RecordResult(record=to_record_read(module, record), score=self.scoring.score_read(template, result))

    def update_record(
        self,
        session: Session,
        actor_user: ActorUser,
        module: str,
        record_id: uuid.UUID,
        dto: RecordUpdate,
    ) -> RecordResult:
        profile = module_profile(module)
        record = self.records.get(session, module, record_id)
        owner_change = dto.owner_user_id is not None and dto.owner_user_id != record.owner_user_id
        if record.is_terminal and (owner_change or self.settings.conversion(session, module).make_read_only):
            raise RecordReadOnlyError(profile.entity_type)
        if dto.row_version != record.row_version:
            raise ConflictError("row_version conflict", details={"current_row_version": record.row_version})

        changes = _coerce_changes(split_supplied_fields(module, dto.fields))
        values = _changed_values(record, changes)
        source = overlay(snapshot_record(module, record), changes)

        template = None
        result: ScoreResult | None = None
        if not record.is_terminal:
            general = self.settings.general(session, module)
            template = self.scoring.default_template(session, module) if general.auto_scoring else None
            if self.scoring.reads_any(template, module, changes.field_keys()):
                result = self.scoring.evaluate(template, source)
                values["score"] = result.total
                values["score_breakdown"] = result.breakdown
                if general.auto_priority_from_score:
                    priority = self.priorities.resolve(session, module, result.total)
                    values["priority_id"] = priority.id if priority is not None else None

        previous_owner = record.owner_user_id
        if owner_change:
            values["owner_user_id"] = dto.owner_user_id
        if not values:
            return RecordResult(record=to_record_read(module, record))

        before = to_record_read(module, record).model_dump(mode="json")
        if not self.records.compare_and_set(session, module, record.id, dto.row_version, values):
            session.rollback()
            logger.warning("record.update_conflict", extra={"crm_module": module, "record_id": str(record_id)})
            raise ConflictError("row_version conflict")
        session.refresh(record)

        if owner_change:
            self._hand_off_ownership(session, actor_user, module, record.id, previous_owner)
        after = to_record_read(module, record)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{profile.entity_type}",
            entity_id=str(record.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                f"crm.{profile.entity_type}.updated",
                actor_user.user_id,
                {f"{profile.entity_type}_id": str(record.id), "changed_fields": sorted(values)},
            )
        )
        session.commit()
        score = self.scoring.score_read(template, result) if result is not None else None
        return RecordResult(record=to_record_read(module, record), score=score)

    def preview_score(self, session: Session, module: str, record_id: uuid.UUID) -> ScoreRead:
        record = self.records.get(session, module, record_id)
        template = self.scoring.default_template(session, module)
        return self.scoring.score_read(template, self.scoring.evaluate(template, snapshot_record(module, record)))

    def stage_history(self, session: Session, module: str, record_id: uuid.UUID) -> list[StageHistoryRead]:
        profile = module_profile(module)
        record = self.records.get(session, module, record_id)
        rows = session.scalars(
            select(CRMStageHistory)
            .where(and_(CRMStageHistory.entity_type == profile.entity_type, CRMStageHistory.entity_id == record.id))
            .order_by(CRMStageHistory.changed_at, CRMStageHistory.id)
        ).all()
        return [StageHistoryRead.model_validate(row) for row in rows]

    def _hand_off_ownership(
        self,
        session: Session,
        actor_user: ActorUser,
        module: str,
        record_id: uuid.UUID,
        previous_owner: uuid.UUID,
    ) -> None:
        ownership = self.settings.ownership(session, module)
        if not ownership.add_previous_owner_to_team:
            return
        self.teams.upsert_member(
            session,
            actor_user,
            module,
            record_id,
            previous_owner,
            role_name=ownership.previous_owner_role,
            access_level=ownership.previous_owner_access,
        )


class TransitionService:
    """The single writer of stage state: gate, unlock policy, scoring and terminal freeze."""

    def __init__(self) -> None:
        self.records = RecordRepository()
        self.record_service = RecordService()
        self.stage_graph = StageGraphService()
        self.gate = FieldRequirementGate()
        self.scoring = ScoringService()
        self.priorities = PriorityService()
        self.settings = SettingsService()

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        module: str,
        record_id: uuid.UUID,
        dto: StageChangeRequest,
    ) -> RecordResult:
        profile = module_profile(module)
        actor_token = set_actor_user_id(actor_user.user_id)
        with tracer.start_as_current_span("crm.stage.transition") as span:
            span.set_attribute("module", module)
            span.set_attribute("record_id", str(record_id))
            span.set_attribute("to_stage_id", str(dto.stage_id))
            try:
                result = self._change_stage(session, actor_user, profile, record_id, dto)
            except (ValidationError, NotFoundError) as exc:
                observe_stage_transition(module, exc.code)
                logger.info(
                    "transition.rejected",
                    extra={"crm_module": module, "record_id": str(record_id), "to_stage_id": str(dto.stage_id), "error": exc.message},
                )
                raise
            except (ConflictError, RecordReadOnlyError) as exc:
                observe_stage_transition(module, exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.message))
                logger.warning(
                    "transition.conflict",
                    extra={"crm_module": module, "record_id": str(record_id), "to_stage_id": str(dto.stage_id), "error": exc.message},
                )
                raise
            finally:
                reset_actor_user_id(actor_token)
        observe_stage_transition(module, "succeeded")
        return result

    def _change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        profile: ModuleProfile,
        record_id: uuid.UUID,
        dto: StageChangeRequest,
    ) -> RecordResult:
        module = profile.module
        record = self.records.get(session, module, record_id)
        if record.is_terminal:
            raise RecordReadOnlyError(profile.entity_type)
        expected_version = dto.row_version if dto.row_version is not None else record.row_version
        if expected_version != record.row_version:
            raise ConflictError("row_version conflict", details={"current_row_version": record.row_version})

        target = self.stage_graph.get_stage(session, dto.stage_id)
        if target.pipeline_id != record.pipeline_id or target.module != module:
            raise NotFoundError("stage not found in the record's pipeline")
        if target.id == record.stage_id:
            raise ValidationError("record is already in this stage")

        from_stage_id = record.stage_id
        backward = self.stage_graph.is_backward(session, record.pipeline_id, module, from_stage_id, target.id)
        unlock_reason = (dto.unlock_reason or "").strip() or None
        if backward:
            stage_settings = self.settings.stages(session, module)
            if stage_settings.lock_previous_stages and stage_settings.require_unlock_reason and unlock_reason is None:
                raise UnlockReasonRequiredError()

        changes = _coerce_changes(split_supplied_fields(module, dto.fields))
        source = overlay(snapshot_record(module, record), changes)
        missing = self.gate.missing_required_fields(session, target.id, source)
        if missing:
            raise MissingRequiredFieldsError(
                [{"field_key": item.field_key, "field_label": item.field_label} for item in missing]
            )

        now = utcnow()
        values = _changed_values(record, changes)
        values["stage_id"] = target.id
        values["stage_entered_at"] = now
        if module == "opportunities" and target.probability is not None:
            values["probability"] = target.probability

        general = self.settings.general(session, module)
        template = self.scoring.default_template(session, module) if general.auto_scoring else None
        result: ScoreResult | None = None
        if self.scoring.reads_any(template, module, changes.field_keys()):
            result = self.scoring.evaluate(template, source)
            values["score"] = result.total
            values["score_breakdown"] = result.breakdown
            if general.auto_priority_from_score:
                priority = self.priorities.resolve(session, module, result.total)
                values["priority_id"] = priority.id if priority is not None else None

        event_type = f"crm.{profile.entity_type}.stage_changed"
        if target.is_won:
            values[profile.won_column] = now
            event_type = profile.won_event
        elif target.is_lost:
            values[profile.lost_column] = now
            event_type = profile.lost_event

        previous_owner = record.owner_user_id
        owner_change = dto.new_owner_id is not None and dto.new_owner_id != previous_owner
        if owner_change:
            values["owner_user_id"] = dto.new_owner_id

        entered_at = _as_aware(record.stage_entered_at)
        time_in_stage = int((now - entered_at).total_seconds()) if entered_at is not None else None
        before = to_record_read(module, record).model_dump(mode="json")

        if not self.records.compare_and_set(session, module, record.id, expected_version, values, require_active=True):
            session.rollback()
            raise ConflictError("record was changed by someone else, reload and retry")
        session.refresh(record)

        session.add(
            CRMStageHistory(
                entity_type=profile.entity_type,
                entity_id=record.id,
                from_stage_id=from_stage_id,
                to_stage_id=target.id,
                changed_by_user_id=_coerce_user_uuid(actor_user.user_id),
                unlock_reason=unlock_reason if backward else None,
                time_in_stage_seconds=time_in_stage,
                changed_at=now,
            )
        )
        if owner_change:
            self.record_service._hand_off_ownership(session, actor_user, module, record.id, previous_owner)

        after = to_record_read(module, record)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{profile.entity_type}",
            entity_id=str(record.id),
            action="change_stage_backward" if backward else "change_stage",
            before=before,
            after=after.model_dump(mode="json"),
            reason=unlock_reason,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                event_type,
                actor_user.user_id,
                {
                    f"{profile.entity_type}_id": str(record.id),
                    "from_stage_id": str(from_stage_id),
                    "to_stage_id": str(target.id),
                    "backward": backward,
                },
            )
        )
        session.commit()
        logger.info(
            "transition.completed",
            extra={
                "crm_module": module,
                "record_id": str(record.id),
                "from_stage_id": str(from_stage_id),
                "to_stage_id": str(target.id),
            },
        )
        score = self.scoring.score_read(template, result) if result is not None else None
        return RecordResult(record=to_record_read(module, record), score=score)


class AuditService:
    def list_entries(
        self,
        session: Session,
        *,
        entity_id: str | None = None,
        entity_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditRead]:
        stmt = select(AuditLog)
        if entity_id is not None:
            stmt = stmt.where(AuditLog.entity_id == entity_id)
        if entity_type is not None:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        rows = session.scalars(stmt.order_by(AuditLog.created_at.desc(), AuditLog.id).limit(limit)).all()
        return [AuditRead.model_validate(row) for row in rows]


class RescoreJobService:
    job_type = "RESCORE_ALL"
    resumable_statuses = {"Queued", "Failed", "Cancelled"}

    def create_job(self, session: Session, actor_user: ActorUser, template_id: uuid.UUID) -> CRMJob:
        template = ScoringService().get_template(session, template_id)
        if not template.is_active:
            raise ValidationError("scoring template is inactive")

        job = CRMJob(
            job_type=self.job_type,
            entity_type=template.module,
            status="Queued",
            requested_by_user_id=_coerce_user_uuid(actor_user.user_id),
            correlation_id=actor_user.correlation_id,
            params_json=json.dumps(
                {"template_id": str(template.id), "page_size": get_settings().rescore_page_size},
            ),
        )
        session.add(job)
        session.flush()
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm_job",
            entity_id=str(job.id),
            action="create",
            before=None,
            after={"job_type": job.job_type, "entity_type": job.entity_type, "status": job.status},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self.get_job(session, job.id)

    def get_job(self, session: Session, job_id: uuid.UUID) -> CRMJob:
        job = session.scalar(select(CRMJob).where(CRMJob.id == job_id))
        if job is None:
            raise NotFoundError("job not found")
        return job

    def request_cancel(self, session: Session, actor_user: ActorUser, job_id: uuid.UUID) -> CRMJob:
        job = self.get_job(session, job_id)
        if job.status in {"Succeeded", "PartiallySucceeded", "Failed", "Cancelled"}:
            raise ConflictError(f"job already finished with status {job.status}")
        job.cancel_requested = True
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            entity_type="crm_job",
            entity_id=str(job.id),
            action="cancel",
            before={"status": job.status},
            after={"status": job.status, "cancel_requested": True},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return self.get_job(session, job.id)

    def stale_before(self) -> datetime:
        return utcnow() - timedelta(seconds=get_settings().job_stale_after_seconds)

    def is_abandoned(self, job: CRMJob) -> bool:
        """A ``Running`` job whose run stopped reporting progress."""
        if job.status != "Running":
            return False
        heartbeat = _as_aware(job.heartbeat_at)
        return heartbeat is None or heartbeat < self.stale_before()

    def prepare_resume(self, session: Session, job_id: uuid.UUID) -> CRMJob:
        job = self.get_job(session, job_id)
        if job.status not in self.resumable_statuses and not self.is_abandoned(job):
            raise ConflictError(f"job with status {job.status} cannot be resumed")
        job.status = "Queued"
        job.cancel_requested = False
        session.commit()
        return job

    def to_response(self, job: CRMJob) -> dict[str, Any]:
        return {
            "id": str(job.id),
            "job_type": job.job_type,
            "entity_type": job.entity_type,
            "status": job.status,
            "requested_by_user_id": str(job.requested_by_user_id),
            "correlation_id": job.correlation_id,
            "cancel_requested": job.cancel_requested,
            "run_attempt": job.run_attempt,
            "params": json.loads(job.params_json),
            "result": json.loads(job.result_json) if job.result_json else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
            "created_at": job.created_at.isoformat(),
        }


@dataclass
class RescoreProgress:
    processed_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    skipped_count: int = 0
    conflict_count: int = 0
    cursor: str | None = None

    @classmethod
    def from_json(cls, raw: str | None) -> RescoreProgress:
        data = json.loads(raw) if raw else {}
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)

    def to_json(self, **extra: Any) -> str:
        return json.dumps({**self.__dict__, **extra})


class RescoreJobRunner:
    """Re-evaluates every open record of a module in keyset-paged batches.

    Each page commits on its own and records the last processed id, so an
    interrupted run resumes where it stopped. A run first claims the job through
    ``JobRepository.claim`` and every later job write is conditioned on that claim,
    so a duplicate delivery is a no-op and a run that lost its claim stops at its
    next page. A ``Running`` job whose heartbeat went stale can be claimed again
    and continues from the stored cursor. Score writes are conditioned on the
    row version seen when the page was read and do not bump it, so interactive
    edits neither block on nor conflict with a running job.
    """

    def __init__(self) -> None:
        self.jobs = RescoreJobService()
        self.records = RecordRepository()
        self.scoring = ScoringService()
        self.priorities = PriorityService()
        self.settings = SettingsService()
        self.job_runs = JobRepository()

    def run_rescore_job(self, session: Session, job_id: uuid.UUID) -> CRMJob:
        job = self.jobs.get_job(session, job_id)
        correlation_id = job.correlation_id
        token = set_correlation_id(correlation_id)
        try:
            attempt = self.job_runs.claim(
                session, job_id, RescoreJobService.resumable_statuses, stale_before=self.jobs.stale_before()
            )
            if attempt is None:
                job_logger.info(
                    "job.claim_skipped",
                    extra={"job_id": str(job_id), "job_type": job.job_type, "status": job.status},
                )
                return self.jobs.get_job(session, job_id)
            job = self.jobs.get_job(session, job_id)
            self._run_claimed(session, job, attempt)
        finally:
            reset_correlation_id(token)
        return self.jobs.get_job(session, job_id)

    def _run_claimed(self, session: Session, job: CRMJob, attempt: int) -> None:
        job_id = job.id
        job_type = job.job_type
        started = time.perf_counter()
        final_status = "Failed"
        progress = RescoreProgress.from_json(job.result_json)

        with tracer.start_as_current_span("crm.job.run") as job_span:
            job_span.set_attribute("job_id", str(job_id))
            job_span.set_attribute("job_type", job_type)
            job_span.set_attribute("run_attempt", attempt)
            job_span.set_attribute("correlation_id", job.correlation_id or "")
            job_logger.info(
                "job.started",
                extra={
                    "job_id": str(job_id),
                    "job_type": job_type,
                    "status": "Running",
                    "run_attempt": attempt,
                    "cursor": progress.cursor,
                },
            )
            try:
                try:
                    final_status = self._process(session, job, attempt, progress)
                    if final_status == "Superseded":
                        return
                    finished = self.job_runs.save_run_state(
                        session,
                        job_id,
                        attempt,
                        {"status": final_status, "result_json": progress.to_json(), "finished_at": utcnow()},
                    )
                    session.commit()
                    if not finished:
                        final_status = "Superseded"
                        job_logger.info("job.superseded", extra={"job_id": str(job_id), "run_attempt": attempt})
                        return
                except Exception as exc:
                    session.rollback()
                    committed = RescoreProgress.from_json(self.jobs.get_job(session, job_id).result_json)
                    self.job_runs.save_run_state(
                        session,
                        job_id,
                        attempt,
                        {
                            "status": "Failed",
                            "result_json": committed.to_json(error=str(exc)[:500]),
                            "finished_at": utcnow(),
                        },
                    )
                    session.commit()
                    job_span.record_exception(exc)
                    job_span.set_status(Status(StatusCode.ERROR, str(exc)))
                    final_status = "Failed"
                    job_logger.exception(
                        "job.failed",
                        extra={"job_id": str(job_id), "job_type": job_type, "error": str(exc), "cursor": committed.cursor},
                    )
                job_logger.info(
                    "job.finished",
                    extra={
                        "job_id": str(job_id),
                        "job_type": job_type,
                        "status": final_status,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "processed_count": progress.processed_count,
                        "skipped_count": progress.skipped_count,
                    },
                )
            finally:
                observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)

    def _process(self, session: Session, job: CRMJob, attempt: int, progress: RescoreProgress) -> str:
        params = json.loads(job.params_json)
        module = job.entity_type
        template = self.scoring.get_template(session, uuid.UUID(params["template_id"]))
        page_size = max(int(params.get("page_size") or get_settings().rescore_page_size), 1)
        auto_priority = self.settings.general(session, module).auto_priority_from_score
        priorities = self.priorities.priorities_for(session, module)
        rules = list(template.rules)

        while True:
            session.refresh(job)
            if job.cancel_requested:
                job_logger.info("job.cancelled", extra={"job_id": str(job.id), "job_type": job.job_type, "cursor": progress.cursor})
                return "Cancelled"

            after_id = uuid.UUID(progress.cursor) if progress.cursor else None
            page = self.records.page_for_rescore(session, module, after_id=after_id, limit=page_size)
            if not page:
                break
            for record in page:
                self._rescore_record(session, module, template.max_score, rules, priorities, auto_priority, record, progress)
            progress.cursor = str(page[-1].id)
            if not self.job_runs.save_run_state(session, job.id, attempt, {"result_json": progress.to_json()}):
                # another run owns the job now; its cursor wins
                session.rollback()
                job_logger.info("job.superseded", extra={"job_id": str(job.id), "run_attempt": attempt})
                return "Superseded"
            session.commit()

        return "PartiallySucceeded" if progress.skipped_count else "Succeeded"

    def _rescore_record(
        self,
        session: Session,
        module: str,
        max_score: int,
        rules: list[CRMScoringRule],
        priorities: list[CRMPriority],
        auto_priority: bool,
        record: CRMLead | CRMOpportunity,
        progress: RescoreProgress,
    ) -> None:
        progress.processed_count += 1
        try:
            result = evaluate_template(max_score, rules, snapshot_record(module, record))
            priority_id = record.priority_id
            if auto_priority:
                priority = select_priority(priorities, result.total)
                priority_id = priority.id if priority is not None else None  # type: ignore[union-attr]
        except Exception as exc:
            progress.skipped_count += 1
            observe_rescore_records("skipped")
            job_logger.warning(
                "rescore.record_skipped",
                exc_info=True,
                extra={"crm_module": module, "record_id": str(record.id), "error": str(exc)},
            )
            return

        if (
            result.total == record.score
            and result.breakdown == (record.score_breakdown or {})
            and priority_id == record.priority_id
        ):
            progress.unchanged_count += 1
            observe_rescore_records("unchanged")
            return

        written = self.records.compare_and_set(
            session,
            module,
            record.id,
            record.row_version,
            {"score": result.total, "score_breakdown": result.breakdown, "priority_id": priority_id},
            bump_version=False,
            require_active=True,
        )
        if written:
            progress.updated_count += 1
            observe_rescore_records("updated")
        else:
            # the record moved on since the page was read; that edit scored it
            progress.conflict_count += 1
            observe_rescore_records("conflict")
