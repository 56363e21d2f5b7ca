from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.errors import CRMError
from app.crm.schemas import (
    AuditRead,
    LeadCreate,
    LeadRead,
    Module,
    OpportunityCreate,
    OpportunityRead,
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
    SettingKey,
    StageChangeRequest,
    StageCreate,
    StageFieldRequirementRead,
    StageFieldsReplace,
    StageHistoryRead,
    StageRead,
    StageReorderRequest,
    StageUpdate,
)
from app.crm.service import (
    ActorUser,
    AuditService,
    FieldRequirementGate,
    PipelineService,
    PriorityService,
    RecordService,
    RecordTeamService,
    RescoreJobRunner,
    RescoreJobService,
    RoutingService,
    ScoringService,
    SettingsService,
    StageGraphService,
    TransitionService,
)
from app.crm.tasks import dispatch_rescore

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
scoring_router = APIRouter(prefix="/api/crm", tags=["crm.scoring"])
priorities_router = APIRouter(prefix="/api/crm", tags=["crm.priorities"])
routing_router = APIRouter(prefix="/api/crm", tags=["crm.routing"])
settings_router = APIRouter(prefix="/api/crm", tags=["crm.settings"])
records_router = APIRouter(prefix="/api/crm/records", tags=["crm.records"])
jobs_router = APIRouter(prefix="/api/crm", tags=["crm.jobs"])
audit_router = APIRouter(prefix="/api/crm", tags=["crm.audit"])

pipeline_service = PipelineService()
stage_graph_service = StageGraphService()
gate = FieldRequirementGate()
scoring_service = ScoringService()
priority_service = PriorityService()
routing_service = RoutingService()
settings_service = SettingsService()
record_service = RecordService()
record_team_service = RecordTeamService()
transition_service = TransitionService()
rescore_job_service = RescoreJobService()
rescore_job_runner = RescoreJobRunner()
audit_service = AuditService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _record_permission(module: str, action: str) -> str:
    return f"crm.{module}.{action}"


# pipelines and stages


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    module: Module | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_pipelines(db, module)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_list_failed")


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_create_failed")


@pipelines_router.put("/pipelines/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_update_failed")


@pipelines_router.delete("/pipelines/{pipeline_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_pipeline(db, user, pipeline_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_delete_failed")


@pipelines_router.get("/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    pipeline_id: uuid.UUID = Query(alias="pipelineId"),
    module: Module | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return stage_graph_service.list_stages(db, pipeline_id, module)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_list_failed")


@pipelines_router.post("/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return stage_graph_service.create_stage(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_create_failed")


@pipelines_router.put("/stages/reorder", response_model=list[StageRead])
def reorder_stages(
    request: Request,
    dto: StageReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return stage_graph_service.reorder(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_reorder_failed")


@pipelines_router.put("/stages/{stage_id}", response_model=StageRead)
def update_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: StageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return stage_graph_service.update_stage(db, user, stage_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_update_failed")


@pipelines_router.delete("/stages/{stage_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        stage_graph_service.delete_stage(db, user, stage_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_delete_failed")


@pipelines_router.get("/stages/{stage_id}/fields", response_model=list[StageFieldRequirementRead])
def list_stage_fields(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageFieldRequirementRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return gate.list_requirements(db, stage_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_fields_get_failed")


@pipelines_router.put("/stages/{stage_id}/fields", response_model=list[StageFieldRequirementRead])
def replace_stage_fields(
    request: Request,
    stage_id: uuid.UUID,
    dto: StageFieldsReplace,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageFieldRequirementRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return gate.replace_requirements(db, user, stage_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_fields_update_failed")


# scoring


@scoring_router.get("/scoring-templates", response_model=list[ScoringTemplateRead])
def list_scoring_templates(
    request: Request,
    module: Module | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ScoringTemplateRead] | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        return scoring_service.list_templates(db, module)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_scoring_template_list_failed")


@scoring_router.post("/scoring-templates", response_model=ScoringTemplateRead, status_code=status.HTTP_201_CREATED)
def create_scoring_template(
    request: Request,
    dto: ScoringTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoringTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        return scoring_service.create_template(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_scoring_template_create_failed")


@scoring_router.put("/scoring-templates/{template_id}", response_model=ScoringTemplateRead)
def update_scoring_template(
    request: Request,
    template_id: uuid.UUID,
    dto: ScoringTemplateUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoringTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        return scoring_service.update_template(db, user, template_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_scoring_template_update_failed")


@scoring_router.post(
    "/scoring-templates/{template_id}/rules",
    response_model=ScoringRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_scoring_rule(
    request: Request,
    template_id: uuid.UUID,
    dto: ScoringRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoringRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        return scoring_service.add_rule(db, user, template_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_scoring_rule_create_failed")


@scoring_router.put("/scoring-rules/{rule_id}", response_model=ScoringRuleRead)
def update_scoring_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: ScoringRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoringRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        return scoring_service.update_rule(db, user, rule_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_scoring_rule_update_failed")


@scoring_router.delete("/scoring-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_scoring_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.scoring.manage")
        scoring_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_scoring_rule_delete_failed")


@scoring_router.post(
    "/scoring-templates/{template_id}/rescore-all",
    response_model=dict[str, Any],
    status_code=status.HTTP_202_ACCEPTED,
)
def rescore_all(
    request: Request,
    template_id: uuid.UUID,
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        job = rescore_job_service.create_job(db, user, template_id)
        if sync or get_settings().auto_run_jobs:
            job = rescore_job_runner.run_rescore_job(db, job.id)
        else:
            dispatch_rescore(job.id)
        return rescore_job_service.to_response(job)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_rescore_all_failed")


# priorities


@priorities_router.get("/priorities", response_model=list[PriorityRead])
def list_priorities(
    request: Request,
    module: Module = Query(default="leads"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PriorityRead] | JSONResponse:
    try:
        require_permission(user, "crm.priorities.manage")
        return priority_service.list_priorities(db, module)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_priority_list_failed")


@priorities_router.post("/priorities", response_model=PriorityRead, status_code=status.HTTP_201_CREATED)
def create_priority(
    request: Request,
    dto: PriorityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PriorityRead | JSONResponse:
    try:
        require_permission(user, "crm.priorities.manage")
        return priority_service.create_priority(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_priority_create_failed")


@priorities_router.put("/priorities/{priority_id}", response_model=PriorityRead)
def update_priority(
    request: Request,
    priority_id: uuid.UUID,
    dto: PriorityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PriorityRead | JSONResponse:
    try:
        require_permission(user, "crm.priorities.manage")
        return priority_service.update_priority(db, user, priority_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_priority_update_failed")


@priorities_router.delete("/priorities/{priority_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_priority(
    request: Request,
    priority_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.priorities.manage")
        priority_service.delete_priority(db, user, priority_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_priority_delete_failed")


# routing


@routing_router.get("/routing-rules", response_model=list[RoutingRuleRead])
def list_routing_rules(
    request: Request,
    module: Module | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RoutingRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.routing.manage")
        return routing_service.list_rules(db, module)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_routing_rule_list_failed")


@routing_router.post("/routing-rules", response_model=RoutingRuleRead, status_code=status.HTTP_201_CREATED)
def create_routing_rule(
    request: Request,
    dto: RoutingRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RoutingRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.routing.manage")
        return routing_service.create_rule(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_routing_rule_create_failed")


@routing_router.put("/routing-rules/{rule_id}", response_model=RoutingRuleRead)
def update_routing_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: RoutingRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RoutingRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.routing.manage")
        return routing_service.update_rule(db, user, rule_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_routing_rule_update_failed")


@routing_router.delete("/routing-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_routing_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.routing.manage")
        routing_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_routing_rule_delete_failed")


# settings


@settings_router.get("/settings/{module}", response_model=dict[str, dict[str, Any]])
def get_module_settings(
    request: Request,
    module: Module,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, dict[str, Any]] | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return settings_service.get_all(db, module)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_settings_get_failed")


@settings_router.put("/settings/{module}/{key}", response_model=dict[str, Any])
def merge_module_settings(
    request: Request,
    module: Module,
    key: SettingKey,
    patch: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return settings_service.merge(db, user, module, key, patch)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_settings_update_failed")


# records


@records_router.post("/leads", response_model=RecordResult, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.write")
        return record_service.create_lead(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_create_failed")


@records_router.post("/opportunities", response_model=RecordResult, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.write")
        return record_service.create_opportunity(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_opportunity_create_failed")


@records_router.get("/{module}/{record_id}", response_model=LeadRead | OpportunityRead)
def get_record(
    request: Request,
    module: Module,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | OpportunityRead | JSONResponse:
    try:
        require_permission(user, _record_permission(module, "read"))
        return record_service.get_record(db, module, record_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_get_failed")


@records_router.patch("/{module}/{record_id}", response_model=RecordResult)
def update_record(
    request: Request,
    module: Module,
    record_id: uuid.UUID,
    dto: RecordUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordResult | JSONResponse:
    try:
        require_permission(user, _record_permission(module, "write"))
        return record_service.update_record(db, user, module, record_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_update_failed")


@records_router.post("/{module}/{record_id}/stage", response_model=RecordResult)
def change_stage(
    request: Request,
    module: Module,
    record_id: uuid.UUID,
    dto: StageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordResult | JSONResponse:
    try:
        require_permission(user, _record_permission(module, "write"))
        return transition_service.change_stage(db, user, module, record_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_change_failed")


@records_router.get("/{module}/{record_id}/score", response_model=ScoreRead)
def get_record_score(
    request: Request,
    module: Module,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ScoreRead | JSONResponse:
    try:
        require_permission(user, _record_permission(module, "read"))
        return record_service.preview_score(db, module, record_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_score_failed")


@records_router.get("/{module}/{record_id}/stage-history", response_model=list[StageHistoryRead])
def get_stage_history(
    request: Request,
    module: Module,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        require_permission(user, _record_permission(module, "read"))
        return record_service.stage_history(db, module, record_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_stage_history_failed")


@records_router.get("/{module}/{record_id}/team", response_model=list[RecordTeamMemberRead])
def get_record_team(
    request: Request,
    module: Module,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RecordTeamMemberRead] | JSONResponse:
    try:
        require_permission(user, _record_permission(module, "read"))
        record_service.records.get(db, module, record_id)
        return record_team_service.list_members(db, module, record_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_record_team_failed")


# jobs and audit


@jobs_router.get("/jobs/{job_id}", response_model=dict[str, Any])
def get_job_status(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.jobs.read")
        return rescore_job_service.to_response(rescore_job_service.get_job(db, job_id))
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_job_get_failed")


@jobs_router.post("/jobs/{job_id}/cancel", response_model=dict[str, Any])
def cancel_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        return rescore_job_service.to_response(rescore_job_service.request_cancel(db, user, job_id))
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_job_cancel_failed")


@jobs_router.post("/jobs/{job_id}/resume", response_model=dict[str, Any], status_code=status.HTTP_202_ACCEPTED)
def resume_job(
    request: Request,
    job_id: uuid.UUID,
    sync: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.scoring.manage")
        job = rescore_job_service.prepare_resume(db, job_id)
        if sync or get_settings().auto_run_jobs:
            job = rescore_job_runner.run_rescore_job(db, job.id)
        else:
            dispatch_rescore(job.id)
        return rescore_job_service.to_response(job)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_job_resume_failed")


@audit_router.get("/audit", response_model=list[AuditRead])
def list_audit_entries(
    request: Request,
    entity_id: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditRead] | JSONResponse:
    try:
        require_permission(user, "crm.audit.read")
        return audit_service.list_entries(db, entity_id=entity_id, entity_type=entity_type, limit=limit)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_audit_list_failed")
