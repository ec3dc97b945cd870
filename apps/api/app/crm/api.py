from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, expand_roles, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityToggleRequest,
    ActivityUpdate,
    AlertSettingRead,
    AlertSettingUpdate,
    AssignLeadRequest,
    AssignmentResolutionRead,
    AssignmentRuleCreate,
    AssignmentRuleRead,
    AssignmentRuleUpdate,
    AttentionLeadRead,
    AuditRead,
    ClientRead,
    ContactMessageConvertRequest,
    ContactMessageCreate,
    ContactMessageRead,
    DuplicateCandidateRead,
    DuplicateCheckRequest,
    EmailTemplateCreate,
    EmailTemplateRead,
    EmailTemplateRenderRead,
    EmailTemplateRenderRequest,
    EmailTemplateUpdate,
    LeadAlertsRead,
    LeadCreate,
    LeadCreateResult,
    LeadMergeRequest,
    LeadMergeResult,
    LeadPriority,
    LeadRead,
    LeadSource,
    LeadStageRead,
    LeadStatusName,
    LeadUpdate,
    LostColumnRead,
    LostReasonRead,
    MarkLostRequest,
    MarkWonRequest,
    MetricsGroupBy,
    NoteCreate,
    NoteRead,
    PipelineBoardRead,
    PipelineForecastRead,
    PipelineMetricsRead,
    ReactivateRequest,
    ServiceType,
    StageChangeRequest,
    StageChangeResult,
)
from app.crm.service import (
    ActorUser,
    activity_service,
    alert_setting_service,
    assignment_rule_service,
    audit_service,
    contact_message_service,
    email_template_service,
    lead_service,
    note_service,
    pipeline_service,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
pipeline_router = APIRouter(prefix="/api/crm", tags=["crm.pipeline"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
notes_router = APIRouter(prefix="/api/crm", tags=["crm.notes"])
assignment_router = APIRouter(prefix="/api/crm", tags=["crm.assignment"])
settings_router = APIRouter(prefix="/api/crm", tags=["crm.settings"])
messages_router = APIRouter(prefix="/api/crm", tags=["crm.contact_messages"])
templates_router = APIRouter(prefix="/api/crm", tags=["crm.email_templates"])


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


def _message(detail: Any) -> str:
    if isinstance(detail, list):
        return "; ".join(f"{item['field']}: {item['message']}" for item in detail if isinstance(item, dict))
    return str(detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=expand_roles(auth_user.roles),
        correlation_id=get_correlation_id(),
        name=auth_user.name,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    stage_id: uuid.UUID | None = Query(default=None),
    status_filter: LeadStatusName | None = Query(default=None, alias="status"),
    assigned_user_id: str | None = Query(default=None),
    service_type: ServiceType | None = Query(default=None),
    source: LeadSource | None = Query(default=None),
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_leads(
            db,
            user,
            filters={
                "stage_id": stage_id,
                "status": status_filter,
                "assigned_user_id": assigned_user_id,
                "service_type": service_type,
                "source": source,
                "q": q,
            },
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads", response_model=LeadCreateResult, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadCreateResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/check-duplicates", response_model=list[DuplicateCandidateRead])
def check_duplicates(
    request: Request,
    dto: DuplicateCheckRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DuplicateCandidateRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.check_duplicates(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_duplicate_check_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.delete_lead(db, user, lead_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_delete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: AssignLeadRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.assign_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_assign_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/change-stage", response_model=StageChangeResult)
def change_lead_stage(
    request: Request,
    lead_id: uuid.UUID,
    dto: StageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageChangeResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.change_stage")
        return lead_service.change_stage(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_change_stage_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/mark-won", response_model=LeadRead)
def mark_lead_won(
    request: Request,
    lead_id: uuid.UUID,
    dto: MarkWonRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.close")
        return lead_service.mark_as_won(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_mark_won_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/mark-lost", response_model=LeadRead)
def mark_lead_lost(
    request: Request,
    lead_id: uuid.UUID,
    dto: MarkLostRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.close")
        return lead_service.mark_as_lost(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_mark_lost_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/reactivate", response_model=LeadRead)
def reactivate_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: ReactivateRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.close")
        return lead_service.reactivate(db, user, lead_id, dto or ReactivateRequest())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_reactivate_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads/{lead_id}/merge", response_model=LeadMergeResult)
def merge_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadMergeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadMergeResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.merge")
        return lead_service.merge_into_existing(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_merge_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/alerts", response_model=LeadAlertsRead)
def get_lead_alerts(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadAlertsRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_alerts(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_alerts_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/matching-clients", response_model=list[ClientRead])
def get_matching_clients(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.close")
        return lead_service.find_matching_clients(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_matching_clients_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}/audit", response_model=list[AuditRead])
def get_lead_audit(
    request: Request,
    lead_id: uuid.UUID,
    action: list[str] | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditRead] | JSONResponse:
    try:
        require_permission(user, "crm.audit.read")
        return audit_service.list_lead_audit(db, user, lead_id, actions=action)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_audit_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/stages", response_model=list[LeadStageRead])
def list_stages(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.list_stages(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/lost-reasons", response_model=list[LostReasonRead])
def list_lost_reasons(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LostReasonRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.list_lost_reasons(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lost_reason_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/pipeline/board", response_model=PipelineBoardRead)
def get_pipeline_board(
    request: Request,
    assigned_user_id: str | None = Query(default=None),
    service_type: ServiceType | None = Query(default=None),
    priority: LeadPriority | None = Query(default=None),
    include_leads: bool = Query(default=True),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineBoardRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.board(
            db,
            user,
            filters={"assigned_user_id": assigned_user_id, "service_type": service_type, "priority": priority},
            include_leads=include_leads,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_board_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/pipeline/forecast", response_model=PipelineForecastRead)
def get_pipeline_forecast(
    request: Request,
    assigned_user_id: str | None = Query(default=None),
    service_type: ServiceType | None = Query(default=None),
    include_leads: bool = Query(default=True),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineForecastRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.forecast(
            db,
            user,
            filters={"assigned_user_id": assigned_user_id, "service_type": service_type},
            include_leads=include_leads,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_forecast_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/pipeline/lost", response_model=list[LostColumnRead])
def get_pipeline_lost(
    request: Request,
    assigned_user_id: str | None = Query(default=None),
    service_type: ServiceType | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LostColumnRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.lost(
            db,
            user,
            filters={"assigned_user_id": assigned_user_id, "service_type": service_type},
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_lost_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/pipeline/metrics", response_model=PipelineMetricsRead)
def get_pipeline_metrics(
    request: Request,
    period_start: datetime | None = Query(default=None),
    period_end: datetime | None = Query(default=None),
    group_by: MetricsGroupBy = Query(default="month"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineMetricsRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.metrics(db, user, period_start, period_end, group_by)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_metrics_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@pipeline_router.get("/pipeline/attention", response_model=list[AttentionLeadRead])
def get_pipeline_attention(
    request: Request,
    assigned_user_id: str | None = Query(default=None),
    service_type: ServiceType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AttentionLeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return pipeline_service.attention(
            db,
            user,
            filters={"assigned_user_id": assigned_user_id, "service_type": service_type},
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_attention_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/leads/{lead_id}/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return activity_service.list_activities(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@activities_router.post(
    "/leads/{lead_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_activity(
    request: Request,
    lead_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.create_activity(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_create_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@activities_router.patch("/activities/{activity_id}", response_model=ActivityRead)
def update_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.update_activity(db, user, activity_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_update_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/activities/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityToggleRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        row_version = dto.row_version if dto is not None else None
        return activity_service.set_completed(db, user, activity_id, True, row_version)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_complete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/activities/{activity_id}/uncomplete", response_model=ActivityRead)
def uncomplete_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityToggleRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        row_version = dto.row_version if dto is not None else None
        return activity_service.set_completed(db, user, activity_id, False, row_version)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_uncomplete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@activities_router.delete("/activities/{activity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.activities.write")
        activity_service.delete_activity(db, user, activity_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_delete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@notes_router.get("/leads/{lead_id}/notes", response_model=list[NoteRead])
def list_notes(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return note_service.list_notes(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@notes_router.post("/leads/{lead_id}/notes", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def create_note(
    request: Request,
    lead_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        require_permission(user, "crm.notes.write")
        return note_service.create_note(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_create_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@notes_router.delete("/notes/{note_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_note(
    request: Request,
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.notes.write")
        note_service.delete_note(db, user, note_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_delete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@assignment_router.get("/assignment-rules", response_model=list[AssignmentRuleRead])
def list_assignment_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AssignmentRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return assignment_rule_service.list_rules(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_assignment_rule_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@assignment_router.get("/assignment-rules/resolve", response_model=AssignmentResolutionRead)
def resolve_assignment(
    request: Request,
    service_type: ServiceType = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentResolutionRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return assignment_rule_service.resolve(db, service_type)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_assignment_resolve_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@assignment_router.post(
    "/assignment-rules",
    response_model=AssignmentRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_assignment_rule(
    request: Request,
    dto: AssignmentRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return assignment_rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_assignment_rule_create_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@assignment_router.patch("/assignment-rules/{rule_id}", response_model=AssignmentRuleRead)
def update_assignment_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AssignmentRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AssignmentRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return assignment_rule_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_assignment_rule_update_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@assignment_router.delete("/assignment-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_assignment_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.settings.manage")
        assignment_rule_service.delete_rule(db, user, rule_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_assignment_rule_delete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@settings_router.get("/alert-settings", response_model=list[AlertSettingRead])
def list_alert_settings(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AlertSettingRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return alert_setting_service.list_settings(db)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_alert_setting_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@settings_router.patch("/alert-settings/{setting_key}", response_model=AlertSettingRead)
def update_alert_setting(
    request: Request,
    setting_key: str,
    dto: AlertSettingUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AlertSettingRead | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return alert_setting_service.update_setting(db, user, setting_key, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_alert_setting_update_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@messages_router.post(
    "/contact-messages",
    response_model=ContactMessageRead,
    status_code=status.HTTP_201_CREATED,
)
def create_contact_message(
    request: Request,
    dto: ContactMessageCreate,
    db: Session = Depends(get_db),
) -> ContactMessageRead | JSONResponse:
    try:
        return contact_message_service.create_message(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_message_create_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@messages_router.get("/contact-messages", response_model=list[ContactMessageRead])
def list_contact_messages(
    request: Request,
    is_converted: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactMessageRead] | JSONResponse:
    try:
        require_permission(user, "crm.messages.read")
        return contact_message_service.list_messages(db, user, is_converted=is_converted)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_message_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@messages_router.post(
    "/contact-messages/{message_id}/convert",
    response_model=LeadCreateResult,
    status_code=status.HTTP_201_CREATED,
)
def convert_contact_message(
    request: Request,
    message_id: uuid.UUID,
    dto: ContactMessageConvertRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadCreateResult | JSONResponse:
    try:
        require_permission(user, "crm.messages.convert")
        return contact_message_service.convert_message(db, user, message_id, dto or ContactMessageConvertRequest())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_message_convert_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@templates_router.get("/email-templates", response_model=list[EmailTemplateRead])
def list_email_templates(
    request: Request,
    include_inactive: bool = Query(default=False),
    category: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[EmailTemplateRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return email_template_service.list_templates(db, include_inactive=include_inactive, category=category)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_template_list_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@templates_router.post(
    "/email-templates",
    response_model=EmailTemplateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_email_template(
    request: Request,
    dto: EmailTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return email_template_service.create_template(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_template_create_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@templates_router.patch("/email-templates/{template_id}", response_model=EmailTemplateRead)
def update_email_template(
    request: Request,
    template_id: uuid.UUID,
    dto: EmailTemplateUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.settings.manage")
        return email_template_service.update_template(db, user, template_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_template_update_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@templates_router.delete("/email-templates/{template_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_email_template(
    request: Request,
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.settings.manage")
        email_template_service.delete_template(db, user, template_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_template_delete_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )


@templates_router.post("/email-templates/{template_id}/render", response_model=EmailTemplateRenderRead)
def render_email_template(
    request: Request,
    template_id: uuid.UUID,
    dto: EmailTemplateRenderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRenderRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return email_template_service.render(db, user, template_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_email_template_render_failed",
            message=_message(exc.detail),
            details=exc.detail,
        )
