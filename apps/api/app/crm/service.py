from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.aggregation import (
    aggregate_by_forecast_month,
    aggregate_by_stage,
    compute_metrics,
    group_lost_by_stage,
    leads_requiring_attention,
)
from app.crm.alerts import AlertThresholds, as_utc, compute_alerts, most_urgent
from app.crm.assignment import select_rule
from app.crm.duplicates import (
    DuplicateCandidate,
    DuplicateMatcher,
    EmailPhoneDuplicateMatcher,
    build_merge_note,
    phone_key,
)
from app.crm.models import (
    CRMAssignmentRule,
    CRMClient,
    CRMContactMessage,
    CRMEmailTemplate,
    CRMLead,
    CRMLeadActivity,
    CRMLeadNote,
    CRMLeadStage,
    CRMLostReason,
    utcnow,
)
from app.crm.repositories import (
    alert_setting_repository,
    assignment_rule_repository,
    client_repository,
    contact_message_repository,
    email_template_repository,
    lead_repository,
    lost_reason_repository,
    stage_repository,
)
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
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
    LeadRead,
    LeadStageRead,
    LeadUpdate,
    LostColumnRead,
    LostReasonRead,
    MarkLostRequest,
    MarkWonRequest,
    NoteCreate,
    NoteRead,
    PipelineBoardRead,
    PipelineForecastRead,
    PipelineMetricsRead,
    ReactivateRequest,
    StageChangeRequest,
    StageChangeResult,
)
from app.crm.stages import (
    StageCatalog,
    StageNotFoundError,
    StageTransitionError,
    ensure_can_mark_lost,
    ensure_can_mark_won,
    ensure_can_reactivate,
    lead_status,
    plan_stage_change,
)
from app.crm.templates import (
    build_mailto,
    placeholders_in,
    render_template,
    unsupported_variables,
    variables_from_lead,
)
from app.metrics import observe_alerts, observe_assignment, observe_duplicate_check, observe_lead_transition
from app.otel import mark_span_failed, pipeline_span

logger = logging.getLogger("app.crm.pipeline")

CONTACT_FORM_NOTE = "Lead creado desde formulario de contacto"


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str]
    correlation_id: str | None = None
    name: str | None = None


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


def _conflict(reason: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=reason)


def _invalid(field: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=[{"field": field, "message": message}],
    )


def _check_row_version(current: int, expected: int | None) -> None:
    if expected is not None and current != expected:
        raise _conflict("row_version conflict")


def load_alert_thresholds(session: Session) -> AlertThresholds:
    settings = get_settings()
    defaults = AlertThresholds(
        no_contact=timedelta(hours=settings.alert_no_contact_hours),
        quotation_no_response=timedelta(days=settings.alert_quotation_no_response_days),
        stalled=timedelta(days=settings.alert_stalled_days),
    )
    return AlertThresholds.from_settings(alert_setting_repository.list(session), defaults)


def load_stage_catalog(session: Session) -> StageCatalog:
    return StageCatalog(stage_repository.list(session))


class LeadService:
    entity_type = "crm.lead"

    def __init__(self, matcher: DuplicateMatcher | None = None) -> None:
        self._matcher = matcher

    @property
    def matcher(self) -> DuplicateMatcher:
        if self._matcher is None:
            return EmailPhoneDuplicateMatcher(limit=get_settings().duplicate_candidate_limit)
        return self._matcher

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadCreateResult:
        with pipeline_span("crm.lead.create") as span:
            email = str(dto.email) if dto.email is not None else None
            duplicates: list[DuplicateCandidate] = []
            if not dto.skip_duplicate_check:
                duplicates = self.matcher.find_candidates(
                    session,
                    email=email,
                    phone=dto.phone,
                    company_name=dto.company_name,
                )
                observe_duplicate_check(len(duplicates))
            span.set_attribute("duplicate_count", len(duplicates))

            stage = self.resolve_create_stage(session, dto.stage_id)
            assigned_user_id = dto.assigned_user_id
            if assigned_user_id is None:
                assigned_user_id = assignment_rule_service.resolve_user(session, dto.service_type)

            lead = self.insert_lead(
                session,
                actor_user,
                stage,
                {
                    "company_name": dto.company_name.strip(),
                    "contact_name": dto.contact_name.strip(),
                    "email": email,
                    "phone": dto.phone,
                    "location": dto.location,
                    "service_type": dto.service_type,
                    "description": dto.description,
                    "source": dto.source,
                    "probability": dto.probability if dto.probability is not None else stage.probability,
                    "expected_revenue": dto.expected_revenue,
                    "date_deadline": dto.date_deadline,
                    "priority": dto.priority,
                    "assigned_user_id": assigned_user_id,
                    "quotation_id": dto.quotation_id,
                },
            )
            session.commit()
            span.set_attribute("lead_id", str(lead.id))
            if duplicates:
                logger.info(
                    "lead.created_with_duplicates",
                    extra={"lead_id": str(lead.id), "candidate_count": len(duplicates)},
                )
            return LeadCreateResult(
                lead=self._to_read_model(session, lead.id),
                duplicates=[self.to_candidate_read(item) for item in duplicates],
            )

    def insert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        stage: CRMLeadStage,
        values: dict[str, Any],
    ) -> CRMLead:
        now = utcnow()
        lead = CRMLead(
            code=lead_repository.next_code(session, get_settings().lead_code_prefix, now.year),
            stage=stage,
            stage_id=stage.id,
            stage_changed_at=now,
            phone_key=phone_key(values.get("phone")) or None,
            created_by=actor_user.user_id,
            **values,
        )
        session.add(lead)
        session.flush()

        created = self._to_read(lead, AlertThresholds(None, None, None))
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user.user_id,
                {
                    "lead_id": str(lead.id),
                    "code": lead.code,
                    "stage_id": str(lead.stage_id),
                    "assigned_user_id": lead.assigned_user_id,
                    "source": lead.source,
                },
            )
        )
        logger.info(
            "lead.created",
            extra={
                "lead_id": str(lead.id),
                "lead_code": lead.code,
                "stage_id": str(lead.stage_id),
                "assigned_user_id": lead.assigned_user_id,
                "actor_user_id": actor_user.user_id,
            },
        )
        return lead

    def list_leads(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[LeadRead]:
        thresholds = load_alert_thresholds(session)
        return [self._to_read(lead, thresholds) for lead in lead_repository.list(session, filters)]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return self._to_read_model(session, lead_id)

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self.get_lead_row(session, lead_id)
        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        for field_name in ("company_name", "contact_name", "service_type", "source", "priority", "expected_revenue"):
            if field_name in payload and payload[field_name] is None:
                raise _invalid(field_name, "field cannot be null")
        if "probability" in payload and payload["probability"] is None:
            raise _invalid("probability", "field cannot be null")

        if "email" in payload:
            payload["email"] = str(payload["email"]) if payload["email"] is not None else None
        if "phone" in payload:
            payload["phone_key"] = phone_key(payload["phone"]) or None
        if not payload:
            _check_row_version(lead.row_version, dto.row_version)
            return self._to_read_model(session, lead.id)

        before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")
        conditions = [CRMLead.id == lead.id]
        if dto.row_version is not None:
            conditions.append(CRMLead.row_version == dto.row_version)
        result = session.execute(
            update(CRMLead)
            .where(and_(*conditions))
            .values(**payload, updated_at=utcnow(), row_version=CRMLead.row_version + 1)
        )
        if result.rowcount == 0:
            session.rollback()
            raise _conflict("row_version conflict")

        session.refresh(lead)
        updated = self._to_read(lead, load_alert_thresholds(session))
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.updated",
                actor_user.user_id,
                {"lead_id": str(lead.id), "fields": sorted(payload)},
            )
        )
        session.commit()
        return self._to_read_model(session, lead.id)

    def assign_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: AssignLeadRequest,
    ) -> LeadRead:
        lead = self.get_lead_row(session, lead_id)
        _check_row_version(lead.row_version, dto.row_version)
        before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")

        lead.assigned_user_id = dto.assigned_user_id
        lead.updated_at = utcnow()
        lead.row_version = lead.row_version + 1
        session.flush()

        updated = self._to_read(lead, load_alert_thresholds(session))
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="assign",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.assigned",
                actor_user.user_id,
                {"lead_id": str(lead.id), "assigned_user_id": lead.assigned_user_id},
            )
        )
        session.commit()
        return self._to_read_model(session, lead.id)

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: StageChangeRequest,
    ) -> StageChangeResult:
        with pipeline_span("crm.lead.change_stage", lead_id=lead_id, to_stage_id=dto.stage_id) as span:
            lead = self.get_lead_row(session, lead_id)
            _check_row_version(lead.row_version, dto.row_version)
            catalog = load_stage_catalog(session)
            try:
                target = catalog.get(dto.stage_id)
            except StageNotFoundError as exc:
                raise _not_found("stage") from exc

            try:
                plan = plan_stage_change(lead_status(lead.stage, lead.lost_reason_id), target)
            except StageTransitionError as exc:
                raise self._rejection("change_stage", lead, exc) from exc
            span.set_attribute("outcome", plan.outcome)

            if plan.outcome != "moved":
                observe_lead_transition("change_stage", plan.outcome)
                return StageChangeResult(
                    outcome=plan.outcome,
                    lead=self._to_read(lead, load_alert_thresholds(session)),
                    won_stage_id=target.id if plan.outcome == "requires_win_confirmation" else None,
                )

            before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")
            from_stage_id = lead.stage_id
            now = utcnow()
            lead.stage = target
            lead.stage_id = target.id
            lead.probability = target.probability
            lead.stage_changed_at = now
            lead.updated_at = now
            lead.row_version = lead.row_version + 1
            session.flush()

            updated = self._to_read(lead, load_alert_thresholds(session))
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="change_stage",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.stage_changed",
                    actor_user.user_id,
                    {
                        "lead_id": str(lead.id),
                        "from_stage_id": str(from_stage_id),
                        "to_stage_id": str(target.id),
                    },
                )
            )
            session.commit()
            observe_lead_transition("change_stage", "moved")
            logger.info(
                "lead.stage_changed",
                extra={
                    "lead_id": str(lead.id),
                    "from_stage_id": str(from_stage_id),
                    "to_stage_id": str(target.id),
                    "actor_user_id": actor_user.user_id,
                },
            )
            return StageChangeResult(outcome="moved", lead=self._to_read_model(session, lead.id))

    def mark_as_won(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: MarkWonRequest) -> LeadRead:
        with pipeline_span("crm.lead.mark_won", lead_id=lead_id, client_action=dto.client_action) as span:
            lead = self.get_lead_row(session, lead_id)
            _check_row_version(lead.row_version, dto.row_version)
            try:
                ensure_can_mark_won(lead_status(lead.stage, lead.lost_reason_id))
            except StageTransitionError as exc:
                raise self._rejection("mark_won", lead, exc) from exc

            won_stage = load_stage_catalog(session).won_stage()
            if won_stage is None:
                raise _conflict("no active won stage is configured")

            before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")
            try:
                client_id = self._resolve_win_client(session, actor_user, lead, dto)
                now = utcnow()
                lead.stage = won_stage
                lead.stage_id = won_stage.id
                lead.probability = won_stage.probability
                lead.stage_changed_at = now
                lead.closed_at = now
                lead.client_id = client_id
                lead.updated_at = now
                lead.row_version = lead.row_version + 1
                session.flush()
            except HTTPException:
                session.rollback()
                observe_lead_transition("mark_won", "failed")
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                observe_lead_transition("mark_won", "failed")
                mark_span_failed(span, exc)
                logger.warning(
                    "lead.win_failed",
                    extra={
                        "lead_id": str(lead_id),
                        "client_action": dto.client_action,
                        "error": str(exc),
                    },
                )
                raise _conflict("client could not be created; the win was rolled back") from exc

            updated = self._to_read(lead, load_alert_thresholds(session))
            if dto.client_action == "create" and client_id is not None:
                # Only audited once the whole win has flushed.
                audit.record(
                    actor_user_id=actor_user.user_id,
                    entity_type="crm.client",
                    entity_id=str(client_id),
                    action="create",
                    before=None,
                    after=ClientRead.model_validate(session.get(CRMClient, client_id)).model_dump(mode="json"),
                    correlation_id=actor_user.correlation_id,
                )
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="mark_won",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.won",
                    actor_user.user_id,
                    {
                        "lead_id": str(lead.id),
                        "client_action": dto.client_action,
                        "client_id": str(client_id) if client_id is not None else None,
                        "expected_revenue": str(lead.expected_revenue),
                    },
                )
            )
            session.commit()
            observe_lead_transition("mark_won", "won")
            logger.info(
                "lead.won",
                extra={
                    "lead_id": str(lead.id),
                    "client_action": dto.client_action,
                    "client_id": str(client_id) if client_id is not None else None,
                    "actor_user_id": actor_user.user_id,
                },
            )
            return self._to_read_model(session, lead.id)

    def mark_as_lost(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: MarkLostRequest) -> LeadRead:
        with pipeline_span("crm.lead.mark_lost", lead_id=lead_id):
            lead = self.get_lead_row(session, lead_id)
            _check_row_version(lead.row_version, dto.row_version)
            try:
                ensure_can_mark_lost(lead_status(lead.stage, lead.lost_reason_id))
            except StageTransitionError as exc:
                raise self._rejection("mark_lost", lead, exc) from exc

            reason = session.get(CRMLostReason, dto.lost_reason_id)
            if reason is None or not reason.is_active:
                raise _invalid("lost_reason_id", "unknown or inactive lost reason")

            before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")
            now = utcnow()
            lead.lost_reason_id = reason.id
            lead.lost_notes = dto.notes
            lead.closed_at = now
            lead.updated_at = now
            lead.row_version = lead.row_version + 1
            session.flush()

            updated = self._to_read(lead, load_alert_thresholds(session))
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="mark_lost",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.lost",
                    actor_user.user_id,
                    {"lead_id": str(lead.id), "stage_id": str(lead.stage_id), "lost_reason_id": str(reason.id)},
                )
            )
            session.commit()
            observe_lead_transition("mark_lost", "lost")
            logger.info(
                "lead.lost",
                extra={
                    "lead_id": str(lead.id),
                    "stage_id": str(lead.stage_id),
                    "lost_reason_id": str(reason.id),
                    "actor_user_id": actor_user.user_id,
                },
            )
            return self._to_read_model(session, lead.id)

    def reactivate(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: ReactivateRequest) -> LeadRead:
        with pipeline_span("crm.lead.reactivate", lead_id=lead_id):
            lead = self.get_lead_row(session, lead_id)
            _check_row_version(lead.row_version, dto.row_version)
            try:
                ensure_can_reactivate(lead_status(lead.stage, lead.lost_reason_id))
            except StageTransitionError as exc:
                raise self._rejection("reactivate", lead, exc) from exc

            before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")
            lead.lost_reason_id = None
            lead.lost_notes = None
            lead.closed_at = None
            lead.updated_at = utcnow()
            lead.row_version = lead.row_version + 1
            session.flush()

            updated = self._to_read(lead, load_alert_thresholds(session))
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="reactivate",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.reactivated",
                    actor_user.user_id,
                    {"lead_id": str(lead.id), "stage_id": str(lead.stage_id)},
                )
            )
            session.commit()
            observe_lead_transition("reactivate", "active")
            logger.info("lead.reactivated", extra={"lead_id": str(lead.id), "actor_user_id": actor_user.user_id})
            return self._to_read_model(session, lead.id)

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self.get_lead_row(session, lead_id)
        before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")

        session.execute(
            update(CRMContactMessage).where(CRMContactMessage.lead_id == lead.id).values(lead_id=None)
        )
        session.delete(lead)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.lead.deleted", actor_user.user_id, {"lead_id": str(lead_id)}))
        session.commit()
        logger.info("lead.deleted", extra={"lead_id": str(lead_id), "actor_user_id": actor_user.user_id})

    def check_duplicates(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: DuplicateCheckRequest,
    ) -> list[DuplicateCandidateRead]:
        candidates = self.matcher.find_candidates(
            session,
            email=dto.email,
            phone=dto.phone,
            company_name=dto.company_name,
            exclude_lead_id=dto.exclude_lead_id,
        )
        observe_duplicate_check(len(candidates))
        return [self.to_candidate_read(item) for item in candidates]

    def merge_into_existing(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadMergeRequest,
    ) -> LeadMergeResult:
        lead = self.get_lead_row(session, lead_id)
        incoming = dto.model_dump()
        before = self._to_read(lead, load_alert_thresholds(session)).model_dump(mode="json")

        note = CRMLeadNote(lead_id=lead.id, content=build_merge_note(incoming), created_by=actor_user.user_id)
        session.add(note)
        if not lead.email and dto.email:
            lead.email = dto.email.strip()
        if not lead.phone and dto.phone:
            lead.phone = dto.phone
            lead.phone_key = phone_key(dto.phone) or None
        lead.updated_at = utcnow()
        lead.row_version = lead.row_version + 1
        session.flush()

        updated = self._to_read(lead, load_alert_thresholds(session))
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="merge",
            before=before,
            after={**updated.model_dump(mode="json"), "merged_payload": incoming, "note_id": str(note.id)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.merged",
                actor_user.user_id,
                {"lead_id": str(lead.id), "note_id": str(note.id)},
            )
        )
        session.commit()
        logger.info("lead.merged", extra={"lead_id": str(lead.id), "actor_user_id": actor_user.user_id})
        return LeadMergeResult(lead=self._to_read_model(session, lead.id), note=NoteRead.model_validate(note))

    def find_matching_clients(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[ClientRead]:
        lead = self.get_lead_row(session, lead_id)
        clients = client_repository.find_matching(session, company_name=lead.company_name, email=lead.email)
        return [ClientRead.model_validate(item) for item in clients]

    def get_alerts(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadAlertsRead:
        lead = self._to_read_model(session, lead_id)
        observe_alerts(lead.alerts)
        return LeadAlertsRead(lead_id=lead.id, alerts=lead.alerts, most_urgent=most_urgent(lead.alerts))

    def resolve_create_stage(self, session: Session, stage_id: uuid.UUID | None) -> CRMLeadStage:
        catalog = load_stage_catalog(session)
        if stage_id is None:
            stage = catalog.initial_stage()
            if stage is None:
                raise _conflict("stage catalog has no open stage")
            return stage

        stage = catalog.find(stage_id)
        if stage is None:
            raise _invalid("stage_id", "unknown stage")
        if not stage.is_active or stage.is_won or stage.is_lost:
            raise _invalid("stage_id", "new leads must start in an open stage")
        return stage

    def _resolve_win_client(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        dto: MarkWonRequest,
    ) -> uuid.UUID | None:
        if dto.client_action == "create":
            return self._provision_client(session, actor_user, lead).id
        if dto.client_action == "link":
            client = session.get(CRMClient, dto.client_id)
            if client is None:
                raise _not_found("client")
            return client.id
        return None

    def _provision_client(self, session: Session, actor_user: ActorUser, lead: CRMLead) -> CRMClient:
        client = CRMClient(
            company_name=lead.company_name,
            contact_name=lead.contact_name,
            contact_email=lead.email,
            contact_phone=lead.phone,
            address=lead.location,
            created_by=actor_user.user_id,
        )
        session.add(client)
        session.flush()
        return client

    def _rejection(self, transition: str, lead: CRMLead, exc: StageTransitionError) -> HTTPException:
        observe_lead_transition(transition, "rejected")
        logger.warning(
            "lead.transition_rejected",
            extra={"lead_id": str(lead.id), "stage_id": str(lead.stage_id), "outcome": transition, "error": exc.reason},
        )
        return _conflict(exc.reason)

    def get_lead_row(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = lead_repository.get(session, lead_id)
        if lead is None:
            raise _not_found("lead")
        return lead

    def _to_read_model(self, session: Session, lead_id: uuid.UUID) -> LeadRead:
        lead = self.get_lead_row(session, lead_id)
        return self._to_read(lead, load_alert_thresholds(session))

    def _to_read(self, lead: CRMLead, thresholds: AlertThresholds, now: datetime | None = None) -> LeadRead:
        read = LeadRead.model_validate(
            {
                "id": lead.id,
                "code": lead.code,
                "company_name": lead.company_name,
                "contact_name": lead.contact_name,
                "email": lead.email,
                "phone": lead.phone,
                "location": lead.location,
                "service_type": lead.service_type,
                "description": lead.description,
                "source": lead.source,
                "source_message_id": lead.source_message_id,
                "stage_id": lead.stage_id,
                "stage_changed_at": lead.stage_changed_at,
                "status": lead_status(lead.stage, lead.lost_reason_id).name,
                "probability": lead.probability,
                "expected_revenue": lead.expected_revenue,
                "date_deadline": lead.date_deadline,
                "priority": lead.priority,
                "assigned_user_id": lead.assigned_user_id,
                "lost_reason_id": lead.lost_reason_id,
                "lost_notes": lead.lost_notes,
                "closed_at": lead.closed_at,
                "client_id": lead.client_id,
                "quotation_id": lead.quotation_id,
                "quotation_sent_at": lead.quotation_sent_at,
                "created_by": lead.created_by,
                "created_at": lead.created_at,
                "updated_at": lead.updated_at,
                "row_version": lead.row_version,
            }
        )
        alerts = compute_alerts(read, lead.activities, thresholds, now or utcnow())
        return read.model_copy(update={"alerts": list(alerts)})

    def to_candidate_read(self, candidate: DuplicateCandidate) -> DuplicateCandidateRead:
        lead = candidate.lead
        return DuplicateCandidateRead(
            lead_id=lead.id,
            code=lead.code,
            company_name=lead.company_name,
            contact_name=lead.contact_name,
            email=lead.email,
            phone=lead.phone,
            stage_id=lead.stage_id,
            created_at=lead.created_at,
            matched_on=list(candidate.matched_on),
        )


class PipelineService:
    def list_stages(self, session: Session, include_inactive: bool = False) -> list[LeadStageRead]:
        stages = stage_repository.list(session, include_inactive=include_inactive)
        return [LeadStageRead.model_validate(item) for item in stages]

    def list_lost_reasons(self, session: Session) -> list[LostReasonRead]:
        return [LostReasonRead.model_validate(item) for item in lost_reason_repository.list(session)]

    def board(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        include_leads: bool = True,
    ) -> PipelineBoardRead:
        leads = self._load_reads(session, actor_user, filters)
        for lead in leads:
            observe_alerts(lead.alerts)
        return aggregate_by_stage(leads, stage_repository.list(session), include_leads=include_leads)

    def forecast(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        include_leads: bool = True,
    ) -> PipelineForecastRead:
        leads = self._load_reads(session, actor_user, filters)
        return aggregate_by_forecast_month(leads, stage_repository.list(session), include_leads=include_leads)

    def lost(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[LostColumnRead]:
        leads = self._load_reads(session, actor_user, {**filters, "status": "lost"})
        return group_lost_by_stage(leads, stage_repository.list(session))

    def metrics(
        self,
        session: Session,
        actor_user: ActorUser,
        period_start: datetime | None,
        period_end: datetime | None,
        group_by: str = "month",
    ) -> PipelineMetricsRead:
        now = utcnow()
        end = as_utc(period_end) if period_end is not None else now
        start = as_utc(period_start) if period_start is not None else end - timedelta(days=30)
        if start > end:
            raise _invalid("period_start", "period_start must be before period_end")
        leads = self._load_reads(session, actor_user, {})
        return compute_metrics(leads, start, end, now, group_by=group_by)

    def attention(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        limit: int = 50,
    ) -> list[AttentionLeadRead]:
        leads = self._load_reads(session, actor_user, {**filters, "status": "active"})
        for lead in leads:
            observe_alerts(lead.alerts)
        return leads_requiring_attention(leads, stage_repository.list(session), limit=limit)

    def _load_reads(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[LeadRead]:
        return lead_service.list_leads(session, actor_user, filters)


class ActivityService:
    entity_type = "crm.lead_activity"

    def list_activities(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[ActivityRead]:
        lead_service.get_lead_row(session, lead_id)
        rows = session.scalars(
            select(CRMLeadActivity)
            .where(CRMLeadActivity.lead_id == lead_id)
            .order_by(
                CRMLeadActivity.is_completed,
                CRMLeadActivity.due_at.is_(None),
                CRMLeadActivity.due_at,
                CRMLeadActivity.created_at.desc(),
            )
        ).all()
        return [ActivityRead.model_validate(row) for row in rows]

    def create_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        lead = lead_service.get_lead_row(session, lead_id)
        activity = self.add_activity(
            session,
            actor_user,
            lead,
            activity_type=dto.activity_type,
            title=dto.title.strip(),
            description=dto.description,
            due_at=dto.due_at,
            assigned_user_id=dto.assigned_user_id,
            is_completed=dto.is_completed,
        )
        session.commit()
        return ActivityRead.model_validate(activity)

    def add_activity(self, session: Session, actor_user: ActorUser, lead: CRMLead, **values: Any) -> CRMLeadActivity:
        activity = CRMLeadActivity(lead_id=lead.id, created_by=actor_user.user_id, **values)
        if activity.is_completed:
            activity.completed_at = utcnow()
        session.add(activity)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(activity.id),
            action="create",
            before=None,
            after=ActivityRead.model_validate(activity).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.activity_created",
                actor_user.user_id,
                {"lead_id": str(lead.id), "activity_id": str(activity.id), "activity_type": activity.activity_type},
            )
        )
        logger.info(
            "lead.activity_logged",
            extra={"lead_id": str(lead.id), "activity_id": str(activity.id), "actor_user_id": actor_user.user_id},
        )
        return activity

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        activity = self._get_activity(session, activity_id)
        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        for field_name in ("activity_type", "title"):
            if field_name in payload and payload[field_name] is None:
                raise _invalid(field_name, "field cannot be null")
        if not payload:
            _check_row_version(activity.row_version, dto.row_version)
            return ActivityRead.model_validate(activity)

        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        conditions = [CRMLeadActivity.id == activity.id]
        if dto.row_version is not None:
            conditions.append(CRMLeadActivity.row_version == dto.row_version)
        result = session.execute(
            update(CRMLeadActivity)
            .where(and_(*conditions))
            .values(**payload, updated_at=utcnow(), row_version=CRMLeadActivity.row_version + 1)
        )
        if result.rowcount == 0:
            session.rollback()
            raise _conflict("row_version conflict")

        session.refresh(activity)
        updated = ActivityRead.model_validate(activity)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(activity.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return updated

    def set_completed(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        completed: bool,
        row_version: int | None,
    ) -> ActivityRead:
        activity = self._get_activity(session, activity_id)
        _check_row_version(activity.row_version, row_version)
        if activity.is_completed == completed:
            return ActivityRead.model_validate(activity)

        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        now = utcnow()
        activity.is_completed = completed
        activity.completed_at = now if completed else None
        activity.updated_at = now
        activity.row_version = activity.row_version + 1
        session.flush()

        updated = ActivityRead.model_validate(activity)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(activity.id),
            action="complete" if completed else "uncomplete",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.lead.activity_completed" if completed else "crm.lead.activity_reopened",
                actor_user.user_id,
                {"lead_id": str(activity.lead_id), "activity_id": str(activity.id)},
            )
        )
        session.commit()
        return updated

    def delete_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> None:
        activity = self._get_activity(session, activity_id)
        before = ActivityRead.model_validate(activity).model_dump(mode="json")
        session.delete(activity)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(activity_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def _get_activity(self, session: Session, activity_id: uuid.UUID) -> CRMLeadActivity:
        activity = session.get(CRMLeadActivity, activity_id)
        if activity is None:
            raise _not_found("activity")
        return activity


class NoteService:
    entity_type = "crm.lead_note"

    def list_notes(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[NoteRead]:
        lead_service.get_lead_row(session, lead_id)
        rows = session.scalars(
            select(CRMLeadNote).where(CRMLeadNote.lead_id == lead_id).order_by(CRMLeadNote.created_at.desc())
        ).all()
        return [NoteRead.model_validate(row) for row in rows]

    def create_note(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: NoteCreate) -> NoteRead:
        lead_service.get_lead_row(session, lead_id)
        content = dto.content.strip()
        if not content:
            raise _invalid("content", "note cannot be blank")
        note = CRMLeadNote(lead_id=lead_id, content=content, created_by=actor_user.user_id)
        session.add(note)
        session.flush()

        created = NoteRead.model_validate(note)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(note.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return created

    def delete_note(self, session: Session, actor_user: ActorUser, note_id: uuid.UUID) -> None:
        note = session.get(CRMLeadNote, note_id)
        if note is None:
            raise _not_found("note")
        before = NoteRead.model_validate(note).model_dump(mode="json")
        session.delete(note)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(note_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()


class AssignmentRuleService:
    entity_type = "crm.assignment_rule"

    def list_rules(self, session: Session) -> list[AssignmentRuleRead]:
        return [AssignmentRuleRead.model_validate(item) for item in assignment_rule_repository.list(session)]

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AssignmentRuleCreate) -> AssignmentRuleRead:
        if assignment_rule_repository.list(session, service_type=dto.service_type):
            raise _conflict("an assignment rule already exists for this service type")

        rule = CRMAssignmentRule(
            service_type=dto.service_type,
            user_id=dto.user_id.strip(),
            priority=dto.priority,
            description=dto.description,
            is_active=dto.is_active,
        )
        session.add(rule)
        session.flush()

        created = AssignmentRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return created

    def update_rule(
        self,
        session: Session,
        actor_user: ActorUser,
        rule_id: uuid.UUID,
        dto: AssignmentRuleUpdate,
    ) -> AssignmentRuleRead:
        rule = self._get_rule(session, rule_id)
        payload = dto.model_dump(exclude_unset=True)
        for field_name in ("user_id", "priority", "is_active"):
            if field_name in payload and payload[field_name] is None:
                raise _invalid(field_name, "field cannot be null")

        before = AssignmentRuleRead.model_validate(rule).model_dump(mode="json")
        for field_name, value in payload.items():
            setattr(rule, field_name, value)
        rule.updated_at = utcnow()
        session.flush()

        updated = AssignmentRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return updated

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        rule = self._get_rule(session, rule_id)
        before = AssignmentRuleRead.model_validate(rule).model_dump(mode="json")
        session.delete(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def resolve(self, session: Session, service_type: str) -> AssignmentResolutionRead:
        rule = select_rule(assignment_rule_repository.list_active(session, service_type), service_type)
        observe_assignment(rule is not None)
        return AssignmentResolutionRead(
            service_type=service_type,
            user_id=rule.user_id if rule is not None else None,
            rule_id=rule.id if rule is not None else None,
        )

    def resolve_user(self, session: Session, service_type: str) -> str | None:
        resolution = self.resolve(session, service_type)
        logger.info(
            "lead.assignment_resolved",
            extra={"service_type": service_type, "assigned_user_id": resolution.user_id},
        )
        return resolution.user_id

    def _get_rule(self, session: Session, rule_id: uuid.UUID) -> CRMAssignmentRule:
        rule = session.get(CRMAssignmentRule, rule_id)
        if rule is None:
            raise _not_found("assignment rule")
        return rule


class AlertSettingService:
    entity_type = "crm.alert_setting"

    def list_settings(self, session: Session) -> list[AlertSettingRead]:
        return [AlertSettingRead.model_validate(item) for item in alert_setting_repository.list(session)]

    def update_setting(
        self,
        session: Session,
        actor_user: ActorUser,
        setting_key: str,
        dto: AlertSettingUpdate,
    ) -> AlertSettingRead:
        setting = alert_setting_repository.get_by_key(session, setting_key)
        if setting is None:
            raise _not_found("alert setting")

        before = AlertSettingRead.model_validate(setting).model_dump(mode="json")
        if dto.value is not None:
            setting.value = dto.value
        if dto.is_enabled is not None:
            setting.is_enabled = dto.is_enabled
        setting.updated_at = utcnow()
        session.flush()

        updated = AlertSettingRead.model_validate(setting)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=setting.setting_key,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return updated


class ContactMessageService:
    entity_type = "crm.contact_message"

    def create_message(self, session: Session, dto: ContactMessageCreate) -> ContactMessageRead:
        message = CRMContactMessage(
            name=dto.name.strip(),
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            company=dto.company,
            service_type=dto.service_type,
            message=dto.message,
        )
        session.add(message)
        session.flush()
        events.publish(
            events.build_envelope(
                "crm.contact_message.received",
                "anonymous",
                {"message_id": str(message.id), "service_type": message.service_type},
            )
        )
        session.commit()
        logger.info("contact_message.received", extra={"message_id": str(message.id)})
        return ContactMessageRead.model_validate(message)

    def list_messages(
        self,
        session: Session,
        actor_user: ActorUser,
        is_converted: bool | None = None,
    ) -> list[ContactMessageRead]:
        rows = contact_message_repository.list(session, is_converted=is_converted)
        return [ContactMessageRead.model_validate(row) for row in rows]

    def convert_message(
        self,
        session: Session,
        actor_user: ActorUser,
        message_id: uuid.UUID,
        dto: ContactMessageConvertRequest,
    ) -> LeadCreateResult:
        with pipeline_span("crm.contact_message.convert", message_id=message_id) as span:
            message = session.get(CRMContactMessage, message_id)
            if message is None:
                raise _not_found("contact message")
            if message.is_converted:
                raise _conflict("contact message already converted")

            duplicates: list[DuplicateCandidate] = []
            if not dto.skip_duplicate_check:
                duplicates = lead_service.matcher.find_candidates(
                    session,
                    email=message.email,
                    phone=message.phone,
                    company_name=message.company,
                )
                observe_duplicate_check(len(duplicates))
            span.set_attribute("duplicate_count", len(duplicates))

            service_type = dto.service_type or message.service_type or "otro"
            assigned_user_id = dto.assigned_user_id
            if assigned_user_id is None:
                assigned_user_id = assignment_rule_service.resolve_user(session, service_type)

            stage = lead_service.resolve_create_stage(session, None)
            lead = lead_service.insert_lead(
                session,
                actor_user,
                stage,
                {
                    "company_name": message.company or message.name,
                    "contact_name": message.name,
                    "email": message.email,
                    "phone": message.phone,
                    "service_type": service_type,
                    "description": message.message,
                    "source": "contact_form",
                    "source_message_id": message.id,
                    "probability": stage.probability,
                    "expected_revenue": dto.expected_revenue,
                    "date_deadline": dto.date_deadline,
                    "priority": dto.priority,
                    "assigned_user_id": assigned_user_id,
                },
            )
            span.set_attribute("lead_id", str(lead.id))
            activity_service.add_activity(
                session,
                actor_user,
                lead,
                activity_type="note",
                title=CONTACT_FORM_NOTE,
                description=message.message,
                is_completed=True,
            )

            before = ContactMessageRead.model_validate(message).model_dump(mode="json")
            message.is_converted = True
            message.lead_id = lead.id
            message.converted_at = utcnow()
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(message.id),
                action="convert",
                before=before,
                after=ContactMessageRead.model_validate(message).model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            session.commit()
            logger.info(
                "contact_message.converted",
                extra={"message_id": str(message.id), "lead_id": str(lead.id), "actor_user_id": actor_user.user_id},
            )
            return LeadCreateResult(
                lead=lead_service.get_lead(session, actor_user, lead.id),
                duplicates=[lead_service.to_candidate_read(item) for item in duplicates],
            )


class EmailTemplateService:
    entity_type = "crm.email_template"

    def list_templates(
        self,
        session: Session,
        include_inactive: bool = False,
        category: str | None = None,
    ) -> list[EmailTemplateRead]:
        templates = email_template_repository.list(session, include_inactive=include_inactive, category=category)
        return [EmailTemplateRead.model_validate(item) for item in templates]

    def create_template(self, session: Session, actor_user: ActorUser, dto: EmailTemplateCreate) -> EmailTemplateRead:
        template = CRMEmailTemplate(
            name=dto.name,
            subject=dto.subject,
            body=dto.body,
            variables=self._declared_variables(dto.variables, dto.subject, dto.body),
            category=dto.category,
            position=email_template_repository.next_position(session),
            is_active=True,
        )
        session.add(template)
        session.flush()

        created = EmailTemplateRead.model_validate(template)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(template.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        logger.info("email_template.created", extra={"template_id": str(template.id)})
        return created

    def update_template(
        self,
        session: Session,
        actor_user: ActorUser,
        template_id: uuid.UUID,
        dto: EmailTemplateUpdate,
    ) -> EmailTemplateRead:
        template = self._get_template(session, template_id)
        payload = dto.model_dump(exclude_unset=True)
        for field_name in ("name", "subject", "body", "category", "is_active"):
            if field_name in payload and payload[field_name] is None:
                raise _invalid(field_name, "field cannot be null")
        for field_name in ("name", "subject", "category"):
            if field_name in payload:
                payload[field_name] = payload[field_name].strip()
                if not payload[field_name]:
                    raise _invalid(field_name, "must not be blank")

        before = EmailTemplateRead.model_validate(template).model_dump(mode="json")
        for field_name, value in payload.items():
            if field_name != "variables":
                setattr(template, field_name, value)
        if "variables" in payload or "subject" in payload or "body" in payload:
            template.variables = self._declared_variables(payload.get("variables"), template.subject, template.body)
        template.updated_at = utcnow()
        session.flush()

        updated = EmailTemplateRead.model_validate(template)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(template.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return updated

    def delete_template(self, session: Session, actor_user: ActorUser, template_id: uuid.UUID) -> None:
        template = self._get_template(session, template_id)
        before = EmailTemplateRead.model_validate(template).model_dump(mode="json")
        session.delete(template)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(template_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def render(
        self,
        session: Session,
        actor_user: ActorUser,
        template_id: uuid.UUID,
        dto: EmailTemplateRenderRequest,
    ) -> EmailTemplateRenderRead:
        with pipeline_span("crm.email_template.render", template_id=template_id, lead_id=dto.lead_id):
            template = self._get_template(session, template_id)
            if not template.is_active:
                raise _conflict("email template is inactive")
            lead = lead_service.get_lead_row(session, dto.lead_id)

            responsible = dto.responsable or get_settings().email_default_responsible
            variables = variables_from_lead(lead, responsible)
            subject = render_template(template.subject, variables)
            body = render_template(template.body, variables)

        logger.info("email_template.rendered", extra={"template_id": str(template_id), "lead_id": str(lead.id)})
        return EmailTemplateRenderRead(
            template_id=template.id,
            lead_id=lead.id,
            to=lead.email,
            subject=subject,
            body=body,
            mailto=build_mailto(lead.email, subject, body) if lead.email else None,
        )

    def _declared_variables(self, requested: list[str] | None, subject: str, body: str) -> list[str]:
        names = placeholders_in(subject, body) if requested is None else [name.strip() for name in requested]
        unknown = unsupported_variables(names)
        if unknown:
            raise _invalid("variables", f"unsupported template variables: {', '.join(unknown)}")
        return names

    def _get_template(self, session: Session, template_id: uuid.UUID) -> CRMEmailTemplate:
        template = session.get(CRMEmailTemplate, template_id)
        if template is None:
            raise _not_found("email template")
        return template


class AuditService:
    def list_lead_audit(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        actions: list[str] | None = None,
    ) -> list[AuditRead]:
        entries = audit.entries_for(LeadService.entity_type, str(lead_id), actions=actions or None)
        return [self._to_read_model(entry) for entry in entries]

    def _to_read_model(self, entry: dict[str, Any]) -> AuditRead:
        return AuditRead.model_validate(
            {
                "id": str(entry["id"]),
                "entity_type": str(entry["entity_type"]),
                "entity_id": str(entry["entity_id"]),
                "action": str(entry["action"]),
                "actor_user_id": str(entry["actor_user_id"]),
                "occurred_at": datetime.fromisoformat(str(entry["occurred_at"])),
                "correlation_id": entry.get("correlation_id"),
                "before": entry.get("before"),
                "after": entry.get("after"),
                "changed_fields": entry.get("changed_fields", []),
            }
        )


lead_service = LeadService()
pipeline_service = PipelineService()
activity_service = ActivityService()
note_service = NoteService()
assignment_rule_service = AssignmentRuleService()
alert_setting_service = AlertSettingService()
contact_message_service = ContactMessageService()
email_template_service = EmailTemplateService()
audit_service = AuditService()
