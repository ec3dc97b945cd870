from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.crm.models import (
    CRMAlertSetting,
    CRMAssignmentRule,
    CRMClient,
    CRMContactMessage,
    CRMEmailTemplate,
    CRMLead,
    CRMLeadStage,
    CRMLostReason,
)


class LeadRepository:
    resource = "crm.lead"

    def get(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        return session.scalar(
            select(CRMLead).where(CRMLead.id == lead_id).options(selectinload(CRMLead.activities))
        )

    def list(self, session: Session, filters: dict[str, Any]) -> list[CRMLead]:
        stmt = self.apply_filters(select(CRMLead).join(CRMLead.stage), filters)
        stmt = stmt.options(selectinload(CRMLead.activities)).order_by(CRMLead.created_at.desc())
        return list(session.scalars(stmt).unique().all())

    def apply_filters(self, query: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        if filters.get("stage_id"):
            query = query.where(CRMLead.stage_id == filters["stage_id"])
        if filters.get("assigned_user_id"):
            query = query.where(CRMLead.assigned_user_id == filters["assigned_user_id"])
        if filters.get("service_type"):
            query = query.where(CRMLead.service_type == filters["service_type"])
        if filters.get("source"):
            query = query.where(CRMLead.source == filters["source"])
        if filters.get("priority"):
            query = query.where(CRMLead.priority == filters["priority"])

        lead_status = filters.get("status")
        if lead_status == "lost":
            query = query.where(CRMLead.lost_reason_id.is_not(None))
        elif lead_status == "won":
            query = query.where(and_(CRMLead.lost_reason_id.is_(None), CRMLeadStage.is_won.is_(True)))
        elif lead_status == "active":
            query = query.where(and_(CRMLead.lost_reason_id.is_(None), CRMLeadStage.is_won.is_(False)))

        if filters.get("q"):
            pattern = f"%{str(filters['q']).strip().lower()}%"
            query = query.where(
                or_(
                    func.lower(CRMLead.company_name).like(pattern),
                    func.lower(CRMLead.contact_name).like(pattern),
                    func.lower(CRMLead.code).like(pattern),
                    func.lower(CRMLead.email).like(pattern),
                )
            )
        return query

    def next_code(self, session: Session, prefix: str, year: int) -> str:
        stem = f"{prefix}-{year:04d}-"
        codes = session.scalars(select(CRMLead.code).where(CRMLead.code.like(f"{stem}%"))).all()
        sequence = 0
        for code in codes:
            suffix = code[len(stem) :]
            if suffix.isdigit():
                sequence = max(sequence, int(suffix))
        return f"{stem}{sequence + 1:04d}"


class StageRepository:
    resource = "crm.lead_stage"

    def list(self, session: Session, *, include_inactive: bool = True) -> list[CRMLeadStage]:
        stmt = select(CRMLeadStage)
        if not include_inactive:
            stmt = stmt.where(CRMLeadStage.is_active.is_(True))
        return list(session.scalars(stmt.order_by(CRMLeadStage.position)).all())


class LostReasonRepository:
    resource = "crm.lost_reason"

    def list(self, session: Session, *, include_inactive: bool = False) -> list[CRMLostReason]:
        stmt = select(CRMLostReason)
        if not include_inactive:
            stmt = stmt.where(CRMLostReason.is_active.is_(True))
        return list(session.scalars(stmt.order_by(CRMLostReason.display_name)).all())


class AssignmentRuleRepository:
    resource = "crm.assignment_rule"

    def list(self, session: Session, *, service_type: str | None = None) -> list[CRMAssignmentRule]:
        stmt = select(CRMAssignmentRule)
        if service_type is not None:
            stmt = stmt.where(CRMAssignmentRule.service_type == service_type)
        return list(
            session.scalars(stmt.order_by(CRMAssignmentRule.service_type, CRMAssignmentRule.priority)).all()
        )

    def list_active(self, session: Session, service_type: str) -> list[CRMAssignmentRule]:
        return [rule for rule in self.list(session, service_type=service_type) if rule.is_active]


class AlertSettingRepository:
    resource = "crm.alert_setting"

    def list(self, session: Session) -> list[CRMAlertSetting]:
        return list(session.scalars(select(CRMAlertSetting).order_by(CRMAlertSetting.position)).all())

    def get_by_key(self, session: Session, setting_key: str) -> CRMAlertSetting | None:
        return session.scalar(select(CRMAlertSetting).where(CRMAlertSetting.setting_key == setting_key))


class ClientRepository:
    resource = "crm.client"

    def find_matching(self, session: Session, *, company_name: str, email: str | None, limit: int = 10) -> list[CRMClient]:
        clauses = [func.lower(CRMClient.company_name).like(f"%{company_name.strip().lower()}%")]
        if email:
            clauses.append(func.lower(CRMClient.contact_email) == email.strip().lower())
        stmt = select(CRMClient).where(or_(*clauses)).order_by(CRMClient.created_at.desc()).limit(limit)
        return list(session.scalars(stmt).all())


class ContactMessageRepository:
    resource = "crm.contact_message"

    def list(self, session: Session, *, is_converted: bool | None = None) -> list[CRMContactMessage]:
        stmt = select(CRMContactMessage)
        if is_converted is not None:
            stmt = stmt.where(CRMContactMessage.is_converted.is_(is_converted))
        return list(session.scalars(stmt.order_by(CRMContactMessage.created_at.desc())).all())


class EmailTemplateRepository:
    resource = "crm.email_template"

    def list(
        self,
        session: Session,
        *,
        include_inactive: bool = True,
        category: str | None = None,
    ) -> list[CRMEmailTemplate]:
        stmt = select(CRMEmailTemplate)
        if not include_inactive:
            stmt = stmt.where(CRMEmailTemplate.is_active.is_(True))
        if category is not None:
            stmt = stmt.where(CRMEmailTemplate.category == category)
        return list(session.scalars(stmt.order_by(CRMEmailTemplate.position, CRMEmailTemplate.created_at)).all())

    def next_position(self, session: Session) -> int:
        current = session.scalar(select(func.max(CRMEmailTemplate.position)))
        return (current or 0) + 1


lead_repository = LeadRepository()
stage_repository = StageRepository()
lost_reason_repository = LostReasonRepository()
assignment_rule_repository = AssignmentRuleRepository()
alert_setting_repository = AlertSettingRepository()
client_repository = ClientRepository()
contact_message_repository = ContactMessageRepository()
email_template_repository = EmailTemplateRepository()
