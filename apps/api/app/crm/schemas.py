from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


ServiceType = Literal[
    "perforacion_diamantina",
    "anclajes_quimicos",
    "deteccion_metales",
    "pruebas_anclaje",
    "sellos_cortafuego",
    "alquiler_equipos_hilti",
    "otro",
]
LeadSource = Literal["contact_form", "whatsapp", "phone", "email", "referral", "other"]
LeadPriority = Literal["high", "medium", "low"]
LeadStatusName = Literal["active", "won", "lost"]
ActivityType = Literal["call", "email", "meeting", "visit", "task", "note", "other"]
ClientAction = Literal["create", "link", "none"]
AlertTag = Literal["no_contact", "overdue_activity", "quotation_no_response", "stalled"]
StageChangeOutcome = Literal["moved", "unchanged", "requires_win_confirmation"]
MetricsGroupBy = Literal["day", "week", "month"]

SERVICE_TYPE_LABELS: dict[str, str] = {
    "perforacion_diamantina": "Perforación Diamantina",
    "anclajes_quimicos": "Anclajes Químicos",
    "deteccion_metales": "Detección de Metales",
    "pruebas_anclaje": "Pruebas de Anclaje",
    "sellos_cortafuego": "Sellos Cortafuego",
    "alquiler_equipos_hilti": "Alquiler de Equipos HILTI",
    "otro": "Otro",
}
LEAD_SOURCE_LABELS: dict[str, str] = {
    "contact_form": "Formulario Web",
    "whatsapp": "WhatsApp",
    "phone": "Llamada Entrante",
    "email": "Email",
    "referral": "Referido",
    "other": "Otro",
}


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class LeadStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    display_name: str
    position: int
    color: str
    probability: int
    is_won: bool
    is_lost: bool
    is_active: bool


class LostReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    display_name: str
    is_active: bool


class LeadCreate(BaseModel):
    company_name: str = Field(min_length=2)
    contact_name: str = Field(min_length=2)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    location: str | None = None
    service_type: ServiceType
    description: str | None = None
    source: LeadSource = "other"
    stage_id: UUID | None = None
    expected_revenue: Decimal = Field(default=Decimal("0"), ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    date_deadline: date | None = None
    priority: LeadPriority = "medium"
    assigned_user_id: str | None = None
    quotation_id: str | None = None
    skip_duplicate_check: bool = False

    @field_validator("email", "phone", "location", "description", "assigned_user_id", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    company_name: str | None = Field(default=None, min_length=2)
    contact_name: str | None = Field(default=None, min_length=2)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    location: str | None = None
    service_type: ServiceType | None = None
    description: str | None = None
    source: LeadSource | None = None
    expected_revenue: Decimal | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    date_deadline: date | None = None
    priority: LeadPriority | None = None
    assigned_user_id: str | None = None
    quotation_id: str | None = None
    quotation_sent_at: datetime | None = None

    @field_validator("email", "phone", "location", "description", "assigned_user_id", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    company_name: str
    contact_name: str
    email: str | None
    phone: str | None
    location: str | None
    service_type: str
    description: str | None
    source: str
    source_message_id: UUID | None
    stage_id: UUID
    stage_changed_at: datetime
    status: LeadStatusName
    probability: int
    expected_revenue: Decimal
    date_deadline: date | None
    priority: str
    assigned_user_id: str | None
    lost_reason_id: UUID | None
    lost_notes: str | None
    closed_at: datetime | None
    client_id: UUID | None
    quotation_id: str | None
    quotation_sent_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    alerts: list[AlertTag] = Field(default_factory=list)


class DuplicateCandidateRead(BaseModel):
    lead_id: UUID
    code: str
    company_name: str
    contact_name: str
    email: str | None
    phone: str | None
    stage_id: UUID
    created_at: datetime
    matched_on: list[Literal["email", "phone", "company"]]


class LeadCreateResult(BaseModel):
    lead: LeadRead
    duplicates: list[DuplicateCandidateRead] = Field(default_factory=list)


class DuplicateCheckRequest(BaseModel):
    email: str | None = None
    phone: str | None = None
    company_name: str | None = None
    exclude_lead_id: UUID | None = None

    @field_validator("email", "phone", "company_name", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadMergeRequest(BaseModel):
    company_name: str | None = None
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    service_type: str | None = None
    source: str | None = None
    description: str | None = None

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class StageChangeRequest(BaseModel):
    stage_id: UUID
    row_version: int | None = Field(default=None, ge=1)


class StageChangeResult(BaseModel):
    outcome: StageChangeOutcome
    lead: LeadRead
    won_stage_id: UUID | None = None


class MarkWonRequest(BaseModel):
    client_action: ClientAction = "none"
    client_id: UUID | None = None
    row_version: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _client_id_matches_action(self) -> MarkWonRequest:
        if self.client_action == "link" and self.client_id is None:
            raise ValueError("client_id is required when client_action is 'link'")
        if self.client_action != "link" and self.client_id is not None:
            raise ValueError("client_id is only accepted when client_action is 'link'")
        return self


class MarkLostRequest(BaseModel):
    lost_reason_id: UUID
    notes: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class ReactivateRequest(BaseModel):
    row_version: int | None = Field(default=None, ge=1)


class AssignLeadRequest(BaseModel):
    assigned_user_id: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    contact_name: str | None
    contact_email: str | None
    contact_phone: str | None
    address: str | None
    created_at: datetime


class ActivityCreate(BaseModel):
    activity_type: ActivityType
    title: str = Field(min_length=2)
    description: str | None = None
    due_at: datetime | None = None
    assigned_user_id: str | None = None
    is_completed: bool = False


class ActivityUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    activity_type: ActivityType | None = None
    title: str | None = Field(default=None, min_length=2)
    description: str | None = None
    due_at: datetime | None = None
    assigned_user_id: str | None = None


class ActivityToggleRequest(BaseModel):
    row_version: int | None = Field(default=None, ge=1)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    activity_type: str
    title: str
    description: str | None
    due_at: datetime | None
    assigned_user_id: str | None
    is_completed: bool
    completed_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class NoteCreate(BaseModel):
    content: str = Field(min_length=1)


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    content: str
    created_by: str | None
    created_at: datetime


class LeadMergeResult(BaseModel):
    lead: LeadRead
    note: NoteRead


class AssignmentRuleCreate(BaseModel):
    service_type: ServiceType
    user_id: str = Field(min_length=1)
    priority: int = Field(default=1, ge=0)
    description: str | None = None
    is_active: bool = True


class AssignmentRuleUpdate(BaseModel):
    user_id: str | None = Field(default=None, min_length=1)
    priority: int | None = Field(default=None, ge=0)
    description: str | None = None
    is_active: bool | None = None


class AssignmentRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    service_type: str
    user_id: str
    priority: int
    description: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AssignmentResolutionRead(BaseModel):
    service_type: str
    user_id: str | None
    rule_id: UUID | None


class AlertSettingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    setting_key: str
    value: int
    unit: Literal["hours", "days"]
    label: str
    description: str | None
    position: int
    is_enabled: bool


class AlertSettingUpdate(BaseModel):
    value: int | None = Field(default=None, ge=1)
    is_enabled: bool | None = None


class LeadAlertsRead(BaseModel):
    lead_id: UUID
    alerts: list[AlertTag]
    most_urgent: AlertTag | None


class StageColumnRead(BaseModel):
    stage: LeadStageRead
    count: int
    total_expected_revenue: Decimal
    weighted_revenue: Decimal
    leads: list[LeadRead] = Field(default_factory=list)


class PipelineBoardRead(BaseModel):
    columns: list[StageColumnRead]
    total_count: int
    total_expected_revenue: Decimal
    total_weighted_revenue: Decimal


class ForecastColumnRead(BaseModel):
    key: str
    label: str
    count: int
    total_expected_revenue: Decimal
    weighted_revenue: Decimal
    won_value: Decimal
    active_value: Decimal
    won_percent: float
    leads: list[LeadRead] = Field(default_factory=list)


class PipelineForecastRead(BaseModel):
    columns: list[ForecastColumnRead]
    total_count: int
    total_expected_revenue: Decimal


class LostColumnRead(BaseModel):
    stage: LeadStageRead
    count: int
    total_expected_revenue: Decimal
    leads: list[LeadRead] = Field(default_factory=list)


class SourceBreakdownRead(BaseModel):
    source: str
    label: str
    count: int
    value: Decimal
    won_count: int
    conversion_rate: int


class ServiceBreakdownRead(BaseModel):
    service_type: str
    label: str
    count: int
    value: Decimal
    won_count: int
    conversion_rate: int


class PeriodBreakdownRead(BaseModel):
    period: str
    label: str
    new_leads: int
    won_leads: int
    lost_leads: int
    revenue: Decimal


class UserPerformanceRead(BaseModel):
    user_id: str
    total_leads: int
    active_leads: int
    won_leads: int
    lost_leads: int
    conversion_rate: int
    total_revenue: Decimal
    avg_ticket: Decimal
    avg_sales_cycle_days: float


class PipelineMetricsRead(BaseModel):
    period_start: datetime
    period_end: datetime
    previous_period_start: datetime | None = None
    previous_period_end: datetime | None = None
    total_leads: int
    active_leads: int = 0
    won_leads: int
    lost_leads: int
    conversion_rate: float
    avg_ticket: Decimal
    avg_sales_cycle_days: float
    pipeline_value: Decimal
    sales_forecast: Decimal
    # Percent change for counts and money, point/day difference for rate and cycle.
    leads_change: float = 0.0
    conversion_change: float = 0.0
    ticket_change: float = 0.0
    cycle_change: float = 0.0
    by_source: list[SourceBreakdownRead] = Field(default_factory=list)
    by_service: list[ServiceBreakdownRead] = Field(default_factory=list)
    by_period: list[PeriodBreakdownRead] = Field(default_factory=list)
    by_user: list[UserPerformanceRead] = Field(default_factory=list)


class AttentionLeadRead(BaseModel):
    lead_id: UUID
    code: str
    company_name: str
    contact_name: str
    service_type: str
    stage_id: UUID
    stage_name: str
    assigned_user_id: str | None
    alerts: list[AlertTag]
    most_urgent: AlertTag
    created_at: datetime


class EmailTemplateCreate(BaseModel):
    name: str = Field(min_length=2)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    variables: list[str] | None = None
    category: str = "general"

    @field_validator("name", "subject", "category")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class EmailTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2)
    subject: str | None = Field(default=None, min_length=1)
    body: str | None = Field(default=None, min_length=1)
    variables: list[str] | None = None
    category: str | None = None
    is_active: bool | None = None


class EmailTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    subject: str
    body: str
    variables: list[str]
    category: str
    position: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class EmailTemplateRenderRequest(BaseModel):
    lead_id: UUID
    responsable: str | None = None

    @field_validator("responsable", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)


class EmailTemplateRenderRead(BaseModel):
    template_id: UUID
    lead_id: UUID
    to: str | None
    subject: str
    body: str
    mailto: str | None


class ContactMessageCreate(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = None
    service_type: ServiceType | None = None
    message: str = Field(min_length=1)

    @field_validator("email", "phone", "company", mode="before")
    @classmethod
    def _normalize_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _requires_contact_channel(self) -> ContactMessageCreate:
        if self.email is None and self.phone is None:
            raise ValueError("email or phone is required")
        return self


class ContactMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    company: str | None
    service_type: str | None
    message: str
    is_converted: bool
    lead_id: UUID | None
    converted_at: datetime | None
    created_at: datetime


class ContactMessageConvertRequest(BaseModel):
    assigned_user_id: str | None = None
    service_type: ServiceType | None = None
    expected_revenue: Decimal = Field(default=Decimal("0"), ge=0)
    date_deadline: date | None = None
    priority: LeadPriority = "medium"
    skip_duplicate_check: bool = False


class AuditRead(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    action: str
    actor_user_id: str
    occurred_at: datetime
    correlation_id: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    changed_fields: list[str] = Field(default_factory=list)
