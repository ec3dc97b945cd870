from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app.crm.alerts import ALERT_PRIORITY, as_utc, most_urgent
from app.crm.schemas import (
    LEAD_SOURCE_LABELS,
    SERVICE_TYPE_LABELS,
    AttentionLeadRead,
    ForecastColumnRead,
    LeadRead,
    LeadStageRead,
    LostColumnRead,
    PeriodBreakdownRead,
    PipelineBoardRead,
    PipelineForecastRead,
    PipelineMetricsRead,
    ServiceBreakdownRead,
    SourceBreakdownRead,
    StageColumnRead,
    UserPerformanceRead,
)
from app.crm.stages import StageCatalog, StageLike

NO_DEADLINE_KEY = "none"
NO_DEADLINE_LABEL = "Sin fecha"
MONTH_NAMES_ES = (
    "Enero",
    "Febrero",
    "Marzo",
    "Abril",
    "Mayo",
    "Junio",
    "Julio",
    "Agosto",
    "Septiembre",
    "Octubre",
    "Noviembre",
    "Diciembre",
)
_CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _weighted(amount: Decimal, probability: int) -> Decimal:
    return Decimal(amount) * Decimal(probability) / Decimal(100)


def _stage_probability(catalog: StageCatalog, lead: LeadRead) -> int:
    stage = catalog.find(lead.stage_id)
    return stage.probability if stage is not None else lead.probability


def aggregate_by_stage(
    leads: Iterable[LeadRead],
    stages: Iterable[StageLike],
    *,
    include_leads: bool = True,
) -> PipelineBoardRead:
    """Group non-lost leads into one column per board stage.

    Every board stage gets a column even when empty, in position order.
    Weighted revenue uses the stage probability, not a per-lead override.
    """
    catalog = StageCatalog(stages)
    grouped: dict[object, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        if lead.status == "lost":
            continue
        grouped[lead.stage_id].append(lead)

    columns: list[StageColumnRead] = []
    board = catalog.board_stages()
    # Stages retired after leads entered them still get a column.
    board.extend(stage for stage in catalog if stage not in board and stage.id in grouped)
    for stage in board:
        members = grouped.pop(stage.id, [])
        total = sum((Decimal(lead.expected_revenue) for lead in members), ZERO)
        weighted = sum((_weighted(lead.expected_revenue, stage.probability) for lead in members), ZERO)
        columns.append(
            StageColumnRead(
                stage=LeadStageRead.model_validate(stage),
                count=len(members),
                total_expected_revenue=_money(total),
                weighted_revenue=_money(weighted),
                leads=members if include_leads else [],
            )
        )

    if grouped:
        orphaned = sorted(str(stage_id) for stage_id in grouped)
        raise ValueError(f"leads reference unknown stages: {', '.join(orphaned)}")

    return PipelineBoardRead(
        columns=columns,
        total_count=sum(column.count for column in columns),
        total_expected_revenue=_money(sum((column.total_expected_revenue for column in columns), ZERO)),
        total_weighted_revenue=_money(sum((column.weighted_revenue for column in columns), ZERO)),
    )


def forecast_month_key(deadline: date | None) -> str:
    if deadline is None:
        return NO_DEADLINE_KEY
    return f"{deadline.year:04d}-{deadline.month:02d}"


def forecast_month_label(key: str) -> str:
    if key == NO_DEADLINE_KEY:
        return NO_DEADLINE_LABEL
    year, month = key.split("-")
    return f"{MONTH_NAMES_ES[int(month) - 1]} {year}"


def aggregate_by_forecast_month(
    leads: Iterable[LeadRead],
    stages: Iterable[StageLike],
    *,
    include_leads: bool = True,
) -> PipelineForecastRead:
    catalog = StageCatalog(stages)
    grouped: dict[str, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        if lead.status == "lost":
            continue
        grouped[forecast_month_key(lead.date_deadline)].append(lead)

    keys = sorted(grouped, key=lambda key: (key != NO_DEADLINE_KEY, key))
    columns: list[ForecastColumnRead] = []
    for key in keys:
        members = grouped[key]
        total = ZERO
        weighted = ZERO
        won_value = ZERO
        for lead in members:
            amount = Decimal(lead.expected_revenue)
            total += amount
            weighted += _weighted(amount, _stage_probability(catalog, lead))
            if lead.status == "won":
                won_value += amount
        active_value = total - won_value
        won_percent = float(round(won_value / total * 100, 1)) if total > 0 else 0.0
        columns.append(
            ForecastColumnRead(
                key=key,
                label=forecast_month_label(key),
                count=len(members),
                total_expected_revenue=_money(total),
                weighted_revenue=_money(weighted),
                won_value=_money(won_value),
                active_value=_money(active_value),
                won_percent=won_percent,
                leads=members if include_leads else [],
            )
        )

    return PipelineForecastRead(
        columns=columns,
        total_count=sum(column.count for column in columns),
        total_expected_revenue=_money(sum((column.total_expected_revenue for column in columns), ZERO)),
    )


def group_lost_by_stage(leads: Iterable[LeadRead], stages: Iterable[StageLike]) -> list[LostColumnRead]:
    catalog = StageCatalog(stages)
    grouped: dict[object, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        if lead.status == "lost":
            grouped[lead.stage_id].append(lead)

    columns: list[LostColumnRead] = []
    for stage in catalog:
        members = grouped.get(stage.id, [])
        if not members and stage.is_won:
            continue
        if not members and not stage.is_active:
            continue
        columns.append(
            LostColumnRead(
                stage=LeadStageRead.model_validate(stage),
                count=len(members),
                total_expected_revenue=_money(sum((Decimal(lead.expected_revenue) for lead in members), ZERO)),
                leads=members,
            )
        )
    return columns


def _within(moment: datetime | None, start: datetime, end: datetime) -> bool:
    return moment is not None and start <= as_utc(moment) <= end


def _cycle_days(lead: LeadRead) -> float | None:
    if lead.closed_at is None:
        return None
    return (as_utc(lead.closed_at) - as_utc(lead.created_at)).total_seconds() / 86400


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


@dataclass(frozen=True)
class _PeriodSnapshot:
    created: list[LeadRead]
    won: list[LeadRead]
    lost: list[LeadRead]

    @property
    def conversion_rate(self) -> float:
        return len(self.won) / len(self.created) * 100 if self.created else 0.0

    @property
    def avg_ticket(self) -> Decimal:
        if not self.won:
            return ZERO
        return sum((Decimal(lead.expected_revenue) for lead in self.won), ZERO) / len(self.won)

    @property
    def avg_cycle(self) -> float:
        return _mean([days for days in map(_cycle_days, self.won) if days is not None])


def _snapshot(leads: Sequence[LeadRead], start: datetime, end: datetime) -> _PeriodSnapshot:
    return _PeriodSnapshot(
        created=[lead for lead in leads if _within(lead.created_at, start, end)],
        won=[lead for lead in leads if lead.status == "won" and _within(lead.closed_at, start, end)],
        lost=[lead for lead in leads if lead.status == "lost" and _within(lead.closed_at, start, end)],
    )


def period_key(moment: datetime, group_by: str) -> str:
    moment = as_utc(moment)
    if group_by == "day":
        return moment.date().isoformat()
    if group_by == "week":
        return (moment.date() - timedelta(days=moment.weekday())).isoformat()
    return f"{moment.year:04d}-{moment.month:02d}"


def period_label(key: str, group_by: str) -> str:
    if group_by == "week":
        return f"Sem {key[8:10]}/{key[5:7]}"
    if group_by == "day":
        day = date.fromisoformat(key)
        return f"{day.day} {MONTH_NAMES_ES[day.month - 1][:3]}"
    year, month = key.split("-")
    return f"{MONTH_NAMES_ES[int(month) - 1][:3]} {year}"


def breakdown_by_source(leads: Iterable[LeadRead]) -> list[SourceBreakdownRead]:
    grouped: dict[str, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        grouped[lead.source].append(lead)
    rows = []
    for source, members in grouped.items():
        won_count = sum(1 for lead in members if lead.status == "won")
        rows.append(
            SourceBreakdownRead(
                source=source,
                label=LEAD_SOURCE_LABELS.get(source, source),
                count=len(members),
                value=_money(sum((Decimal(lead.expected_revenue) for lead in members), ZERO)),
                won_count=won_count,
                conversion_rate=_percent(won_count, len(members)),
            )
        )
    return sorted(rows, key=lambda row: (-row.count, row.source))


def breakdown_by_service(leads: Iterable[LeadRead]) -> list[ServiceBreakdownRead]:
    grouped: dict[str, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        grouped[lead.service_type].append(lead)
    rows = []
    for service_type, members in grouped.items():
        won_count = sum(1 for lead in members if lead.status == "won")
        rows.append(
            ServiceBreakdownRead(
                service_type=service_type,
                label=SERVICE_TYPE_LABELS.get(service_type, service_type),
                count=len(members),
                value=_money(sum((Decimal(lead.expected_revenue) for lead in members), ZERO)),
                won_count=won_count,
                conversion_rate=_percent(won_count, len(members)),
            )
        )
    return sorted(rows, key=lambda row: (-row.count, row.service_type))


def breakdown_by_period(leads: Iterable[LeadRead], group_by: str = "month") -> list[PeriodBreakdownRead]:
    grouped: dict[str, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        grouped[period_key(lead.created_at, group_by)].append(lead)
    rows = []
    for key in sorted(grouped):
        members = grouped[key]
        won = [lead for lead in members if lead.status == "won"]
        rows.append(
            PeriodBreakdownRead(
                period=key,
                label=period_label(key, group_by),
                new_leads=len(members),
                won_leads=len(won),
                lost_leads=sum(1 for lead in members if lead.status == "lost"),
                revenue=_money(sum((Decimal(lead.expected_revenue) for lead in won), ZERO)),
            )
        )
    return rows


def breakdown_by_user(leads: Iterable[LeadRead]) -> list[UserPerformanceRead]:
    """Per-seller performance. Unassigned leads are left out."""
    grouped: dict[str, list[LeadRead]] = defaultdict(list)
    for lead in leads:
        if lead.assigned_user_id:
            grouped[lead.assigned_user_id].append(lead)
    rows = []
    for user_id, members in grouped.items():
        won = [lead for lead in members if lead.status == "won"]
        lost_count = sum(1 for lead in members if lead.status == "lost")
        revenue = sum((Decimal(lead.expected_revenue) for lead in won), ZERO)
        cycles = [days for days in map(_cycle_days, won) if days is not None]
        rows.append(
            UserPerformanceRead(
                user_id=user_id,
                total_leads=len(members),
                active_leads=sum(1 for lead in members if lead.status == "active"),
                won_leads=len(won),
                lost_leads=lost_count,
                conversion_rate=_percent(len(won), len(won) + lost_count),
                total_revenue=_money(revenue),
                avg_ticket=_money(revenue / len(won) if won else ZERO),
                avg_sales_cycle_days=round(_mean(cycles), 1),
            )
        )
    return sorted(rows, key=lambda row: (-row.total_revenue, row.user_id))


def compute_metrics(
    leads: Sequence[LeadRead],
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    *,
    group_by: str = "month",
) -> PipelineMetricsRead:
    """Headline figures for a period, compared with the period of equal length just before it."""
    start = as_utc(period_start)
    end = as_utc(period_end)
    now = as_utc(now)
    previous_end = start - timedelta(microseconds=1)
    previous_start = previous_end - (end - start)

    current = _snapshot(leads, start, end)
    previous = _snapshot(leads, previous_start, previous_end)
    active = [lead for lead in leads if lead.status == "active"]

    horizon = (now + timedelta(days=30)).date()
    pipeline_value = sum((_weighted(lead.expected_revenue, lead.probability) for lead in active), ZERO)
    sales_forecast = sum(
        (
            _weighted(lead.expected_revenue, lead.probability)
            for lead in active
            if lead.date_deadline is not None and now.date() <= lead.date_deadline <= horizon
        ),
        ZERO,
    )

    leads_change = 0.0
    if previous.created:
        leads_change = (len(current.created) - len(previous.created)) / len(previous.created) * 100
    conversion_change = current.conversion_rate - previous.conversion_rate if previous.conversion_rate else 0.0
    ticket_change = 0.0
    if previous.avg_ticket > 0:
        ticket_change = float((current.avg_ticket - previous.avg_ticket) / previous.avg_ticket * 100)
    cycle_change = current.avg_cycle - previous.avg_cycle if previous.avg_cycle else 0.0

    return PipelineMetricsRead(
        period_start=start,
        period_end=end,
        previous_period_start=previous_start,
        previous_period_end=previous_end,
        total_leads=len(current.created),
        active_leads=len(active),
        won_leads=len(current.won),
        lost_leads=len(current.lost),
        conversion_rate=round(current.conversion_rate, 1),
        avg_ticket=_money(current.avg_ticket),
        avg_sales_cycle_days=round(current.avg_cycle, 1),
        pipeline_value=_money(pipeline_value),
        sales_forecast=_money(sales_forecast),
        leads_change=round(leads_change, 1),
        conversion_change=round(conversion_change, 1),
        ticket_change=round(ticket_change, 1),
        cycle_change=round(cycle_change, 1),
        by_source=breakdown_by_source(current.created),
        by_service=breakdown_by_service(current.created),
        by_period=breakdown_by_period(current.created, group_by),
        by_user=breakdown_by_user(current.created),
    )


def leads_requiring_attention(
    leads: Iterable[LeadRead],
    stages: Iterable[StageLike],
    *,
    limit: int = 50,
) -> list[AttentionLeadRead]:
    """Open leads with at least one alert, most urgent alert first, then oldest first."""
    catalog = StageCatalog(stages)
    flagged = [lead for lead in leads if lead.status == "active" and lead.alerts]
    flagged.sort(key=lambda lead: (ALERT_PRIORITY[most_urgent(lead.alerts)], as_utc(lead.created_at)))

    rows = []
    for lead in flagged[:limit]:
        stage = catalog.find(lead.stage_id)
        rows.append(
            AttentionLeadRead(
                lead_id=lead.id,
                code=lead.code,
                company_name=lead.company_name,
                contact_name=lead.contact_name,
                service_type=lead.service_type,
                stage_id=lead.stage_id,
                stage_name=stage.display_name if stage is not None else "",
                assigned_user_id=lead.assigned_user_id,
                alerts=lead.alerts,
                most_urgent=most_urgent(lead.alerts),
                created_at=lead.created_at,
            )
        )
    return rows
