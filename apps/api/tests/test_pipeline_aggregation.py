from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from app.crm.aggregation import (
    aggregate_by_forecast_month,
    aggregate_by_stage,
    compute_metrics,
    forecast_month_key,
    forecast_month_label,
    group_lost_by_stage,
    leads_requiring_attention,
    period_key,
    period_label,
)
from app.crm.schemas import LeadRead

CREATED = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


@dataclass
class Stage:
    name: str
    display_name: str
    position: int
    probability: int
    is_won: bool = False
    is_lost: bool = False
    is_active: bool = True
    color: str = "#64748b"
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@pytest.fixture()
def stages() -> dict[str, Stage]:
    return {
        "new": Stage("new", "Nuevo", 1, 10),
        "proposal": Stage("proposal", "Propuesta enviada", 4, 50),
        "won": Stage("won", "Ganado", 6, 100, is_won=True),
        "lost": Stage("lost", "Perdido", 7, 0, is_lost=True, is_active=False),
    }


def _lead(
    stage: Stage,
    revenue: str,
    *,
    status: str = "active",
    probability: int | None = None,
    deadline: date | None = None,
    created_at: datetime = CREATED,
    closed_at: datetime | None = None,
    source: str = "other",
    service_type: str = "anclajes_quimicos",
    assigned_user_id: str | None = None,
    alerts: list[str] | None = None,
) -> LeadRead:
    return LeadRead(
        id=uuid.uuid4(),
        code="LEAD-2026-0001",
        company_name="Constructora Andina",
        contact_name="Rosa Quispe",
        email=None,
        phone=None,
        location=None,
        service_type=service_type,
        description=None,
        source=source,
        source_message_id=None,
        stage_id=stage.id,
        stage_changed_at=created_at,
        status=status,
        probability=stage.probability if probability is None else probability,
        expected_revenue=Decimal(revenue),
        date_deadline=deadline,
        priority="medium",
        assigned_user_id=assigned_user_id,
        lost_reason_id=uuid.uuid4() if status == "lost" else None,
        lost_notes=None,
        closed_at=closed_at,
        client_id=None,
        quotation_id=None,
        quotation_sent_at=None,
        created_by="user-1",
        created_at=created_at,
        updated_at=created_at,
        row_version=1,
        alerts=alerts or [],
    )


def test_board_groups_open_leads_per_stage(stages: dict[str, Stage]) -> None:
    leads = [
        _lead(stages["new"], "1000"),
        _lead(stages["new"], "3000"),
        _lead(stages["proposal"], "2000"),
        _lead(stages["won"], "5000", status="won"),
        _lead(stages["proposal"], "9999", status="lost"),
    ]

    board = aggregate_by_stage(leads, stages.values())

    assert [column.stage.name for column in board.columns] == ["new", "proposal", "won"]
    new_column, proposal_column, won_column = board.columns
    assert (new_column.count, new_column.total_expected_revenue, new_column.weighted_revenue) == (
        2,
        Decimal("4000.00"),
        Decimal("400.00"),
    )
    assert proposal_column.weighted_revenue == Decimal("1000.00")
    assert won_column.weighted_revenue == Decimal("5000.00")
    assert board.total_count == 4
    assert board.total_expected_revenue == Decimal("11000.00")
    assert board.total_weighted_revenue == Decimal("6400.00")


def test_board_weights_by_stage_probability_not_lead_override(stages: dict[str, Stage]) -> None:
    board = aggregate_by_stage([_lead(stages["new"], "1000", probability=90)], stages.values())

    assert board.columns[0].weighted_revenue == Decimal("100.00")


def test_board_keeps_empty_stages_and_can_omit_leads(stages: dict[str, Stage]) -> None:
    board = aggregate_by_stage([_lead(stages["new"], "500")], stages.values(), include_leads=False)

    assert [column.count for column in board.columns] == [1, 0, 0]
    assert all(column.leads == [] for column in board.columns)


def test_board_shows_retired_stage_that_still_holds_leads(stages: dict[str, Stage]) -> None:
    retired = Stage("site_visit", "Visita técnica", 3, 30, is_active=False)
    catalog = [*stages.values(), retired]

    board = aggregate_by_stage([_lead(retired, "800")], catalog)

    assert board.columns[-1].stage.name == "site_visit"
    assert board.columns[-1].count == 1


def test_board_rejects_leads_in_unknown_stage(stages: dict[str, Stage]) -> None:
    orphan_stage = Stage("ghost", "Ghost", 9, 0)

    with pytest.raises(ValueError, match="unknown stages"):
        aggregate_by_stage([_lead(orphan_stage, "100")], stages.values())


def test_forecast_month_keys_and_labels() -> None:
    assert forecast_month_key(None) == "none"
    assert forecast_month_key(date(2026, 6, 15)) == "2026-06"
    assert forecast_month_label("2026-06") == "Junio 2026"
    assert forecast_month_label("none") == "Sin fecha"


def test_forecast_groups_by_deadline_month(stages: dict[str, Stage]) -> None:
    leads = [
        _lead(stages["new"], "1000", deadline=date(2026, 6, 15)),
        _lead(stages["won"], "5000", status="won", deadline=date(2026, 6, 30)),
        _lead(stages["proposal"], "2000"),
        _lead(stages["new"], "3000", deadline=date(2026, 5, 1)),
        _lead(stages["new"], "7000", status="lost", deadline=date(2026, 6, 1)),
    ]

    forecast = aggregate_by_forecast_month(leads, stages.values())

    assert [column.key for column in forecast.columns] == ["none", "2026-05", "2026-06"]
    june = forecast.columns[2]
    assert june.label == "Junio 2026"
    assert june.count == 2
    assert june.total_expected_revenue == Decimal("6000.00")
    assert june.weighted_revenue == Decimal("5100.00")
    assert june.won_value == Decimal("5000.00")
    assert june.active_value == Decimal("1000.00")
    assert june.won_percent == 83.3
    assert forecast.columns[0].won_percent == 0.0
    assert forecast.total_count == 4
    assert forecast.total_expected_revenue == Decimal("11000.00")


def test_lost_view_groups_by_stage_reached(stages: dict[str, Stage]) -> None:
    leads = [
        _lead(stages["proposal"], "1200", status="lost"),
        _lead(stages["proposal"], "800", status="lost"),
        _lead(stages["new"], "500"),
    ]

    columns = group_lost_by_stage(leads, stages.values())

    assert [column.stage.name for column in columns] == ["new", "proposal"]
    assert columns[0].count == 0
    assert columns[1].count == 2
    assert columns[1].total_expected_revenue == Decimal("2000.00")


def test_metrics_for_period(stages: dict[str, Stage]) -> None:
    leads = [
        _lead(
            stages["won"],
            "5000",
            status="won",
            created_at=datetime(2026, 5, 2, tzinfo=timezone.utc),
            closed_at=datetime(2026, 5, 12, tzinfo=timezone.utc),
        ),
        _lead(
            stages["new"],
            "4000",
            status="lost",
            created_at=datetime(2026, 5, 5, tzinfo=timezone.utc),
            closed_at=datetime(2026, 5, 10, tzinfo=timezone.utc),
        ),
        _lead(
            stages["proposal"],
            "2000",
            created_at=datetime(2026, 5, 10, tzinfo=timezone.utc),
            deadline=date(2026, 6, 1),
        ),
        _lead(stages["new"], "1000", created_at=datetime(2026, 4, 1, tzinfo=timezone.utc)),
    ]

    metrics = compute_metrics(
        leads,
        datetime(2026, 5, 1, tzinfo=timezone.utc),
        datetime(2026, 5, 31, 23, 59, tzinfo=timezone.utc),
        datetime(2026, 5, 20, tzinfo=timezone.utc),
    )

    assert metrics.total_leads == 3
    assert metrics.won_leads == 1
    assert metrics.lost_leads == 1
    assert metrics.conversion_rate == 33.3
    assert metrics.avg_ticket == Decimal("5000.00")
    assert metrics.avg_sales_cycle_days == 10.0
    assert metrics.pipeline_value == Decimal("1100.00")
    assert metrics.sales_forecast == Decimal("1000.00")


def test_metrics_with_no_leads_are_zero() -> None:
    metrics = compute_metrics(
        [],
        datetime(2026, 5, 1, tzinfo=timezone.utc),
        datetime(2026, 5, 31, tzinfo=timezone.utc),
        datetime(2026, 5, 20, tzinfo=timezone.utc),
    )

    assert metrics.total_leads == 0
    assert metrics.conversion_rate == 0.0
    assert metrics.avg_ticket == Decimal("0.00")
    assert metrics.avg_sales_cycle_days == 0.0


def test_metrics_compare_with_previous_period_of_equal_length(stages: dict[str, Stage]) -> None:
    def at(day: int) -> datetime:
        return datetime(2026, 5, day, 9, 0, tzinfo=timezone.utc)

    leads = [
        _lead(stages["won"], "1000", status="won", created_at=at(3), closed_at=at(8)),
        _lead(stages["new"], "500", created_at=at(5)),
        _lead(stages["won"], "3000", status="won", created_at=at(12), closed_at=at(14)),
        _lead(stages["new"], "800", created_at=at(13)),
        _lead(stages["proposal"], "900", created_at=at(15)),
        _lead(stages["new"], "700", status="lost", created_at=at(16), closed_at=at(18)),
    ]

    metrics = compute_metrics(
        leads,
        datetime(2026, 5, 11, tzinfo=timezone.utc),
        datetime(2026, 5, 20, 23, 59, 59, tzinfo=timezone.utc),
        datetime(2026, 5, 21, tzinfo=timezone.utc),
    )

    assert metrics.previous_period_end == datetime(2026, 5, 10, 23, 59, 59, 999999, tzinfo=timezone.utc)
    assert metrics.total_leads == 4
    assert metrics.active_leads == 3
    assert metrics.conversion_rate == 25.0
    assert metrics.leads_change == 100.0
    assert metrics.conversion_change == -25.0
    assert metrics.ticket_change == 200.0
    assert metrics.cycle_change == -3.0


def test_metrics_without_previous_activity_report_no_change(stages: dict[str, Stage]) -> None:
    leads = [_lead(stages["new"], "100", created_at=datetime(2026, 5, 12, tzinfo=timezone.utc))]

    metrics = compute_metrics(
        leads,
        datetime(2026, 5, 11, tzinfo=timezone.utc),
        datetime(2026, 5, 20, tzinfo=timezone.utc),
        datetime(2026, 5, 21, tzinfo=timezone.utc),
    )

    assert metrics.leads_change == 0.0
    assert metrics.conversion_change == 0.0
    assert metrics.ticket_change == 0.0
    assert metrics.cycle_change == 0.0


def test_metrics_breakdowns_by_source_service_and_seller(stages: dict[str, Stage]) -> None:
    created = datetime(2026, 5, 12, tzinfo=timezone.utc)
    leads = [
        _lead(
            stages["won"],
            "5000",
            status="won",
            created_at=created,
            closed_at=datetime(2026, 5, 16, tzinfo=timezone.utc),
            source="whatsapp",
            service_type="perforacion_diamantina",
            assigned_user_id="ana",
        ),
        _lead(
            stages["new"],
            "4000",
            status="lost",
            created_at=created,
            closed_at=datetime(2026, 5, 13, tzinfo=timezone.utc),
            source="whatsapp",
            service_type="perforacion_diamantina",
            assigned_user_id="ana",
        ),
        _lead(
            stages["proposal"],
            "2000",
            created_at=created,
            source="referral",
            service_type="sellos_cortafuego",
            assigned_user_id="luis",
        ),
        _lead(stages["new"], "1000", created_at=created, source="contact_form"),
    ]

    metrics = compute_metrics(
        leads,
        datetime(2026, 5, 1, tzinfo=timezone.utc),
        datetime(2026, 5, 31, tzinfo=timezone.utc),
        datetime(2026, 5, 20, tzinfo=timezone.utc),
        group_by="week",
    )

    assert [row.source for row in metrics.by_source] == ["whatsapp", "contact_form", "referral"]
    whatsapp = metrics.by_source[0]
    assert (whatsapp.label, whatsapp.count, whatsapp.won_count, whatsapp.conversion_rate) == ("WhatsApp", 2, 1, 50)
    assert whatsapp.value == Decimal("9000.00")

    assert [row.service_type for row in metrics.by_service] == [
        "perforacion_diamantina",
        "anclajes_quimicos",
        "sellos_cortafuego",
    ]

    assert [row.user_id for row in metrics.by_user] == ["ana", "luis"]
    ana = metrics.by_user[0]
    assert (ana.total_leads, ana.won_leads, ana.lost_leads, ana.active_leads) == (2, 1, 1, 0)
    assert ana.conversion_rate == 50
    assert ana.total_revenue == Decimal("5000.00")
    assert ana.avg_ticket == Decimal("5000.00")
    assert ana.avg_sales_cycle_days == 4.0
    assert metrics.by_user[1].conversion_rate == 0

    assert len(metrics.by_period) == 1
    week = metrics.by_period[0]
    assert (week.period, week.label) == ("2026-05-11", "Sem 11/05")
    assert (week.new_leads, week.won_leads, week.lost_leads) == (4, 1, 1)
    assert week.revenue == Decimal("5000.00")


def test_period_keys_and_labels() -> None:
    moment = datetime(2026, 5, 14, 18, 30, tzinfo=timezone.utc)

    assert period_key(moment, "day") == "2026-05-14"
    assert period_key(moment, "week") == "2026-05-11"
    assert period_key(moment, "month") == "2026-05"
    assert period_key(datetime(2026, 5, 14, 18, 30), "month") == "2026-05"
    assert period_label("2026-05-14", "day") == "14 May"
    assert period_label("2026-05-11", "week") == "Sem 11/05"
    assert period_label("2026-01", "month") == "Ene 2026"


def test_attention_orders_by_most_urgent_alert_then_oldest(stages: dict[str, Stage]) -> None:
    stalled = _lead(stages["new"], "100", created_at=datetime(2026, 4, 1, tzinfo=timezone.utc), alerts=["stalled"])
    late_contact = _lead(
        stages["new"], "100", created_at=datetime(2026, 5, 3, tzinfo=timezone.utc), alerts=["no_contact"]
    )
    overdue = _lead(
        stages["proposal"], "100", created_at=datetime(2026, 4, 20, tzinfo=timezone.utc), alerts=["overdue_activity"]
    )
    early_contact = _lead(
        stages["new"],
        "100",
        created_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
        alerts=["no_contact", "stalled"],
    )
    quiet = _lead(stages["new"], "100")
    closed = _lead(stages["new"], "100", status="lost", alerts=["no_contact"])
    leads = [stalled, late_contact, overdue, early_contact, quiet, closed]

    rows = leads_requiring_attention(leads, stages.values())

    assert [row.lead_id for row in rows] == [early_contact.id, late_contact.id, overdue.id, stalled.id]
    assert rows[0].most_urgent == "no_contact"
    assert rows[0].alerts == ["no_contact", "stalled"]
    assert rows[2].stage_name == "Propuesta enviada"
    assert [row.lead_id for row in leads_requiring_attention(leads, stages.values(), limit=2)] == [
        early_contact.id,
        late_contact.id,
    ]
