from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.alerts import SETTING_NO_CONTACT, SETTING_QUOTATION_NO_RESPONSE, SETTING_STALLED
from app.crm.models import CRMAlertSetting, CRMLeadStage, CRMLostReason

DEFAULT_STAGES = [
    # name, display_name, position, color, probability, is_won, is_lost, is_active
    ("new", "Nuevo", 1, "#3b82f6", 10, False, False, True),
    ("contacted", "Contactado", 2, "#06b6d4", 20, False, False, True),
    ("qualified", "Calificado", 3, "#8b5cf6", 40, False, False, True),
    ("proposal", "Propuesta enviada", 4, "#f59e0b", 50, False, False, True),
    ("negotiation", "Negociación", 5, "#f97316", 60, False, False, True),
    ("won", "Ganado", 6, "#22c55e", 100, True, False, True),
    ("lost", "Perdido", 7, "#ef4444", 0, False, True, False),
]

DEFAULT_LOST_REASONS = [
    ("price", "Precio"),
    ("timing", "Tiempo / plazos"),
    ("competitor", "Competencia"),
    ("no_response", "Sin respuesta"),
    ("no_budget", "Sin presupuesto"),
    ("other", "Otro"),
]


def _default_alert_settings() -> list[tuple[str, int, str, str, str, int]]:
    settings = get_settings()
    return [
        (
            SETTING_NO_CONTACT,
            settings.alert_no_contact_hours,
            "hours",
            "Sin contacto",
            "Horas sin ninguna actividad desde la creación o el último contacto",
            1,
        ),
        (
            SETTING_QUOTATION_NO_RESPONSE,
            settings.alert_quotation_no_response_days,
            "days",
            "Cotización sin respuesta",
            "Días desde el envío de la cotización sin cambio de etapa",
            2,
        ),
        (
            SETTING_STALLED,
            settings.alert_stalled_days,
            "days",
            "Lead estancado",
            "Días en la misma etapa sin actividad",
            3,
        ),
    ]


def ensure_catalog(session: Session) -> dict[str, int]:
    """Insert the default stages, lost reasons and alert settings that are missing.

    Existing rows are left untouched, so operator edits survive a re-run.
    """
    existing_stages = set(session.scalars(select(CRMLeadStage.name)).all())
    existing_reasons = set(session.scalars(select(CRMLostReason.name)).all())
    existing_settings = set(session.scalars(select(CRMAlertSetting.setting_key)).all())
    created = {"stages": 0, "lost_reasons": 0, "alert_settings": 0}

    for name, display_name, position, color, probability, is_won, is_lost, is_active in DEFAULT_STAGES:
        if name in existing_stages:
            continue
        session.add(
            CRMLeadStage(
                name=name,
                display_name=display_name,
                position=position,
                color=color,
                probability=probability,
                is_won=is_won,
                is_lost=is_lost,
                is_active=is_active,
            )
        )
        created["stages"] += 1

    for name, display_name in DEFAULT_LOST_REASONS:
        if name in existing_reasons:
            continue
        session.add(CRMLostReason(name=name, display_name=display_name, is_active=True))
        created["lost_reasons"] += 1

    for setting_key, value, unit, label, description, position in _default_alert_settings():
        if setting_key in existing_settings:
            continue
        session.add(
            CRMAlertSetting(
                setting_key=setting_key,
                value=value,
                unit=unit,
                label=label,
                description=description,
                position=position,
                is_enabled=True,
            )
        )
        created["alert_settings"] += 1

    session.commit()
    return created
