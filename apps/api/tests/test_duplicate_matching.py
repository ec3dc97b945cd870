from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from app.crm.duplicates import (
    MERGE_NOTE_FOOTER,
    build_merge_note,
    company_overlaps,
    match_signals,
    normalize_phone,
    phone_key,
    rank_candidates,
)
from app.crm.models import CRMLead


def _lead(
    *,
    email: str | None = None,
    phone: str | None = None,
    company_name: str = "Constructora Andina",
    created_at: datetime | None = None,
) -> CRMLead:
    return CRMLead(
        id=uuid.uuid4(),
        code=f"LEAD-2026-{uuid.uuid4().int % 10000:04d}",
        company_name=company_name,
        contact_name="Rosa Quispe",
        email=email,
        phone=phone,
        created_at=created_at or datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


def test_normalize_phone_strips_formatting_and_country_prefix() -> None:
    assert normalize_phone("+51 987 654 321") == "987654321"
    assert normalize_phone("987-654-321") == "987654321"
    assert normalize_phone("(01) 555-1234") == "15551234"
    assert normalize_phone(None) == ""
    assert phone_key("0051 987 654 321") == "987654321"


def test_company_overlap_needs_two_characters() -> None:
    assert company_overlaps("Constructora Andina SAC", "andina")
    assert not company_overlaps("A", "A Company")
    assert not company_overlaps(None, "Andina")


def test_match_signals_requires_email_or_phone_hit() -> None:
    lead = _lead(email="Rosa@Andina.pe", phone="+51 987654321")

    assert match_signals(lead, email=" rosa@andina.pe ", phone=None, company_name=None) == ("email",)
    assert match_signals(lead, email=None, phone="987 654 321", company_name="Andina") == ("phone", "company")
    assert match_signals(lead, email="other@x.pe", phone=None, company_name="Constructora Andina") == ()


def test_rank_candidates_orders_newest_first_and_limits() -> None:
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    older = _lead(email="ops@andina.pe", created_at=base)
    newer = _lead(email="ops@andina.pe", created_at=base + timedelta(days=2))
    newest = _lead(email="ops@andina.pe", created_at=base + timedelta(days=5))
    unrelated = _lead(email="someone@else.pe", created_at=base + timedelta(days=9))

    ranked = rank_candidates(
        [older, unrelated, newest, newer],
        email="ops@andina.pe",
        phone=None,
        company_name=None,
        limit=2,
    )

    assert [item.lead for item in ranked] == [newest, newer]
    assert all(item.matched_on == ("email",) for item in ranked)


def test_build_merge_note_lists_incoming_fields() -> None:
    note = build_merge_note(
        {
            "company_name": "Andina",
            "contact_name": "Luis",
            "email": None,
            "phone": "987654321",
            "description": "Necesitamos perforación para ductos",
        }
    )

    lines = note.splitlines()
    assert lines[0] == "Nueva solicitud recibida (duplicado fusionado):"
    assert "Empresa: Andina" in lines
    assert "Teléfono: 987654321" in lines
    assert not any(line.startswith("Email:") for line in lines)
    assert "Necesitamos perforación para ductos" in lines
    assert lines[-1] == f"-- {MERGE_NOTE_FOOTER}"
