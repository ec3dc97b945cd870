from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMLead

_NON_DIGITS = re.compile(r"\D+")
_COUNTRY_CODE = "51"
_LOCAL_DIGITS = 9

MERGE_NOTE_FOOTER = "Fusionado automáticamente por detección de duplicado"


def normalize_phone(raw: str | None) -> str:
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) > _LOCAL_DIGITS and digits.startswith(_COUNTRY_CODE):
        digits = digits[len(_COUNTRY_CODE) :]
    if digits.startswith("0"):
        digits = digits[1:]
    return digits


def phone_key(raw: str | None) -> str:
    return normalize_phone(raw)[-_LOCAL_DIGITS:]


def normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def company_overlaps(left: str | None, right: str | None) -> bool:
    a = (left or "").strip().lower()
    b = (right or "").strip().lower()
    if len(a) < 2 or len(b) < 2:
        return False
    return a in b or b in a


@dataclass(frozen=True)
class DuplicateCandidate:
    lead: CRMLead
    matched_on: tuple[str, ...] = field(default_factory=tuple)


class DuplicateMatcher(Protocol):
    def find_candidates(
        self,
        session: Session,
        *,
        email: str | None,
        phone: str | None,
        company_name: str | None = None,
        exclude_lead_id: uuid.UUID | None = None,
    ) -> list[DuplicateCandidate]: ...


def match_signals(
    lead: CRMLead,
    *,
    email: str | None,
    phone: str | None,
    company_name: str | None,
) -> tuple[str, ...]:
    signals: list[str] = []
    wanted_email = normalize_email(email)
    if wanted_email and normalize_email(lead.email) == wanted_email:
        signals.append("email")
    wanted_phone = phone_key(phone)
    if wanted_phone and phone_key(lead.phone) == wanted_phone:
        signals.append("phone")
    # Company is context only, never a trigger on its own.
    if signals and company_overlaps(lead.company_name, company_name):
        signals.append("company")
    return tuple(signals)


def rank_candidates(
    leads: Iterable[CRMLead],
    *,
    email: str | None,
    phone: str | None,
    company_name: str | None,
    limit: int,
) -> list[DuplicateCandidate]:
    candidates = []
    for lead in leads:
        signals = match_signals(lead, email=email, phone=phone, company_name=company_name)
        if signals:
            candidates.append(DuplicateCandidate(lead=lead, matched_on=signals))
    candidates.sort(key=lambda item: (item.lead.created_at, str(item.lead.id)), reverse=True)
    return candidates[:limit]


class EmailPhoneDuplicateMatcher:
    """Flags a lead as a probable duplicate on an email or phone hit.

    Email is compared trimmed and case-insensitive. Phones are compared on the
    last nine digits after ``normalize_phone``, so formatting and the country
    prefix do not matter.
    """

    def __init__(self, limit: int = 10) -> None:
        self.limit = limit

    def find_candidates(
        self,
        session: Session,
        *,
        email: str | None,
        phone: str | None,
        company_name: str | None = None,
        exclude_lead_id: uuid.UUID | None = None,
    ) -> list[DuplicateCandidate]:
        wanted_email = normalize_email(email)
        wanted_phone = phone_key(phone)
        if not wanted_email and not wanted_phone:
            return []

        clauses = []
        if wanted_email:
            clauses.append(func.lower(func.trim(CRMLead.email)) == wanted_email)
        if wanted_phone:
            clauses.append(CRMLead.phone_key == wanted_phone)

        stmt = select(CRMLead).where(or_(*clauses))
        if exclude_lead_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_lead_id)
        rows: Sequence[CRMLead] = session.scalars(stmt).unique().all()
        return rank_candidates(rows, email=email, phone=phone, company_name=company_name, limit=self.limit)


def build_merge_note(incoming: dict[str, str | None]) -> str:
    labels = [
        ("company_name", "Empresa"),
        ("contact_name", "Contacto"),
        ("email", "Email"),
        ("phone", "Teléfono"),
        ("location", "Ubicación"),
        ("service_type", "Servicio"),
        ("source", "Fuente"),
    ]
    lines = ["Nueva solicitud recibida (duplicado fusionado):", ""]
    for key, label in labels:
        value = incoming.get(key)
        if value:
            lines.append(f"{label}: {value}")
    description = incoming.get("description")
    if description:
        lines.extend(["", "Mensaje:", description])
    lines.extend(["", f"-- {MERGE_NOTE_FOOTER}"])
    return "\n".join(lines)
