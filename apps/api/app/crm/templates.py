"""Email template variables and rendering.

Templates carry ``{{variable}}`` placeholders that are filled from a lead
when a seller prepares an email. Unknown placeholders are left untouched.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Protocol
from urllib.parse import quote

from app.crm.schemas import SERVICE_TYPE_LABELS

TEMPLATE_VARIABLES = ("nombre", "empresa", "servicio", "responsable", "email", "telefono")
DEFAULT_RESPONSIBLE = "Equipo AMAROT"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class TemplateLeadLike(Protocol):
    contact_name: str
    company_name: str
    service_type: str
    email: str | None
    phone: str | None


def variables_from_lead(lead: TemplateLeadLike, responsible: str | None = None) -> dict[str, str]:
    return {
        "nombre": lead.contact_name or "",
        "empresa": lead.company_name or "",
        "servicio": SERVICE_TYPE_LABELS.get(lead.service_type, lead.service_type),
        "responsable": responsible or DEFAULT_RESPONSIBLE,
        "email": lead.email or "",
        "telefono": lead.phone or "",
    }


def render_template(text: str, variables: Mapping[str, str]) -> str:
    def substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in TEMPLATE_VARIABLES:
            return match.group(0)
        return variables.get(name, "")

    return _PLACEHOLDER.sub(substitute, text)


def placeholders_in(*texts: str) -> list[str]:
    found: list[str] = []
    for text in texts:
        for name in _PLACEHOLDER.findall(text):
            if name not in found:
                found.append(name)
    return found


def unsupported_variables(names: Iterable[str]) -> list[str]:
    return [name for name in names if name not in TEMPLATE_VARIABLES]


def build_mailto(to: str, subject: str, body: str) -> str:
    return f"mailto:{to}?subject={quote(subject, safe='')}&body={quote(body, safe='')}"
