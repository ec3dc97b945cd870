from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol


class RuleLike(Protocol):
    id: uuid.UUID
    service_type: str
    user_id: str
    priority: int
    is_active: bool
    created_at: datetime


def select_rule(rules: Iterable[RuleLike], service_type: str) -> RuleLike | None:
    eligible = [rule for rule in rules if rule.is_active and rule.service_type == service_type]
    if not eligible:
        return None
    # Newest first so that min() keeps the most recently created rule on a priority tie.
    eligible.sort(key=lambda rule: (rule.created_at, str(rule.id)), reverse=True)
    return min(eligible, key=lambda rule: rule.priority)


def resolve_assignment(rules: Iterable[RuleLike], service_type: str) -> str | None:
    """Return the responsible user for ``service_type`` or ``None`` when unassigned."""
    rule = select_rule(rules, service_type)
    return rule.user_id if rule is not None else None
