from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return []
    keys = set(before) | set(after)
    return sorted(key for key in keys if before.get(key) != after.get(key))


def entries_for(entity_type: str, entity_id: str, actions: Iterable[str] | None = None) -> list[dict[str, Any]]:
    wanted = set(actions) if actions is not None else None
    matching = [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type
        and entry["entity_id"] == entity_id
        and (wanted is None or entry["action"] in wanted)
    ]
    return sorted(matching, key=lambda entry: entry["occurred_at"], reverse=True)
