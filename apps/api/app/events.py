from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.events import event_bus

ENVELOPE_VERSION = 1

published_events: list[dict[str, Any]] = []


def build_envelope(event_type: str, actor_user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    envelope.setdefault("correlation_id", None)
    if envelope["correlation_id"] is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def events_for_lead(lead_id: str) -> list[dict[str, Any]]:
    return [item for item in published_events if item.get("payload", {}).get("lead_id") == lead_id]
