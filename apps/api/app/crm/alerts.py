"""Read-time alert rules for open leads.

Alerts are derived on every read from a lead, its activities and the
configured thresholds. They are never stored.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

NO_CONTACT = "no_contact"
OVERDUE_ACTIVITY = "overdue_activity"
QUOTATION_NO_RESPONSE = "quotation_no_response"
STALLED = "stalled"

ALERT_PRIORITY = {
    NO_CONTACT: 1,
    OVERDUE_ACTIVITY: 2,
    QUOTATION_NO_RESPONSE: 3,
    STALLED: 4,
}

SETTING_NO_CONTACT = "no_contact_hours"
SETTING_QUOTATION_NO_RESPONSE = "quotation_no_response_days"
SETTING_STALLED = "stalled_days"


class LeadLike(Protocol):
    status: str
    created_at: datetime
    stage_changed_at: datetime
    quotation_sent_at: datetime | None


class ActivityLike(Protocol):
    is_completed: bool
    due_at: datetime | None
    created_at: datetime
    completed_at: datetime | None


@dataclass(frozen=True)
class AlertThresholds:
    no_contact: timedelta | None = timedelta(hours=48)
    quotation_no_response: timedelta | None = timedelta(days=5)
    stalled: timedelta | None = timedelta(days=14)

    @classmethod
    def from_settings(cls, rows: Iterable[Any], defaults: AlertThresholds | None = None) -> AlertThresholds:
        """Build thresholds from alert setting rows.

        A row with ``is_enabled = False`` switches its rule off. Keys with no
        row keep the value from ``defaults``.
        """
        base = defaults or cls()
        by_key: Mapping[str, Any] = {row.setting_key: row for row in rows}

        def resolve(key: str, fallback: timedelta | None) -> timedelta | None:
            row = by_key.get(key)
            if row is None:
                return fallback
            if not row.is_enabled:
                return None
            return _to_timedelta(row.value, row.unit)

        return cls(
            no_contact=resolve(SETTING_NO_CONTACT, base.no_contact),
            quotation_no_response=resolve(SETTING_QUOTATION_NO_RESPONSE, base.quotation_no_response),
            stalled=resolve(SETTING_STALLED, base.stalled),
        )


def _to_timedelta(value: int, unit: str) -> timedelta:
    if unit == "hours":
        return timedelta(hours=value)
    return timedelta(days=value)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def last_touch(lead: LeadLike, activities: Iterable[ActivityLike]) -> datetime:
    latest = as_utc(lead.created_at)
    for activity in activities:
        for moment in (activity.created_at, activity.completed_at):
            if moment is not None and as_utc(moment) > latest:
                latest = as_utc(moment)
    return latest


def compute_alerts(
    lead: LeadLike,
    activities: Iterable[ActivityLike],
    thresholds: AlertThresholds,
    now: datetime,
) -> tuple[str, ...]:
    if lead.status != "active":
        return ()

    now = as_utc(now)
    activity_list = list(activities)
    touched_at = last_touch(lead, activity_list)
    alerts: list[str] = []

    if thresholds.no_contact is not None and now - touched_at > thresholds.no_contact:
        alerts.append(NO_CONTACT)

    if any(
        not activity.is_completed and activity.due_at is not None and as_utc(activity.due_at) < now
        for activity in activity_list
    ):
        alerts.append(OVERDUE_ACTIVITY)

    if thresholds.quotation_no_response is not None and lead.quotation_sent_at is not None:
        sent_at = as_utc(lead.quotation_sent_at)
        no_stage_change_since = as_utc(lead.stage_changed_at) <= sent_at
        if no_stage_change_since and now - sent_at > thresholds.quotation_no_response:
            alerts.append(QUOTATION_NO_RESPONSE)

    if thresholds.stalled is not None:
        in_stage_for = now - as_utc(lead.stage_changed_at)
        if in_stage_for > thresholds.stalled and now - touched_at > thresholds.stalled:
            alerts.append(STALLED)

    return tuple(sorted(alerts, key=ALERT_PRIORITY.__getitem__))


def most_urgent(alerts: Iterable[str]) -> str | None:
    ranked = sorted(alerts, key=ALERT_PRIORITY.__getitem__)
    return ranked[0] if ranked else None
