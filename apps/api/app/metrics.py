from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_lead_transitions_total = Counter(
    "crm_lead_transitions_total",
    "Lead stage machine transitions by kind and outcome",
    ["transition", "outcome"],
)

crm_lead_alerts_total = Counter(
    "crm_lead_alerts_total",
    "Alerts raised at read time by alert tag",
    ["alert"],
)

crm_duplicate_checks_total = Counter(
    "crm_duplicate_checks_total",
    "Duplicate lead checks by outcome",
    ["outcome"],
)

crm_assignment_resolutions_total = Counter(
    "crm_assignment_resolutions_total",
    "Assignment resolver results",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_transition(transition: str, outcome: str) -> None:
    crm_lead_transitions_total.labels(transition=transition, outcome=outcome).inc()


def observe_alerts(alerts: tuple[str, ...] | list[str]) -> None:
    for alert in alerts:
        crm_lead_alerts_total.labels(alert=alert).inc()


def observe_duplicate_check(candidate_count: int) -> None:
    crm_duplicate_checks_total.labels(outcome="match" if candidate_count > 0 else "clear").inc()


def observe_assignment(resolved: bool) -> None:
    crm_assignment_resolutions_total.labels(outcome="assigned" if resolved else "unassigned").inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
