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

crm_deal_stage_transitions_total = Counter(
    "crm_deal_stage_transitions_total",
    "Deal stage transitions by resulting deal status",
    ["outcome"],
)

crm_lead_conversions_total = Counter(
    "crm_lead_conversions_total",
    "Leads converted into contacts",
)

crm_activity_completions_total = Counter(
    "crm_activity_completions_total",
    "Activities marked completed",
    ["type"],
)


_PREFIXED_ID_RE = re.compile(r"/(?:company|contact|lead|deal|activity|stage|user)_[0-9A-Za-z]+\b")
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_ids = _PREFIXED_ID_RE.sub("/{id}", path)
    return _INT_RE.sub("/{id}", without_ids)


def _with_mount_prefix(template: str, url_path: str) -> str:
    # Routes included through a sub-router report their path without the mount prefix.
    template_parts = template.strip("/").split("/") if template.strip("/") else []
    url_parts = url_path.strip("/").split("/") if url_path.strip("/") else []
    missing = len(url_parts) - len(template_parts)
    if missing <= 0:
        return template
    prefix = "/" + "/".join(url_parts[:missing])
    return f"{prefix}{template}" if template != "/" else prefix


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _with_mount_prefix(_normalize_route_template(template), request.url.path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(outcome: str) -> None:
    crm_deal_stage_transitions_total.labels(outcome=outcome).inc()


def observe_lead_conversion() -> None:
    crm_lead_conversions_total.inc()


def observe_activity_completion(activity_type: str) -> None:
    crm_activity_completions_total.labels(type=activity_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
