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

tenant_scope_denials_total = Counter(
    "tenant_scope_denials_total",
    "Requests rejected by the tenant/role guard",
    ["resource", "reason"],
)

pipeline_item_moves_total = Counter(
    "pipeline_item_moves_total",
    "Pipeline item moves by pipeline type and outcome",
    ["pipeline_type", "outcome"],
)

lead_duplicates_rejected_total = Counter(
    "lead_duplicates_rejected_total",
    "Lead creations rejected as duplicates",
)

lead_enrichment_total = Counter(
    "lead_enrichment_total",
    "Lead enrichment runs by outcome",
    ["outcome"],
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Mutating requests rejected by the rate limiter",
    ["route_group"],
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
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_tenant_scope_denial(resource: str, reason: str) -> None:
    tenant_scope_denials_total.labels(resource=resource, reason=reason).inc()


def observe_pipeline_move(pipeline_type: str, outcome: str) -> None:
    pipeline_item_moves_total.labels(pipeline_type=pipeline_type, outcome=outcome).inc()


def observe_lead_duplicate_rejected() -> None:
    lead_duplicates_rejected_total.inc()


def observe_lead_enrichment(outcome: str) -> None:
    lead_enrichment_total.labels(outcome=outcome).inc()


def observe_rate_limited(route_group: str) -> None:
    rate_limited_requests_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
