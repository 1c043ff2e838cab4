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

auth_failures_total = Counter(
    "auth_failures_total",
    "Rejected authentication attempts by error kind",
    ["kind"],
)

authz_denials_total = Counter(
    "authz_denials_total",
    "Authorization denials by resource, operation and outcome",
    ["resource", "operation", "outcome"],
)

lead_conversions_total = Counter(
    "lead_conversions_total",
    "Lead to customer conversions by outcome",
    ["outcome"],
)

best_effort_write_failures_total = Counter(
    "best_effort_write_failures_total",
    "Swallowed failures of best-effort bookkeeping writes",
    ["kind"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def _segments(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def _with_include_prefix(template: str, request_path: str) -> str:
    # Routers included under a prefix may report a template relative to it;
    # the missing leading segments are static and come from the request path.
    request_parts = _segments(request_path)
    missing = len(request_parts) - len(_segments(template))
    if missing <= 0:
        return template
    return "/" + "/".join(request_parts[:missing]) + template


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        template = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(template, str) and template:
            return _normalize_route_template(_with_include_prefix(template, request.url.path))
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_auth_failure(kind: str) -> None:
    auth_failures_total.labels(kind=kind).inc()


def observe_authz_denial(resource: str, operation: str, outcome: str) -> None:
    authz_denials_total.labels(resource=resource, operation=operation, outcome=outcome).inc()


def observe_lead_conversion(outcome: str) -> None:
    lead_conversions_total.labels(outcome=outcome).inc()


def observe_best_effort_failure(kind: str) -> None:
    best_effort_write_failures_total.labels(kind=kind).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
