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

crm_stage_classifications_total = Counter(
    "crm_stage_classifications_total",
    "Deal stage labels classified, by resulting category",
    ["category"],
)

crm_pipeline_stage_parse_failures_total = Counter(
    "crm_pipeline_stage_parse_failures_total",
    "Pipeline stage lists that could not be decoded",
)

crm_deal_stage_changes_total = Counter(
    "crm_deal_stage_changes_total",
    "Deal stage changes by resulting category",
    ["category"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_classification(category: str) -> None:
    crm_stage_classifications_total.labels(category=category).inc()


def observe_pipeline_stage_parse_failure() -> None:
    crm_pipeline_stage_parse_failures_total.inc()


def observe_deal_stage_change(category: str) -> None:
    crm_deal_stage_changes_total.labels(category=category).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
