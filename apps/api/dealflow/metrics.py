from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request
from starlette.routing import Match


http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "path", "status"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "path"],
)

access_denied_total = Counter(
    "pipeline_access_denied_total",
    "Requests rejected by the access guard",
    ["action", "resource", "reason"],
)
stage_mutations_total = Counter(
    "pipeline_stage_mutations_total",
    "Committed stage registry mutations",
    ["operation"],
)
deal_moves_total = Counter(
    "pipeline_deal_moves_total",
    "Committed deal stage moves; 'unchanged' counts moves to the current stage",
    ["outcome"],
)
lock_conflicts_total = Counter(
    "pipeline_lock_conflicts_total",
    "Ordering mutations rejected because the pipeline lock moved underneath them",
)
store_failures_total = Counter(
    "pipeline_store_failures_total",
    "Record store errors answered with 500",
)

_PARAM_RE = re.compile(r"\{[^{}]+\}")
UNMATCHED_PATH = "<unmatched>"


def resolve_http_path_label(request: Request) -> str:
    """Route template with every path parameter collapsed to ``{id}``.

    Raw URLs are never used as labels so unknown paths cannot grow the series count.
    """
    route = request.scope.get("route")
    if route is None:
        for candidate in request.app.router.routes:
            match, _ = candidate.matches(request.scope)
            if match is Match.FULL:
                route = candidate
                break
    template = getattr(route, "path", None)
    if not isinstance(template, str):
        return UNMATCHED_PATH
    return _PARAM_RE.sub("{id}", template)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_access_denied(action: str, resource: str, reason: str) -> None:
    access_denied_total.labels(action=action, resource=resource, reason=reason).inc()


def observe_stage_mutation(operation: str) -> None:
    stage_mutations_total.labels(operation=operation).inc()


def observe_deal_move(outcome: str) -> None:
    deal_moves_total.labels(outcome=outcome).inc()


def observe_lock_conflict() -> None:
    lock_conflicts_total.inc()


def observe_store_failure() -> None:
    store_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
