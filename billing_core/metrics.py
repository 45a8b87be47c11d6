from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

from billing_core.core.settings import S

METRICS_ENABLED = S.metrics_enabled

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests resulting in server errors",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-progress HTTP requests",
    ["method", "path"],
)
UPTIME_SECONDS = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)
APP_INFO = Info(
    "app",
    "Application metadata",
)

EVENTS_ADMITTED = Counter(
    "billing_events_admitted_total",
    "Normalized events admitted by the dedup gate",
)
EVENTS_DEDUPLICATED = Counter(
    "billing_events_deduplicated_total",
    "Deliveries answered from an existing dedup record",
)
EVENT_OUTCOMES = Counter(
    "billing_event_outcomes_total",
    "Admitted events by final outcome",
    ["provider", "status", "reason"],
)
TRANSITIONS = Counter(
    "billing_subscription_transitions_total",
    "Committed subscription transitions",
    ["from_status", "to_status", "input"],
)
OCC_CONFLICTS = Counter(
    "billing_occ_conflicts_total",
    "Optimistic-concurrency write conflicts",
    ["record"],
)
INVARIANT_VIOLATIONS = Counter(
    "billing_invariant_violations_total",
    "Events rejected because they would break a lifecycle invariant",
    ["input"],
)
PROJECTIONS_DEFERRED = Counter(
    "billing_entitlement_projections_deferred_total",
    "Committed transitions whose entitlement projection failed and awaits the next projection",
)
LEDGER_APPENDS = Counter(
    "billing_ledger_entries_total",
    "Ledger entries appended",
    ["type"],
)
DUNNING_MILESTONES = Counter(
    "billing_dunning_milestones_total",
    "Dunning milestone actions taken",
    ["milestone"],
)
DUNNING_FAILURES = Counter(
    "billing_dunning_failures_total",
    "Per-subscription dunning steps that failed",
)
DUNNING_CANCELLATIONS = Counter(
    "billing_dunning_cancellations_total",
    "Subscriptions canceled after their grace period elapsed",
)
RECONCILE_RUNS = Counter(
    "billing_reconcile_runs_total",
    "Reconciliation runs per provider",
    ["provider"],
)
RECONCILE_MISMATCHES = Counter(
    "billing_reconcile_mismatches_total",
    "Providers flagged by reconciliation",
    ["provider"],
)

_START_TIME = time.monotonic()


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and getattr(route, "path", None):
        return route.path
    return request.url.path


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    path = _route_path(request)
    method = request.method
    start = time.perf_counter()
    IN_PROGRESS.labels(method=method, path=path).inc()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        IN_PROGRESS.labels(method=method, path=path).dec()
        REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        if status_code >= 500:
            REQUEST_ERRORS.labels(method=method, path=path, status=str(status_code)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _START_TIME)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def label(value: Optional[str]) -> str:
    return value or "none"
