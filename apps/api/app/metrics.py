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

automation_events_total = Counter(
    "automation_events_total",
    "Total inbound automation events by status",
    ["status"],
)

automation_evaluations_total = Counter(
    "automation_evaluations_total",
    "Total rule evaluations by outcome",
    ["outcome", "test_mode"],
)

automation_evaluation_duration_seconds = Histogram(
    "automation_evaluation_duration_seconds",
    "Rule evaluation duration in seconds",
)

automation_suppressions_total = Counter(
    "automation_suppressions_total",
    "Total rule suppressions by constraint",
    ["constraint"],
)

automation_action_results_total = Counter(
    "automation_action_results_total",
    "Total action results by type and status",
    ["action_type", "status"],
)

automation_continuations_total = Counter(
    "automation_continuations_total",
    "Total continuations by status",
    ["status"],
)

automation_ledger_conflicts_total = Counter(
    "automation_ledger_conflicts_total",
    "Total optimistic-concurrency conflicts on ledger writes",
)

automation_sequence_steps_total = Counter(
    "automation_sequence_steps_total",
    "Total follow-up sequence steps by channel and status",
    ["channel", "status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_event(status: str) -> None:
    automation_events_total.labels(status=status).inc()


def observe_evaluation(outcome: str, test_mode: bool, duration: float) -> None:
    automation_evaluations_total.labels(outcome=outcome, test_mode=str(test_mode).lower()).inc()
    automation_evaluation_duration_seconds.observe(duration)


def observe_suppression(constraint: str) -> None:
    automation_suppressions_total.labels(constraint=constraint).inc()


def observe_action_result(action_type: str, status: str) -> None:
    automation_action_results_total.labels(action_type=action_type, status=status).inc()


def observe_continuation(status: str) -> None:
    automation_continuations_total.labels(status=status).inc()


def observe_ledger_conflict() -> None:
    automation_ledger_conflicts_total.inc()


def observe_sequence_step(channel: str, status: str) -> None:
    automation_sequence_steps_total.labels(channel=channel, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
