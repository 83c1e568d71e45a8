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

workflow_executions_total = Counter(
    "workflow_executions_total",
    "Total workflow executions by final status",
    ["status"],
)

workflow_execution_duration_seconds = Histogram(
    "workflow_execution_duration_seconds",
    "Workflow execution duration in seconds",
)

workflow_actions_total = Counter(
    "workflow_actions_total",
    "Total workflow actions by type and outcome",
    ["action_type", "status"],
)

workflow_parse_failures_total = Counter(
    "workflow_parse_failures_total",
    "Workflow definitions skipped because a stored blob could not be parsed",
    ["part"],
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
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_workflow_execution(status: str, duration: float) -> None:
    workflow_executions_total.labels(status=status).inc()
    workflow_execution_duration_seconds.observe(duration)


def observe_workflow_action(action_type: str, status: str) -> None:
    workflow_actions_total.labels(action_type=action_type, status=status).inc()


def observe_workflow_parse_failure(part: str) -> None:
    workflow_parse_failures_total.labels(part=part).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
