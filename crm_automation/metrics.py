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

automation_runs_total = Counter(
    "automation_runs_total",
    "Total automation runs by source and final status",
    ["source", "status"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total executed automation actions by type and outcome",
    ["action_type", "status"],
)

automation_guardrail_blocks_total = Counter(
    "automation_guardrail_blocks_total",
    "Total workflow guardrail blocks by reason",
    ["reason"],
)

scheduler_jobs_total = Counter(
    "scheduler_jobs_total",
    "Total scheduler job executions by type and status",
    ["job_type", "status"],
)

scheduler_job_duration_seconds = Histogram(
    "scheduler_job_duration_seconds",
    "Scheduler job duration in seconds",
    ["job_type"],
)

assignment_decisions_total = Counter(
    "assignment_decisions_total",
    "Total assignment decisions by strategy and outcome",
    ["strategy", "outcome"],
)

approval_actions_total = Counter(
    "approval_actions_total",
    "Total approval actions by action and outcome",
    ["action", "outcome"],
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
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_run(source: str, status: str) -> None:
    automation_runs_total.labels(source=source, status=status).inc()


def observe_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_workflow_guardrail_block(reason: str) -> None:
    automation_guardrail_blocks_total.labels(reason=reason).inc()


def observe_job(job_type: str, status: str, duration: float) -> None:
    scheduler_jobs_total.labels(job_type=job_type, status=status).inc()
    scheduler_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_assignment(strategy: str, assigned: bool) -> None:
    assignment_decisions_total.labels(strategy=strategy, outcome="assigned" if assigned else "unassigned").inc()


def observe_approval_action(action: str, outcome: str) -> None:
    approval_actions_total.labels(action=action, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
