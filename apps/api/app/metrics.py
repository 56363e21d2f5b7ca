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

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Stage transition attempts by module and outcome",
    ["module", "outcome"],
)

crm_gate_fail_open_total = Counter(
    "crm_gate_fail_open_total",
    "Stage requirement lookups that failed and were treated as empty",
)

crm_routing_assignments_total = Counter(
    "crm_routing_assignments_total",
    "Owner assignments by routing assignment type",
    ["module", "assignment_type"],
)

crm_round_robin_cas_retries_total = Counter(
    "crm_round_robin_cas_retries_total",
    "Round-robin compare-and-swap retries",
)

crm_rescore_records_total = Counter(
    "crm_rescore_records_total",
    "Records visited by rescore jobs by outcome",
    ["outcome"],
)

crm_jobs_total = Counter(
    "crm_jobs_total",
    "Total CRM jobs by status",
    ["job_type", "status"],
)

crm_job_duration_seconds = Histogram(
    "crm_job_duration_seconds",
    "CRM job duration in seconds",
    ["job_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")
_MODULE_SEGMENTS = {"{module}"}


def _normalize_route_template(path: str) -> str:
    segments = []
    for segment in path.split("/"):
        if segment in _MODULE_SEGMENTS:
            segments.append(segment)
        else:
            segments.append(_PATH_PARAM_RE.sub("{id}", segment))
    return "/".join(segments)


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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(module: str, outcome: str) -> None:
    crm_stage_transitions_total.labels(module=module, outcome=outcome).inc()


def observe_gate_fail_open() -> None:
    crm_gate_fail_open_total.inc()


def observe_routing_assignment(module: str, assignment_type: str) -> None:
    crm_routing_assignments_total.labels(module=module, assignment_type=assignment_type).inc()


def observe_round_robin_retry() -> None:
    crm_round_robin_cas_retries_total.inc()


def observe_rescore_records(outcome: str, count: int = 1) -> None:
    if count > 0:
        crm_rescore_records_total.labels(outcome=outcome).inc(count)


def observe_job(job_type: str, status: str, duration: float) -> None:
    crm_jobs_total.labels(job_type=job_type, status=status).inc()
    crm_job_duration_seconds.labels(job_type=job_type).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
