"""
Prometheus metrics for the reply service.

HTTP traffic is labelled by route template (/api/v1/messages/{message_id}),
never by the concrete path, since paths carry message ids and phone numbers.
Outbound calls and pipeline runs are labelled by outcome, using the error
kind on failure (configuration_error, external_service_error, ...).
"""

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "route", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "route"]
)

llm_requests_total = Counter(
    "llm_requests_total",
    "Language model completion calls by outcome",
    labelnames=["result"]
)

gateway_logins_total = Counter(
    "gateway_logins_total",
    "Messaging gateway login attempts by outcome",
    labelnames=["result"]
)

whatsapp_dispatch_total = Counter(
    "whatsapp_dispatch_total",
    "Outbound WhatsApp dispatches by outcome",
    labelnames=["result"]
)

# replied, dispatch_failed, generation_failed
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Reply pipeline runs by outcome",
    labelnames=["outcome"]
)

UNMATCHED_ROUTE = "unmatched"


def route_label(route_path: Optional[str]) -> str:
    """Route template for labels; requests no route matched share one label."""
    return route_path or UNMATCHED_ROUTE


def record_http_request(method: str, route_path: Optional[str], status: int, latency_seconds: float) -> None:
    route = route_label(route_path)
    http_requests_total.labels(method=method, route=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, route=route).observe(latency_seconds)


def record_llm_call(result: str) -> None:
    llm_requests_total.labels(result=result).inc()


def record_gateway_login(result: str) -> None:
    gateway_logins_total.labels(result=result).inc()


def record_dispatch(result: str) -> None:
    whatsapp_dispatch_total.labels(result=result).inc()


def record_pipeline_outcome(outcome: str) -> None:
    pipeline_runs_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Current metrics in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
