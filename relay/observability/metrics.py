# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for the Feishu relay.

Covers inbound submissions, admission control, token refreshes, dispatch
queue throughput, outbound Feishu calls and janitor sweeps.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== REQUEST METRICS ==== #

relay_submissions_total = Counter(
    "relay_submissions_total",
    "Total message submissions by outcome",
    ["kind", "outcome"]  # kind: text, image
)

relay_request_latency_seconds = Histogram(
    "relay_request_latency_seconds",
    "Inbound HTTP request latency in seconds",
    ["method", "path"]
)

admission_rejections_total = Counter(
    "relay_admission_rejections_total",
    "Total submissions rejected by the rate limiter"
)


# ==== CREDENTIAL METRICS ==== #

token_refresh_total = Counter(
    "relay_token_refresh_total",
    "Total tenant access token refresh attempts",
    ["status"]
)

token_invalidations_total = Counter(
    "relay_token_invalidations_total",
    "Total credential invalidations after authorization rejections"
)


# ==== DISPATCH QUEUE METRICS ==== #

dispatch_queue_depth = Gauge(
    "relay_dispatch_queue_depth",
    "Number of tasks waiting in the dispatch queue"
)

dispatch_tasks_total = Counter(
    "relay_dispatch_tasks_total",
    "Total dispatch tasks processed by outcome",
    ["status"]
)

dispatch_batch_duration_seconds = Histogram(
    "relay_dispatch_batch_duration_seconds",
    "Time spent executing one dispatch batch in seconds"
)


# ==== UPSTREAM METRICS ==== #

upstream_requests_total = Counter(
    "relay_upstream_requests_total",
    "Total outbound Feishu API calls",
    ["operation", "status"]
)

upstream_latency_seconds = Histogram(
    "relay_upstream_latency_seconds",
    "Outbound Feishu API call latency in seconds",
    ["operation"]
)


# ==== JANITOR METRICS ==== #

janitor_files_deleted_total = Counter(
    "relay_janitor_files_deleted_total",
    "Total temp files deleted",
    ["reason"]  # reason: expired, relayed
)

janitor_errors_total = Counter(
    "relay_janitor_errors_total",
    "Total per-entry janitor failures"
)

# System metrics
app_info = Gauge(
    "relay_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    settings = app.state.settings
    app_info.labels(
        version=app.version,
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping."""
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
