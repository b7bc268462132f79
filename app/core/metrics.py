"""Prometheus metrics for monitoring the ledger integration."""

from contextlib import contextmanager
from time import time
from typing import Generator

from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Counters
# =============================================================================

oauth_callbacks = Counter(
    "ledger_oauth_callbacks_total",
    "Xero OAuth callbacks handled",
    ["outcome"],  # success, or the error code
)

token_refreshes = Counter(
    "ledger_token_refreshes_total",
    "Xero token refresh attempts",
    ["outcome"],
)

tokens_cleared = Counter(
    "ledger_tokens_cleared_total",
    "Token sets cleared",
    ["reason"],
)

remote_requests = Counter(
    "ledger_remote_requests_total",
    "Outbound Xero API calls",
    ["resource", "status"],
)


# =============================================================================
# Histograms
# =============================================================================

remote_latency = Histogram(
    "ledger_remote_latency_seconds",
    "Xero API response time",
    ["resource"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# =============================================================================
# Gauges
# =============================================================================

configured_integrations = Gauge(
    "ledger_configured_integrations",
    "Companies with a Xero configuration",
)

connected_integrations = Gauge(
    "ledger_connected_integrations",
    "Companies holding an unexpired Xero access token",
)


# =============================================================================
# Helper Functions
# =============================================================================

def track_oauth_callback(outcome: str) -> None:
    oauth_callbacks.labels(outcome=outcome).inc()


def track_token_refresh(outcome: str) -> None:
    token_refreshes.labels(outcome=outcome).inc()


def track_tokens_cleared(reason: str) -> None:
    tokens_cleared.labels(reason=reason).inc()


def track_remote_request(resource: str, status: str) -> None:
    """
    Count one outbound call.

    Args:
        resource: Resource name, or 'token' / 'connections'
        status: HTTP status code, or 'timeout' / 'network_error'
    """
    remote_requests.labels(resource=resource, status=str(status)).inc()


@contextmanager
def track_remote_latency(resource: str) -> Generator[None, None, None]:
    """
    Context manager to track Xero API latency.

    Example:
        with track_remote_latency("invoices"):
            response = client.get(url)
    """
    start_time = time()
    try:
        yield
    finally:
        duration = time() - start_time
        remote_latency.labels(resource=resource).observe(duration)


def update_integration_gauges(configured: int, connected: int) -> None:
    """Set the integration gauges from current counts."""
    configured_integrations.set(configured)
    connected_integrations.set(connected)


# =============================================================================
# FastAPI Endpoint
# =============================================================================

metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> Response:
    """
    FastAPI endpoint to expose Prometheus metrics.

    Returns:
        Response with Prometheus metrics in text format
    """
    metrics_data = generate_latest()
    return Response(content=metrics_data, media_type=CONTENT_TYPE_LATEST)
