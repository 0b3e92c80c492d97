"""Prometheus metrics for orgvault.

Exposes /metrics with HTTP request metrics plus encryption, fallback and
migration counters. Uses the prometheus_client library directly.
"""

import logging
import re
import time
from typing import Callable

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

# HTTP request metrics
REQUEST_COUNT = Counter(
    "orgvault_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
    registry=REGISTRY,
)
REQUEST_LATENCY = Histogram(
    "orgvault_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

# Encryption gateway metrics
ENCRYPTION_OPS = Counter(
    "orgvault_encryption_operations_total",
    "Encrypt/decrypt operations through the gateway",
    ["operation", "method", "outcome"],  # encrypt/decrypt, legacy/kms, success/...
    registry=REGISTRY,
)
ENCRYPTION_LATENCY = Histogram(
    "orgvault_encryption_duration_seconds",
    "Gateway operation latency",
    ["operation"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=REGISTRY,
)
FALLBACK_READS = Counter(
    "orgvault_fallback_reads_total",
    "Reads served by the legacy cipher after a transient KMS failure",
    registry=REGISTRY,
)

# Migration metrics
MIGRATION_RECORDS = Counter(
    "orgvault_migration_records_total",
    "Records processed by the migration job",
    ["outcome"],  # migrated, failed, skipped
    registry=REGISTRY,
)


def _normalize_path(path: str) -> str:
    """Normalize URL path for metric labels to avoid cardinality explosion."""
    path = re.sub(
        r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "/{id}",
        path,
    )
    path = re.sub(r"/org_[A-Za-z0-9]+", "/{org}", path)
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware that records Prometheus metrics for every request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)
        start = time.perf_counter()

        response = await call_next(request)

        elapsed = time.perf_counter() - start
        REQUEST_COUNT.labels(method=method, path=path, status=str(response.status_code)).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)

        return response


def get_metrics_response() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# --- Convenience functions for recording metrics from application code ---

def record_encryption_operation(
    operation: str, method: str, outcome: str, duration_ms: float
) -> None:
    """Record a gateway encrypt/decrypt."""
    ENCRYPTION_OPS.labels(operation=operation, method=method, outcome=outcome).inc()
    ENCRYPTION_LATENCY.labels(operation=operation).observe(duration_ms / 1000.0)


def record_fallback_read() -> None:
    FALLBACK_READS.inc()


def record_migration_outcome(outcome: str, count: int = 1) -> None:
    if count:
        MIGRATION_RECORDS.labels(outcome=outcome).inc(count)
