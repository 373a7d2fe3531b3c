"""
Prometheus Metrics Configuration
HTTP request metrics and approval engine business counters
"""

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

# Request metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)

ACTIVE_CONNECTIONS = Gauge("active_connections", "Number of active connections")

# Business metrics
WORKFLOW_TRANSITIONS = Counter(
    "workflow_instance_transitions_total",
    "Workflow instance status transitions",
    ["status"],
)

APPROVAL_DECISIONS = Counter(
    "approval_decisions_total", "Approval review decisions", ["decision"]
)

NOTIFICATIONS = Counter(
    "approval_notifications_total",
    "Notification dispatch outcomes",
    ["event_type", "status"],
)

SCHEDULER_ACTIONS = Counter(
    "approval_scheduler_actions_total",
    "Actions taken by the escalation and reminder sweep",
    ["action"],
)

SWEEP_DURATION = Histogram(
    "approval_scheduler_sweep_seconds", "Duration of one scheduler sweep"
)

CONTENT_TYPE = CONTENT_TYPE_LATEST


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP metrics"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        ACTIVE_CONNECTIONS.inc()

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
            ).inc()
            REQUEST_DURATION.labels(
                method=request.method, endpoint=request.url.path
            ).observe(duration)

            return response

        finally:
            ACTIVE_CONNECTIONS.dec()


def get_metrics() -> bytes:
    """Get current metrics in Prometheus format"""
    return generate_latest()


def record_workflow_transition(status: str):
    WORKFLOW_TRANSITIONS.labels(status=status).inc()


def record_approval_decision(decision: str):
    APPROVAL_DECISIONS.labels(decision=decision).inc()


def record_notification(event_type: str, status: str):
    NOTIFICATIONS.labels(event_type=event_type, status=status).inc()


def record_scheduler_action(action: str):
    SCHEDULER_ACTIONS.labels(action=action).inc()
