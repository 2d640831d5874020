"""Prometheus metrics on an isolated registry."""

from prometheus_client import CollectorRegistry, Counter, Gauge

CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter(
    "requests_total", "Total requests by endpoint", ["path"], registry=CUSTOM_REGISTRY
)
ERRORS = Counter(
    "errors_total", "Total errors by kind", ["kind"], registry=CUSTOM_REGISTRY
)
MESSAGES_SENT = Counter(
    "messages_sent_total", "Messages appended by sender role", ["sender_role"],
    registry=CUSTOM_REGISTRY,
)
ACTIVE_VIEWS = Gauge(
    "live_views_active", "Open live thread and inbox views", registry=CUSTOM_REGISTRY
)
