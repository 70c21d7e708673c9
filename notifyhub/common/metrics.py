"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Notification jobs accepted into the dispatch queue",
    ["service", "channel", "notification_type"],
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notifications accepted by a provider",
    ["service", "channel"],
)
notification_send_failures_total = Counter(
    "notification_send_failures_total",
    "Provider send failures by error kind",
    ["service", "channel", "error_kind"],
)
notifications_dead_total = Counter(
    "notifications_dead_total",
    "Jobs moved to the dead-letter state",
    ["service", "channel", "reason"],
)
notifications_rate_limited_total = Counter(
    "notifications_rate_limited_total",
    "Send attempts deferred by the local token bucket",
    ["service", "channel"],
)
provider_send_seconds = Histogram(
    "provider_send_seconds",
    "Provider send call duration seconds",
    ["service", "channel"],
)
queue_depth = Gauge(
    "queue_depth",
    "Current number of notification jobs per status",
    ["service", "status"],
)
inbound_callbacks_total = Counter(
    "inbound_callbacks_total",
    "Inbound provider callbacks by outcome",
    ["service", "channel", "outcome"],
)
domain_events_emitted_total = Counter(
    "domain_events_emitted_total",
    "Domain events written to the outbox for the business layer",
    ["service", "event_type"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
