"""
Operational metrics for billing reconciliation.

Prometheus counters exposed on /metrics alongside the default
HTTP instrumentation.
"""

from prometheus_client import Counter, Histogram

API_ERRORS_TOTAL = Counter(
    "wayfarer_api_errors_total",
    "Total number of API errors by status code and path",
    ["path", "method", "status_code"],
)

RATE_LIMIT_EXCEEDED = Counter(
    "wayfarer_rate_limit_exceeded_total",
    "Requests rejected by rate limiting",
    ["path", "limiter"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "wayfarer_webhook_events_total",
    "Stripe webhook events by type and outcome",
    ["event_type", "outcome"],
)

WEBHOOK_PROCESSING_ATTEMPTS = Histogram(
    "wayfarer_webhook_processing_attempts",
    "Attempts needed to process a webhook event",
    buckets=(1, 2, 3, 4, 5, 8),
)

RETRY_ATTEMPTS_TOTAL = Counter(
    "wayfarer_retry_attempts_total",
    "Retries scheduled by the retry manager",
    ["operation_type"],
)
