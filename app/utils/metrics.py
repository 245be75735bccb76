from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


HTTP_REQUESTS_TOTAL = Counter(
    "earthx_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "earthx_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "path"],
)


VERIFICATION_EVENTS_TOTAL = Counter(
    "earthx_verification_events_total",
    "Batch weight verification outcomes",
    ["result"],
)

MINT_EVENTS_TOTAL = Counter(
    "earthx_mint_events_total",
    "Batch mint events",
    ["event", "result"],
)

MINT_ATTEMPT_DURATION_SECONDS = Histogram(
    "earthx_mint_attempt_duration_seconds",
    "Duration of a single on-chain mint attempt (seconds)",
    ["result"],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)


RECOVERY_EVENTS_TOTAL = Counter(
    "earthx_recovery_events_total",
    "Recovery/maintenance events",
    ["event", "result"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
