"""Prometheus metrics for the Notable backend.

All metric objects are defined here so they can be imported from any module.
"""

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Note operation metrics
# ---------------------------------------------------------------------------

NOTE_OPERATIONS = Counter(
    "notable_note_operations_total",
    "Total number of note operations handled by the note service",
    ["operation", "status"],  # status: ok, not_found, invalid, error
)

# ---------------------------------------------------------------------------
# Restart metrics
# ---------------------------------------------------------------------------

RESTART_REQUESTS = Counter(
    "notable_restart_requests_total",
    "Restart requests received",
    ["outcome"],  # accepted, pending
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS = Counter(
    "notable_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_DURATION = Histogram(
    "notable_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)
