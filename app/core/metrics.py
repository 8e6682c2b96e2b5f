"""Prometheus metrics, defined in one place.

Other modules import the metric they own and increment it at the point of
action.  Exposed in text format by GET /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # Relay calls include a round-trip to a remote authorization server,
    # so the upper buckets matter more here than for local-only routes.
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Flow-engine metrics
# ---------------------------------------------------------------------------

PROTOCOL_CALLS = Counter(
    "oauth_protocol_calls_total",
    "OAuth protocol operations by outcome",
    # operation: discovery | registration | token | refresh | introspect | revoke
    # outcome:   ok | protocol_error | transport_error | validation_error
    ["operation", "outcome"],
)

DELIVERY_REQUESTS = Counter(
    "delivery_requests_total",
    "Outbound HTTP requests by delivery mode and outcome",
    ["mode", "outcome"],  # mode: direct | relay; outcome: ok | http_error | transport_error
)

RELAY_REQUESTS = Counter(
    "relay_requests_total",
    "Requests handled by the relay endpoint by result",
    ["result"],  # forwarded | bad_request | upstream_failure
)
