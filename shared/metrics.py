"""Prometheus metrics for API and core observability.

Exposed via /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, make_asgi_app

# Core counters
sleep_session_transitions_total = Counter(
    "sleep_session_transitions_total",
    "Sleep session state transitions",
    ["transition", "outcome"],  # transition: start, end, import; outcome: ok or error reason
)

following_changes_total = Counter(
    "following_changes_total",
    "Follow and unfollow operations",
    ["operation", "outcome"],
)

cache_lookups_total = Counter(
    "cache_lookups_total",
    "Collection cache lookups",
    ["collection", "result"],  # result: hit, miss, error, bypass
)

cache_invalidations_total = Counter(
    "cache_invalidations_total",
    "Cache namespaces invalidated by prefix",
    ["collection"],
)

# API counters
api_requests_total = Counter(
    "api_requests_total",
    "Total API requests",
    ["endpoint", "method", "status_code"],
)

# Histograms
api_response_duration_seconds = Histogram(
    "api_response_duration_seconds",
    "Duration of API responses",
    ["endpoint"],
)


def create_metrics_app():
    """Create ASGI app for /metrics endpoint."""
    return make_asgi_app()
