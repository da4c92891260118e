"""
Prometheus-based metrics for production monitoring.
Exported over HTTP by the bot process when metrics_port is set.
"""
from prometheus_client import Counter, Histogram, Gauge, start_http_server


# Counters
purchases_started_total = Counter(
    "purchases_started_total",
    "Total number of payments created for buyers",
)

purchase_outcomes_total = Counter(
    "purchase_outcomes_total",
    "Purchase sessions reaching a terminal state",
    ["state"],  # PROVISIONED, CANCELED, EXPIRED, FAILED
)

payment_checks_total = Counter(
    "payment_checks_total",
    "Payment status checks by gateway answer",
    ["status"],
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API requests",
    ["method", "status"],
)

provisioning_requests_total = Counter(
    "provisioning_requests_total",
    "Total VPN panel provisioning requests",
    ["backend", "status"],
)

cas_conflicts_total = Counter(
    "cas_conflicts_total",
    "Session transitions lost to a concurrent action",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway API request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

provisioning_request_duration_seconds = Histogram(
    "provisioning_request_duration_seconds",
    "VPN panel request duration",
    ["backend"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

# Gauges
active_sessions = Gauge(
    "active_sessions",
    "Purchase sessions in a non-terminal state",
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics for scraping on a background thread."""
    start_http_server(port)
