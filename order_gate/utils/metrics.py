"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
verifications_total = Counter(
    "verifications_total",
    "Total order verifications by outcome",
    ["outcome", "reason"],  # granted/denied, denial reason or order type
)

order_usage_recorded_total = Counter(
    "order_usage_recorded_total",
    "Total usage rows appended to the ledger",
    ["order_type"],
)

device_bindings_created_total = Counter(
    "device_bindings_created_total",
    "Total device bindings created",
)

sweep_removed_total = Counter(
    "sweep_removed_total",
    "Rows or sessions removed by maintenance sweeps",
    ["kind"],  # access_window, session, device_binding
)

rate_limited_total = Counter(
    "rate_limited_total",
    "Requests rejected by the rate limiter",
    ["scope"],
)

# Gauges
sessions_active = Gauge(
    "sessions_active",
    "Number of live verification sessions in memory",
)


router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
