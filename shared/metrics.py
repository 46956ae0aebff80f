"""Prometheus metrics for sync observability.

Counters and histograms at each stage of the sync cycle.
Exposed via the /metrics endpoint of the status API.
"""

from prometheus_client import Counter, Gauge, Histogram, make_asgi_app

# Sync counters
sync_cycles_total = Counter(
    "sync_cycles_total",
    "Total sync cycles run by the engine",
    ["status"],  # status: success, empty, failed
)

readings_synced_total = Counter(
    "readings_synced_total",
    "Total readings uploaded to Dexcom Share",
)

readings_skipped_total = Counter(
    "readings_skipped_total",
    "Total fetched readings not uploaded (already synced or over batch cap)",
)

# Vendor counters
vendor_blocked_responses_total = Counter(
    "vendor_blocked_responses_total",
    "Responses classified as blocked or rate limited",
    ["source"],
)

dexcom_session_renewals_total = Counter(
    "dexcom_session_renewals_total",
    "Dexcom Share sessions renewed after a SessionIdNotFound response",
)

# Histograms
vendor_api_duration_seconds = Histogram(
    "vendor_api_duration_seconds",
    "Duration of vendor API calls",
    ["source"],
)

sync_duration_seconds = Histogram(
    "sync_duration_seconds",
    "Duration of a full sync cycle",
)

# Gauges
dedup_window_size = Gauge(
    "dedup_window_size",
    "Number of reading timestamps held in the dedup window",
)


def create_metrics_app():
    """Create ASGI app for /metrics endpoint."""
    return make_asgi_app()
