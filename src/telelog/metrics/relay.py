"""Prometheus metrics for the journal relay.

All metrics use the 'telelog_' prefix.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# Service info - set once at startup
SERVICE_INFO = Info(
    "telelog_service",
    "Service metadata",
)

# Ingest metrics
ENTRIES = Counter(
    "telelog_entries_total",
    "Journal entries read",
    ["outcome"],  # accepted, suppressed
)

BUFFERED_ENTRIES = Gauge(
    "telelog_buffered_entries",
    "Entries waiting for the next flush",
)

# Delivery metrics
BLOCKS = Counter(
    "telelog_blocks_total",
    "Message blocks by delivery outcome",
    ["outcome"],  # sent, transport_error, rate_limited, rejected, dropped
)

PENDING_BLOCKS = Gauge(
    "telelog_pending_blocks",
    "Blocks that failed delivery and wait for a retry",
)

RETRY_FACTOR = Gauge(
    "telelog_retry_factor",
    "Current backoff multiplier (1 after a clean flush)",
)

FLUSH_DURATION = Histogram(
    "telelog_flush_duration_seconds",
    "Time spent delivering one flush",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)
