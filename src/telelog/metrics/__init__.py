"""Prometheus metrics for telelog.

Usage:
    from telelog.metrics import start_metrics_server, ENTRIES

    start_metrics_server(port=9105)
    ENTRIES.labels(outcome="accepted").inc()
"""

from telelog.metrics.relay import (
    BLOCKS,
    BUFFERED_ENTRIES,
    ENTRIES,
    FLUSH_DURATION,
    PENDING_BLOCKS,
    RETRY_FACTOR,
    SERVICE_INFO,
)
from telelog.metrics.server import start_metrics_server

__all__ = [
    "start_metrics_server",
    "ENTRIES",
    "BUFFERED_ENTRIES",
    "BLOCKS",
    "PENDING_BLOCKS",
    "RETRY_FACTOR",
    "FLUSH_DURATION",
    "SERVICE_INFO",
]
