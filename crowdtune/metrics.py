"""Prometheus metric definitions for Crowdtune."""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

operations_total = Counter(
    "crowdtune_operations_total",
    "Operations run against Spotify, by category and outcome",
    ["category", "outcome"],
)
operation_seconds = Histogram(
    "crowdtune_operation_seconds",
    "Time spent running a single Spotify operation",
    ["category"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)
pending_operations = Gauge(
    "crowdtune_pending_operations",
    "Operations waiting for the serial worker",
)
track_transitions_total = Counter(
    "crowdtune_track_transitions_total",
    "Track changes detected by polling Spotify",
)
token_refreshes_total = Counter(
    "crowdtune_token_refreshes_total",
    "Spotify access token refreshes",
    ["reason"],
)
queue_size = Gauge(
    "crowdtune_queue_size",
    "Songs in the collaborative queue",
)


def start_metrics_server(port: int = 9090) -> None:
    start_http_server(port)
