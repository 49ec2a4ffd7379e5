"""Prometheus metrics collection for promptkeep.

Provides instrumentation for ingestion, artifact resolution and retention.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# =============================================================================
# Ingestion Metrics
# =============================================================================

records_archived_total = Counter(
    "promptkeep_records_archived_total",
    "Total records appended to the archive",
    ["project"],
)

lines_dropped_total = Counter(
    "promptkeep_lines_dropped_total",
    "Source lines discarded during ingestion",
    ["reason"],  # invalid_json, invalid_entry, write_failed
)

ingestion_duration_seconds = Histogram(
    "promptkeep_ingestion_duration_seconds",
    "Time to archive one source line, including image resolution",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0],
)

ingestion_queue_size = Gauge(
    "promptkeep_ingestion_queue_size",
    "Change-event batches waiting to be processed",
)

# =============================================================================
# Artifact Metrics
# =============================================================================

images_resolved_total = Counter(
    "promptkeep_images_resolved_total",
    "Images materialized into the archive",
    ["strategy"],  # transcript, image_cache
)

pastes_expanded_total = Counter(
    "promptkeep_pastes_expanded_total",
    "Paste references expanded from the paste cache",
    ["status"],  # hit, miss, error
)

# =============================================================================
# Retention Metrics
# =============================================================================

cleanup_runs_total = Counter(
    "promptkeep_cleanup_runs_total",
    "Retention passes executed",
    ["trigger", "status"],
)

cleanup_records_deleted_total = Counter(
    "promptkeep_cleanup_records_deleted_total",
    "Archived records removed by retention",
)

cleanup_duration_seconds = Histogram(
    "promptkeep_cleanup_duration_seconds",
    "Duration of retention passes in seconds",
    buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
)


def start_metrics_server(port: int = 9464, addr: str = "127.0.0.1") -> None:
    """Expose metrics for Prometheus scraping.

    Args:
        port: Port to bind
        addr: Address to bind
    """
    start_http_server(port, addr=addr)
    logger.info(f"Prometheus metrics available at http://{addr}:{port}/metrics")
