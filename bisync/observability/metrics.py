"""
Prometheus metrics collection for bisync

Counters and gauges describing how much each sync run moved, filtered and
failed, plus where each table's watermark currently sits.
"""
import time
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


# Private registry, separate from the prometheus_client default
REGISTRY = CollectorRegistry()


# =======================
# ROW METRICS
# =======================

rows_extracted_total = Counter(
    name="bisync_rows_extracted_total",
    documentation="Rows read from the source store",
    labelnames=["direction", "table"],
    registry=REGISTRY,
)

rows_written_total = Counter(
    name="bisync_rows_written_total",
    documentation="Rows applied to the destination store",
    labelnames=["direction", "table"],
    registry=REGISTRY,
)

# FK filtering only happens on the forward path
rows_filtered_total = Counter(
    name="bisync_rows_filtered_total",
    documentation="Rows dropped by foreign key validation",
    labelnames=["table"],
    registry=REGISTRY,
)

# Reverse sync rows already present at the origin
rows_skipped_total = Counter(
    name="bisync_rows_skipped_total",
    documentation="Rows skipped because they already exist at the destination",
    labelnames=["table"],
    registry=REGISTRY,
)

rows_failed_total = Counter(
    name="bisync_rows_failed_total",
    documentation="Rows that failed to apply individually",
    labelnames=["direction", "table"],
    registry=REGISTRY,
)

# =======================
# TABLE METRICS
# =======================

table_sync_errors_total = Counter(
    name="bisync_table_sync_errors_total",
    documentation="Table syncs that rolled back",
    labelnames=["direction", "table"],
    registry=REGISTRY,
)

table_sync_duration_seconds = Histogram(
    name="bisync_table_sync_duration_seconds",
    documentation="Time spent syncing one table in seconds",
    labelnames=["direction", "table"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=REGISTRY,
)

watermark_timestamp_seconds = Gauge(
    name="bisync_watermark_timestamp_seconds",
    documentation="Current watermark per table as a Unix timestamp",
    labelnames=["direction", "table"],
    registry=REGISTRY,
)

fk_cache_keys = Gauge(
    name="bisync_fk_cache_keys",
    documentation="Number of valid keys cached per reference table",
    labelnames=["reference_table"],
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """Render every bisync metric in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def start_metrics_server(port: int) -> None:
    """
    Serve REGISTRY over HTTP on a background thread

    Args:
        port: Port to listen on
    """
    from prometheus_client import start_http_server

    start_http_server(port, registry=REGISTRY)


@contextmanager
def track_duration(histogram: Histogram, **labels):
    """
    Observe the wall time of a block, whether it succeeds or raises

    Usage:
        with track_duration(table_sync_duration_seconds, direction="forward", table="jobshead"):
            ...
    """
    started = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - started)


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """Increment a labelled counter; zero increments create no series."""
    if value:
        counter.labels(**labels).inc(value)


def set_gauge(gauge: Gauge, value: float, **labels) -> None:
    gauge.labels(**labels).set(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    histogram.labels(**labels).observe(value)


def record_table_sync(
    direction: str,
    table: str,
    extracted: int,
    written: int,
    filtered: int = 0,
    skipped: int = 0,
    failed: int = 0,
) -> None:
    """
    Record the row counters for one completed table sync

    Filtered counts only occur on the forward path and skipped counts only on
    the reverse path, so those series carry no direction label.
    """
    for counter, value in (
        (rows_extracted_total, extracted),
        (rows_written_total, written),
        (rows_failed_total, failed),
    ):
        increment_counter(counter, value, direction=direction, table=table)
    increment_counter(rows_filtered_total, filtered, table=table)
    increment_counter(rows_skipped_total, skipped, table=table)
