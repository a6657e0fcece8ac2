"""
Prometheus metrics for uploads, retries and integrity checks.
Registered on the global REGISTRY at import time.
"""

from prometheus_client import Counter, Histogram

UPLOADS_TOTAL = Counter(
    "gcs_output_uploads_total",
    "Total number of remote object writes",
    ["kind", "status"],  # kind: insert|chunk|compose ; status: success|failure
)

UPLOADED_BYTES_TOTAL = Counter(
    "gcs_output_uploaded_bytes_total",
    "Bytes sent to the object store",
    ["kind"],
)

UPLOAD_LATENCY = Histogram(
    "gcs_output_upload_latency_seconds",
    "Latency of a remote object write, retries included",
    ["kind"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300],
)

RETRIES_TOTAL = Counter(
    "gcs_output_retries_total",
    "Retries scheduled by the retry executor",
    ["operation"],
)

HASH_MISMATCH_TOTAL = Counter(
    "gcs_output_hash_mismatch_total",
    "Uploads whose local hash differs from the hash reported by the store",
    ["kind"],
)


class MetricsRegistry:
    """Centralized access to the output metrics."""

    uploads_total = UPLOADS_TOTAL
    uploaded_bytes_total = UPLOADED_BYTES_TOTAL
    upload_latency = UPLOAD_LATENCY
    retries_total = RETRIES_TOTAL
    hash_mismatch_total = HASH_MISMATCH_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
