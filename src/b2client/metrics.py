"""Prometheus metrics definitions for b2client.

All b2client metrics use the ``b2client_`` prefix.  Nothing is registered in
the global ``prometheus_client`` registry until :func:`init_metrics` is
called; until then the module-level references stay ``None`` and the
``record_*`` helpers are no-ops.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# API call counter  (labels: endpoint, status)
# ---------------------------------------------------------------------------
api_calls_total: Counter | None = None

# ---------------------------------------------------------------------------
# Upload counters
# ---------------------------------------------------------------------------
part_uploads_total: Counter | None = None
upload_retries_total: Counter | None = None
bytes_uploaded_total: Counter | None = None

# ---------------------------------------------------------------------------
# Lease gauge (labels: bucket_id)
# ---------------------------------------------------------------------------
upload_leases_outstanding: Gauge | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics (idempotent)."""
    global _initialized
    global api_calls_total, part_uploads_total, upload_retries_total
    global bytes_uploaded_total, upload_leases_outstanding

    if _initialized:
        return

    api_calls_total = Counter(
        "b2client_api_calls_total",
        "Total B2 API calls by endpoint and outcome",
        ["endpoint", "status"],
    )

    part_uploads_total = Counter(
        "b2client_part_uploads_total",
        "Total upload POSTs (whole files and parts) by outcome",
        ["status"],
    )

    upload_retries_total = Counter(
        "b2client_upload_retries_total",
        "Total upload attempts retried after a transient failure",
    )

    bytes_uploaded_total = Counter(
        "b2client_bytes_uploaded_total",
        "Total bytes acknowledged by upload endpoints",
    )

    upload_leases_outstanding = Gauge(
        "b2client_upload_leases_outstanding",
        "Upload leases currently minted per bucket",
        ["bucket_id"],
    )

    _initialized = True


def record_api_call(endpoint: str, status: int | str) -> None:
    if api_calls_total is not None:
        api_calls_total.labels(endpoint=endpoint, status=str(status)).inc()


def record_part_upload(status: str, size: int = 0) -> None:
    if part_uploads_total is not None:
        part_uploads_total.labels(status=status).inc()
    if status == "ok" and bytes_uploaded_total is not None:
        bytes_uploaded_total.inc(size)


def record_retry() -> None:
    if upload_retries_total is not None:
        upload_retries_total.inc()


def record_outstanding(bucket_id: str, outstanding: int) -> None:
    if upload_leases_outstanding is not None:
        upload_leases_outstanding.labels(bucket_id=bucket_id).set(outstanding)
