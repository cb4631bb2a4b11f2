"""
Transfer Metrics Collection

Prometheus metrics for blob transfer operations: request outcomes, retries,
bytes moved, integrity and precondition failures, and attempt latency.

Author: Ayodele Oladeji
Date: 2025
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


class TransferMetrics:
    """
    Prometheus metrics collector for blob transfers.

    Each instance owns its collectors. Pass a private ``CollectorRegistry``
    when more than one instance lives in a process (tests do).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collectors.

        Args:
            registry: Prometheus registry (uses default if None)
        """
        self.registry = registry

        self.requests_total = Counter(
            'streamzure_requests_total',
            'Total requests sent to the blob service',
            ['operation', 'status'],
            registry=registry
        )

        self.retries_total = Counter(
            'streamzure_retries_total',
            'Total retried attempts',
            ['operation', 'reason'],
            registry=registry
        )

        self.bytes_downloaded_total = Counter(
            'streamzure_bytes_downloaded_total',
            'Bytes written to download sinks',
            registry=registry
        )

        self.bytes_uploaded_total = Counter(
            'streamzure_bytes_uploaded_total',
            'Bytes accepted by the service from write streams',
            ['blob_type'],
            registry=registry
        )

        self.integrity_failures_total = Counter(
            'streamzure_integrity_failures_total',
            'Downloads rejected for length or hash mismatch',
            ['reason'],
            registry=registry
        )

        self.precondition_failures_total = Counter(
            'streamzure_precondition_failures_total',
            'Requests rejected because a condition did not hold',
            ['operation', 'error_code'],
            registry=registry
        )

        self.absorbed_conditional_errors_total = Counter(
            'streamzure_absorbed_conditional_errors_total',
            'Append retries whose 412 was treated as an earlier success',
            registry=registry
        )

        self.attempt_duration_seconds = Histogram(
            'streamzure_attempt_duration_seconds',
            'Duration of a single request attempt',
            ['operation'],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
            registry=registry
        )

    def track_request(self, operation: str, status: str, duration: float) -> None:
        """
        Track one attempt.

        Args:
            operation: Blob operation name
            status: HTTP status, or the error type when no response arrived
            duration: Attempt duration in seconds
        """
        self.requests_total.labels(operation=operation, status=status).inc()
        self.attempt_duration_seconds.labels(operation=operation).observe(duration)

    def track_retry(self, operation: str, reason: str) -> None:
        self.retries_total.labels(operation=operation, reason=reason).inc()

    def track_download_bytes(self, count: int) -> None:
        self.bytes_downloaded_total.inc(count)

    def track_upload_bytes(self, blob_type: str, count: int) -> None:
        self.bytes_uploaded_total.labels(blob_type=blob_type).inc(count)

    def track_integrity_failure(self, reason: str) -> None:
        self.integrity_failures_total.labels(reason=reason).inc()

    def track_precondition_failure(self, operation: str, error_code: str) -> None:
        self.precondition_failures_total.labels(operation=operation, error_code=error_code).inc()

    def track_absorbed_error(self) -> None:
        self.absorbed_conditional_errors_total.inc()

    def generate_metrics(self) -> bytes:
        """
        Generate Prometheus metrics output.

        Returns:
            Metrics in Prometheus text format
        """
        from prometheus_client import REGISTRY
        registry = self.registry if self.registry is not None else REGISTRY
        return generate_latest(registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Global metrics instance
_metrics: Optional[TransferMetrics] = None


def get_metrics() -> TransferMetrics:
    """
    Get global metrics instance (singleton).

    Returns:
        TransferMetrics instance
    """
    global _metrics
    if _metrics is None:
        _metrics = TransferMetrics()
    return _metrics


def reset_metrics() -> None:
    """Reset global metrics instance (for testing)."""
    global _metrics
    _metrics = None
