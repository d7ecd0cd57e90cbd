"""Prometheus metrics for calendar provider traffic.

Metrics exported:
- calsync_provider_requests_total: Counter of provider API calls by outcome
- calsync_provider_request_duration_seconds: Histogram of provider API latency
- calsync_token_refresh_total: Counter of OAuth refresh attempts
- calsync_sync_failures_total: Counter of failures captured during sync/aggregation

All metrics carry a ``provider`` label (google, office365, icloud, webdav).
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

provider_requests_total = Counter(
    "calsync_provider_requests_total",
    "Total number of calendar provider API calls",
    labelnames=["provider", "operation", "outcome"],
)

provider_request_duration_seconds = Histogram(
    "calsync_provider_request_duration_seconds",
    "Latency of calendar provider API calls in seconds",
    labelnames=["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

token_refresh_total = Counter(
    "calsync_token_refresh_total",
    "Total number of OAuth refresh-token exchanges",
    labelnames=["provider", "outcome"],
)

sync_failures_total = Counter(
    "calsync_sync_failures_total",
    "Failures captured and swallowed during calendar sync or availability aggregation",
    labelnames=["provider", "stage"],
)


class ProviderMetrics:
    """Metrics recorder bound to a single provider label."""

    def __init__(self, provider: str) -> None:
        self._provider = provider

    def record_request(self, operation: str, outcome: str, latency: float | None = None) -> None:
        """Record one provider API call.

        Args:
            operation: Logical operation name (e.g. "create_event", "freebusy")
            outcome: "success", "error" or "not_found"
            latency: Optional latency in seconds
        """
        provider_requests_total.labels(
            provider=self._provider,
            operation=operation,
            outcome=outcome,
        ).inc()
        if latency is not None:
            provider_request_duration_seconds.labels(
                provider=self._provider,
                operation=operation,
            ).observe(latency)

    def record_token_refresh(self, outcome: str) -> None:
        token_refresh_total.labels(provider=self._provider, outcome=outcome).inc()

    def record_sync_failure(self, stage: str) -> None:
        sync_failures_total.labels(provider=self._provider, stage=stage).inc()
