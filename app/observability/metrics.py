"""
Metrics Collection with Prometheus.

Exposes authentication, AI proxy and trial credit metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"
    CHANNEL = "channel"


class ServiceMetrics:
    """
    Centralized metrics for the Relativit API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Authentication events (logins, refreshes, code verifications)
    - AI provider calls (rate, tokens, latency)
    - Trial credit reservations and settlements
    - Side channel (audit, usage log, email) failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "relativit_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "relativit_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "relativit_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "relativit_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Authentication Metrics
        # ====================================================================
        self.auth_events_total = Counter(
            "relativit_auth_events_total",
            "Authentication events by operation and outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # AI Proxy Metrics
        # ====================================================================
        self.ai_requests_total = Counter(
            "relativit_ai_requests_total",
            "Total proxied AI provider requests",
            [MetricLabels.PROVIDER, MetricLabels.ENDPOINT, "is_trial", "success"],
        )

        self.ai_tokens_total = Counter(
            "relativit_ai_tokens_total",
            "Total tokens consumed through the proxy",
            [MetricLabels.PROVIDER, "is_trial"],
        )

        self.ai_request_duration_seconds = Histogram(
            "relativit_ai_request_duration_seconds",
            "Provider round-trip duration in seconds",
            [MetricLabels.PROVIDER],
            buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        # ====================================================================
        # Trial Credit Metrics
        # ====================================================================
        self.trial_reservations_total = Counter(
            "relativit_trial_reservations_total",
            "Trial credit reservations by outcome",
            [MetricLabels.OUTCOME],
        )

        self.trial_debit_micros = Histogram(
            "relativit_trial_debit_micros",
            "Settled trial debits in micro-units",
            buckets=(10, 100, 1000, 5000, 10000, 50000, 100000, 250000, 500000),
        )

        # ====================================================================
        # Side Channel Metrics
        # ====================================================================
        self.side_channel_failures_total = Counter(
            "relativit_side_channel_failures_total",
            "Failures writing to fire-and-forget side channels",
            [MetricLabels.CHANNEL],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "relativit_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_auth_event(self, operation: str, success: bool) -> None:
        """Record a login, refresh, verification or logout outcome."""
        self.auth_events_total.labels(
            operation=operation, outcome="success" if success else "failure"
        ).inc()

    def record_ai_request(
        self,
        provider: str,
        endpoint: str,
        is_trial: bool,
        success: bool,
        tokens: int,
        duration: float,
    ) -> None:
        """Record one proxied provider call."""
        self.ai_requests_total.labels(
            provider=provider, endpoint=endpoint, is_trial=str(is_trial), success=str(success)
        ).inc()
        if tokens:
            self.ai_tokens_total.labels(provider=provider, is_trial=str(is_trial)).inc(tokens)
        self.ai_request_duration_seconds.labels(provider=provider).observe(duration)

    def record_trial_reservation(self, outcome: str) -> None:
        """Record a trial hold outcome: reserved, exhausted, contended or released."""
        self.trial_reservations_total.labels(outcome=outcome).inc()

    def record_trial_debit(self, micros: int) -> None:
        """Record a settled trial debit."""
        self.trial_debit_micros.observe(micros)

    def record_side_channel_failure(self, channel: str) -> None:
        """Record a dropped audit/usage/email write."""
        self.side_channel_failures_total.labels(channel=channel).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ServiceMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/api/ai/chat", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()
