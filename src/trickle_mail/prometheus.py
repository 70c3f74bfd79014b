# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the trickle mail service.

All metrics use the ``trickle_`` prefix.

Metrics exposed:
    - ``trickle_jobs_submitted_total``: Counter of accepted jobs.
    - ``trickle_jobs_finished_total``: Counter of jobs reaching a terminal status, per status.
    - ``trickle_sent_total``: Counter of recipients delivered to the provider.
    - ``trickle_failed_total``: Counter of recipients that failed, per error kind.
    - ``trickle_retries_total``: Counter of retried send attempts.
    - ``trickle_duplicate_triggers_total``: Counter of triggers that fired more than once.
    - ``trickle_events_total``: Counter of ingested delivery events, per event type.
    - ``trickle_pending_triggers``: Gauge of scheduled triggers not yet consumed.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class TrickleMetrics:
    """Prometheus metrics collector for the trickle mail service.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created so several services (or tests) can
                coexist in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.jobs_submitted = Counter(
            "trickle_jobs_submitted_total",
            "Total accepted bulk-send jobs",
            registry=self.registry,
        )
        self.jobs_finished = Counter(
            "trickle_jobs_finished_total",
            "Total jobs reaching a terminal status",
            ["status"],
            registry=self.registry,
        )
        self.sent = Counter(
            "trickle_sent_total",
            "Total recipients delivered to the provider",
            registry=self.registry,
        )
        self.failed = Counter(
            "trickle_failed_total",
            "Total recipients that could not be sent",
            ["kind"],
            registry=self.registry,
        )
        self.retries = Counter(
            "trickle_retries_total",
            "Total retried send attempts",
            registry=self.registry,
        )
        self.duplicates = Counter(
            "trickle_duplicate_triggers_total",
            "Total delivery triggers that fired more than once",
            registry=self.registry,
        )
        self.events = Counter(
            "trickle_events_total",
            "Total ingested delivery events",
            ["event_type"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "trickle_pending_triggers",
            "Scheduled delivery triggers not yet consumed",
            registry=self.registry,
        )

    def inc_submitted(self) -> None:
        self.jobs_submitted.inc()

    def inc_finished(self, status: str) -> None:
        self.jobs_finished.labels(status=status).inc()

    def inc_sent(self) -> None:
        self.sent.inc()

    def inc_failed(self, kind: str) -> None:
        """Increment the failure counter.

        Args:
            kind: Error kind (``retryable`` or ``permanent``). Falls back to
                "unknown" if empty.
        """
        self.failed.labels(kind=kind or "unknown").inc()

    def inc_retry(self) -> None:
        self.retries.inc()

    def inc_duplicate(self) -> None:
        self.duplicates.inc()

    def inc_event(self, event_type: str) -> None:
        self.events.labels(event_type=event_type or "unknown").inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
