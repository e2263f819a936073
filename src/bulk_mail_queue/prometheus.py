# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring delivery queues.

All metrics use the ``bmq_`` prefix and are labeled by provider name.

Metrics exposed:
    - ``bmq_attempts_total``: Send attempts.
    - ``bmq_sent_total``: Messages accepted by the provider.
    - ``bmq_retries_total``: Failed attempts that will be retried.
    - ``bmq_failed_total``: Messages that reached the attempt ceiling.
    - ``bmq_quota_waits_total``: Drain steps delayed by provider quota.
    - ``bmq_pending_messages``: Messages waiting across all queues.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Prometheus metrics collector shared by every delivery queue.

    Attributes:
        registry: The CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create the metrics inside ``registry`` (a fresh one by default)."""
        self.registry = registry or CollectorRegistry()
        self.attempts = Counter("bmq_attempts_total", "Total send attempts", ["provider"], registry=self.registry)
        self.sent = Counter("bmq_sent_total", "Total sent emails", ["provider"], registry=self.registry)
        self.retries = Counter("bmq_retries_total", "Total failed attempts scheduled for retry", ["provider"], registry=self.registry)
        self.failed = Counter("bmq_failed_total", "Total emails failed after all attempts", ["provider"], registry=self.registry)
        self.quota_waits = Counter("bmq_quota_waits_total", "Total drain steps delayed by provider quota", ["provider"], registry=self.registry)
        self.pending = Gauge("bmq_pending_messages", "Current pending messages", ["provider"], registry=self.registry)

    def inc_attempt(self, provider: str) -> None:
        self.attempts.labels(provider=provider or "default").inc()

    def inc_sent(self, provider: str) -> None:
        self.sent.labels(provider=provider or "default").inc()

    def inc_retry(self, provider: str) -> None:
        self.retries.labels(provider=provider or "default").inc()

    def inc_failed(self, provider: str) -> None:
        self.failed.labels(provider=provider or "default").inc()

    def inc_quota_wait(self, provider: str) -> None:
        self.quota_waits.labels(provider=provider or "default").inc()

    def add_pending(self, provider: str, delta: int) -> None:
        """Move the pending gauge for ``provider`` by ``delta``."""
        self.pending.labels(provider=provider or "default").inc(delta)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
