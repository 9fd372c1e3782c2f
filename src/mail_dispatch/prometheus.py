# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the mail dispatcher.

All metrics use the ``md_`` prefix (mail-dispatch) and, except for the
staging gauge, are labelled by delivery ``method``.

Metrics exposed:
    - ``md_sent_total``: messages accepted by a transport.
    - ``md_errors_total``: transport failures.
    - ``md_deferred_total``: messages staged or queued for later.
    - ``md_rate_limited_total``: sends rejected by the rate limiter.
    - ``md_suppressed_total``: sends dropped (disabled method, empty To).
    - ``md_staged_messages``: rows currently waiting in ``mail_staging``.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MailMetrics:
    """Prometheus metrics collector for the dispatcher.

    Attributes:
        registry: The CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional registry. A private one is created otherwise,
                so several dispatchers (or tests) never collide.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("md_sent_total", "Total sent emails", ["method"], registry=self.registry)
        self.errors = Counter("md_errors_total", "Total transport errors", ["method"], registry=self.registry)
        self.deferred = Counter(
            "md_deferred_total",
            "Total emails staged or queued",
            ["method", "reason"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "md_rate_limited_total",
            "Total rate limited occurrences",
            ["method"],
            registry=self.registry,
        )
        self.suppressed = Counter(
            "md_suppressed_total",
            "Total suppressed emails",
            ["method", "reason"],
            registry=self.registry,
        )
        self.staged = Gauge("md_staged_messages", "Messages waiting for commit", registry=self.registry)

    def inc_sent(self, method: str) -> None:
        self.sent.labels(method=method).inc()

    def inc_error(self, method: str) -> None:
        self.errors.labels(method=method).inc()

    def inc_deferred(self, method: str, reason: str) -> None:
        self.deferred.labels(method=method, reason=reason).inc()

    def inc_rate_limited(self, method: str) -> None:
        self.rate_limited.labels(method=method).inc()

    def inc_suppressed(self, method: str, reason: str) -> None:
        self.suppressed.labels(method=method, reason=reason).inc()

    def set_staged(self, value: int) -> None:
        self.staged.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
