"""Metrics collector — Prometheus counters, gauges, histograms.

Exposed series:
- ``guard_stats_total`` gauge-vec (api_keys, devices, audit_logs, open_alerts,
  pending_withdrawals)
- ``guard_key_verifications_total`` counter by outcome
- ``guard_rate_limit_decisions_total`` counter by rule and decision
- ``guard_alerts_total`` counter by severity
- ``guard_withdrawal_transitions_total`` counter by target status
- ``guard_audit_integrity_failures_total`` counter
- ``guard_cron_histogram`` / ``guard_cron_last_execution_gauge``
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

if TYPE_CHECKING:
    from collections.abc import Iterator


_PREFIX = "guard"

_STAT_LABELS = ("entity",)
_STAT_ENTITIES = (
    "api_keys",
    "devices",
    "audit_logs",
    "open_alerts",
    "pending_withdrawals",
)


class MetricsCollector:
    """Low-level Prometheus collector that owns the registry.

    Use :class:`GuardMetrics` for the high-level tracking interface.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

    @property
    def registry(self) -> CollectorRegistry:
        """Return the underlying Prometheus registry."""
        return self._registry

    def gauge(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Gauge:
        """Register and return a Gauge."""
        return Gauge(name, doc, labels, registry=self._registry)

    def histogram(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Histogram:
        """Register and return a Histogram."""
        return Histogram(name, doc, labels, registry=self._registry)

    def counter(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Counter:
        """Register and return a Counter."""
        return Counter(name, doc, labels, registry=self._registry)


class GuardMetrics:
    """High-level account-guard metrics.

    Each instance owns a private registry, so several engines (or test
    cases) can coexist in one process.
    """

    def __init__(self, collector: MetricsCollector | None = None) -> None:
        self._collector = collector or MetricsCollector()

        self._stats = self._collector.gauge(
            f"{_PREFIX}_stats_total",
            "Entity counts in the account guard",
            _STAT_LABELS,
        )

        self._verifications = self._collector.counter(
            f"{_PREFIX}_key_verifications",
            "API key verification attempts by outcome",
            ("outcome",),
        )
        self._rate_limit = self._collector.counter(
            f"{_PREFIX}_rate_limit_decisions",
            "Rate limit decisions by rule and decision",
            ("rule", "decision"),
        )
        self._alerts = self._collector.counter(
            f"{_PREFIX}_alerts",
            "Security alerts raised by severity",
            ("severity",),
        )
        self._withdrawals = self._collector.counter(
            f"{_PREFIX}_withdrawal_transitions",
            "Withdrawal request status transitions",
            ("status",),
        )
        self._integrity = self._collector.counter(
            f"{_PREFIX}_audit_integrity_failures",
            "Audit entries whose checksum or linkage failed verification",
        )

        self._cron_histogram = self._collector.histogram(
            f"{_PREFIX}_cron_histogram",
            "Duration of cron job executions",
            ("job_name",),
        )
        self._cron_last = self._collector.gauge(
            f"{_PREFIX}_cron_last_execution_gauge",
            "Timestamp of last cron execution",
            ("job_name",),
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Return the underlying Prometheus registry."""
        return self._collector.registry

    # -- Stat setters --

    def set_entity_count(self, entity: str, count: int) -> None:
        """Set the current count for one of the tracked entities."""
        if entity not in _STAT_ENTITIES:
            msg = f"unknown entity: {entity}"
            raise ValueError(msg)
        self._stats.labels(entity=entity).set(count)

    # -- Event counters --

    def record_key_verification(self, outcome: str) -> None:
        """Count a key verification (``ok`` or the failure reason)."""
        self._verifications.labels(outcome=outcome).inc()

    def record_rate_limit(self, rule: str, decision: str) -> None:
        """Count a rate limit decision (``allowed``, ``denied``, ``fail_open``)."""
        self._rate_limit.labels(rule=rule, decision=decision).inc()

    def record_alert(self, severity: str) -> None:
        self._alerts.labels(severity=severity).inc()

    def record_withdrawal_transition(self, status: str) -> None:
        self._withdrawals.labels(status=status).inc()

    def record_integrity_failure(self, count: int = 1) -> None:
        self._integrity.inc(count)

    # -- Operation trackers (context managers) --

    @contextmanager
    def track_cron(self, job_name: str) -> Iterator[None]:
        """Track the duration of a cron job and record last execution time."""
        start = time.monotonic()
        try:
            yield
        finally:
            self._cron_histogram.labels(job_name=job_name).observe(time.monotonic() - start)
            self._cron_last.labels(job_name=job_name).set(time.time())
