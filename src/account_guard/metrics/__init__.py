"""Metrics — Prometheus metrics collection and exposure."""

from __future__ import annotations

from account_guard.metrics.collector import GuardMetrics, MetricsCollector

__all__ = ["GuardMetrics", "MetricsCollector"]
