"""Metrics components."""

from dm_gateway.components.metrics.collector import MetricsCollector

__all__ = ["MetricsCollector"]
