"""Engagement metrics providers."""

from services.metrics.providers import (
    BaseMetricsProvider,
    GraphMetricsProvider,
    StubMetricsProvider,
    get_metrics_provider,
)
from services.metrics.types import Metrics, ProviderError, stub_metrics

__all__ = [
    "BaseMetricsProvider",
    "GraphMetricsProvider",
    "Metrics",
    "ProviderError",
    "StubMetricsProvider",
    "get_metrics_provider",
    "stub_metrics",
]
