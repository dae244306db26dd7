"""
Monitoring Module - Metrics
===========================

[COMPONENTS]
- MetricsCollector: Сбор и экспорт метрик
- Counter / Gauge / Histogram: примитивы
"""

from .metrics import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    get_metrics,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "get_metrics",
]
