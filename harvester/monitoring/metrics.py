"""
Metrics Collector - Сбор метрик
===============================

[METRICS] Типы метрик:
- Counter: монотонно возрастающий (announces, drops, failures)
- Gauge: текущее значение (active sessions, routing table size)
- Histogram: распределение (длительность сессий)

[EXPORT] Форматы экспорта:
- Prometheus text format
- JSON (для периодической строки статистики в main.py)

[OVERLOAD] Переполнение очереди или пула воркеров не является ошибкой
для вызывающей стороны - это только счётчик announces_dropped_total.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Tuple
from collections import defaultdict
import threading

logger = logging.getLogger(__name__)


@dataclass
class MetricValue:
    """Значение метрики."""
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class _LabeledMetric:
    """Общая часть метрик с labels."""

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []

        self._values: Dict[Tuple, float] = defaultdict(float)
        self._lock = threading.Lock()

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """Получить значение."""
        label_values = self._make_label_key(labels)
        return self._values.get(label_values, 0.0)

    def get_all(self) -> List[MetricValue]:
        """Получить все значения."""
        result = []
        with self._lock:
            for label_key, value in self._values.items():
                labels = dict(zip(self.label_names, label_key)) if self.label_names else {}
                result.append(MetricValue(value=value, labels=labels))
        return result

    def _make_label_key(self, labels: Optional[Dict[str, str]]) -> Tuple:
        if not labels:
            return ()
        return tuple(labels.get(name, "") for name in self.label_names)


class Counter(_LabeledMetric):
    """
    Counter метрика - монотонно возрастающая.

    [USAGE]
    ```python
    dropped = Counter("announces_dropped_total", "Dropped announces", ["reason"])
    dropped.inc(labels={"reason": "queue_full"})
    ```
    """

    def inc(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Увеличить счётчик."""
        label_values = self._make_label_key(labels)
        with self._lock:
            self._values[label_values] += amount


class Gauge(_LabeledMetric):
    """Gauge метрика - текущее значение."""

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        label_values = self._make_label_key(labels)
        with self._lock:
            self._values[label_values] = value

    def inc(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        label_values = self._make_label_key(labels)
        with self._lock:
            self._values[label_values] += amount

    def dec(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        label_values = self._make_label_key(labels)
        with self._lock:
            self._values[label_values] -= amount


class Histogram:
    """
    Histogram метрика - распределение значений.

    [USAGE]
    ```python
    duration = Histogram("session_duration_seconds", buckets=(1.0, 5.0, 30.0))
    duration.observe(2.4)
    ```
    """

    DEFAULT_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        self.name = name
        self.description = description
        self.buckets = buckets or self.DEFAULT_BUCKETS

        self._bucket_counts: Dict[float, int] = defaultdict(int)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        """Записать наблюдение."""
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "count": self._count,
                "sum": self._sum,
                "avg": self._sum / self._count if self._count > 0 else 0,
                "buckets": dict(self._bucket_counts),
            }


class MetricsCollector:
    """
    Централизованный сборщик метрик.

    [USAGE]
    ```python
    collector = MetricsCollector()
    collector.inc("announces_received_total")
    collector.set("routing_table_nodes", 812)
    print(collector.export_prometheus())
    ```

    Обращение к незарегистрированной метрике через inc/set/observe
    молча игнорируется.
    """

    def __init__(self, prefix: str = "harvester"):
        """
        Args:
            prefix: Префикс для всех метрик
        """
        self.prefix = prefix

        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}

        self._register_defaults()

    def counter(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Counter:
        """Создать Counter."""
        full_name = f"{self.prefix}_{name}"
        if full_name not in self._counters:
            self._counters[full_name] = Counter(full_name, description, labels)
        return self._counters[full_name]

    def gauge(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Gauge:
        """Создать Gauge."""
        full_name = f"{self.prefix}_{name}"
        if full_name not in self._gauges:
            self._gauges[full_name] = Gauge(full_name, description, labels)
        return self._gauges[full_name]

    def histogram(
        self,
        name: str,
        description: str = "",
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        """Создать Histogram."""
        full_name = f"{self.prefix}_{name}"
        if full_name not in self._histograms:
            self._histograms[full_name] = Histogram(full_name, description, buckets)
        return self._histograms[full_name]

    def inc(self, name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Увеличить counter."""
        full_name = f"{self.prefix}_{name}"
        if full_name in self._counters:
            self._counters[full_name].inc(amount, labels)

    def set(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Установить gauge."""
        full_name = f"{self.prefix}_{name}"
        if full_name in self._gauges:
            self._gauges[full_name].set(value, labels)

    def add(self, name: str, amount: float) -> None:
        """Сдвинуть gauge на amount (может быть отрицательным)."""
        full_name = f"{self.prefix}_{name}"
        if full_name in self._gauges:
            self._gauges[full_name].inc(amount)

    def observe(self, name: str, value: float) -> None:
        """Записать в histogram."""
        full_name = f"{self.prefix}_{name}"
        if full_name in self._histograms:
            self._histograms[full_name].observe(value)

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Текущее значение counter или gauge (0 если метрики нет)."""
        full_name = f"{self.prefix}_{name}"
        metric = self._counters.get(full_name) or self._gauges.get(full_name)
        if metric is None:
            return 0.0
        return metric.get(labels)

    def export_prometheus(self) -> str:
        """Экспорт в Prometheus text format."""
        lines = []

        for kind, metrics in (("counter", self._counters), ("gauge", self._gauges)):
            for name, metric in metrics.items():
                if metric.description:
                    lines.append(f"# HELP {name} {metric.description}")
                lines.append(f"# TYPE {name} {kind}")
                for mv in metric.get_all():
                    label_str = self._format_labels(mv.labels)
                    lines.append(f"{name}{label_str} {mv.value}")

        for name, histogram in self._histograms.items():
            if histogram.description:
                lines.append(f"# HELP {name} {histogram.description}")
            lines.append(f"# TYPE {name} summary")
            stats = histogram.get_stats()
            lines.append(f"{name}_sum {stats['sum']}")
            lines.append(f"{name}_count {stats['count']}")

        return "\n".join(lines)

    def export_json(self) -> Dict[str, Any]:
        """Экспорт в JSON."""
        result: Dict[str, Any] = {
            "timestamp": time.time(),
            "counters": {},
            "gauges": {},
            "histograms": {},
        }

        for section, metrics in (("counters", self._counters), ("gauges", self._gauges)):
            for name, metric in metrics.items():
                values = metric.get_all()
                if len(values) == 1 and not values[0].labels:
                    result[section][name] = values[0].value
                elif values:
                    result[section][name] = [
                        {"value": v.value, "labels": v.labels} for v in values
                    ]

        for name, histogram in self._histograms.items():
            result["histograms"][name] = histogram.get_stats()

        return result

    def _format_labels(self, labels: Dict[str, str]) -> str:
        """Форматировать labels для Prometheus."""
        if not labels:
            return ""
        parts = [f'{k}="{v}"' for k, v in labels.items()]
        return "{" + ",".join(parts) + "}"

    def _register_defaults(self) -> None:
        """Зарегистрировать стандартные метрики."""
        # DHT
        self.counter("datagrams_received_total", "UDP datagrams received")
        self.counter("datagrams_malformed_total", "Datagrams dropped as unparseable")
        self.counter("queries_sent_total", "KRPC queries sent", ["method"])
        self.counter("queries_received_total", "KRPC queries received", ["method"])
        self.counter("query_timeouts_total", "KRPC queries without reply")
        self.counter("nodes_evicted_total", "Contacts evicted after repeated timeouts")
        self.gauge("routing_table_nodes", "Contacts in routing table")
        self.gauge("pending_queries", "Outstanding KRPC transactions")

        # Announces / scheduler
        self.counter("announces_received_total", "announce_peer events observed")
        self.counter("announces_dropped_total", "Announce events dropped", ["reason"])
        self.counter("sessions_started_total", "Metadata sessions started")
        self.counter("sessions_completed_total", "Metadata sessions validated")
        self.counter("sessions_failed_total", "Metadata sessions failed", ["reason"])
        self.gauge("sessions_active", "Metadata sessions in flight")
        self.gauge("queue_depth", "Announce events waiting for a worker")
        self.histogram("session_duration_seconds", "Metadata session duration")

        # Output
        self.counter("records_emitted_total", "Torrent records published")
        self.counter("records_discarded_total", "Validated dictionaries without usable fields")
        self.counter("peers_blacklisted_total", "Peer addresses put on the blacklist")


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Получить глобальный MetricsCollector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
