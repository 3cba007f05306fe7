"""Metrics sink interface and backends.

The orchestrator reports through ``MetricsSink`` only; the concrete backend
is chosen at construction. ``PrometheusMetricsSink`` owns an isolated
``CollectorRegistry`` so several orchestrators (and tests) can coexist in
one process.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from wallbounce.config import ObservabilityConfig

logger = logging.getLogger(__name__)


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDefinition:
    """Definition of a metric emitted by the orchestrator.

    Attributes:
        name: Metric name without namespace
        description: Human-readable description
        metric_type: Counter, gauge or histogram
        labels: Label names, in order
        buckets: Histogram buckets (histograms only)
    """

    name: str
    description: str
    metric_type: MetricType
    labels: Tuple[str, ...] = ()
    buckets: Optional[Tuple[float, ...]] = None

    def full_name(self, namespace: str = "wallbounce") -> str:
        return f"{namespace}_{self.name}"


# =============================================================================
# Metrics Catalog
# =============================================================================

PROVIDER_INVOCATIONS = "provider_invocations_total"
PROVIDER_LATENCY = "provider_latency_seconds"
CACHE_LOOKUPS = "cache_lookups_total"
CIRCUIT_TRANSITIONS = "circuit_transitions_total"
CONSENSUS_CONFIDENCE = "consensus_confidence"
CONSENSUS_AGREEMENT = "consensus_agreement"
ESCALATIONS = "escalations_total"
REQUESTS = "requests_total"

_SCORE_BUCKETS = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)

METRICS_CATALOG: Dict[str, MetricDefinition] = {
    definition.name: definition
    for definition in (
        MetricDefinition(
            PROVIDER_INVOCATIONS,
            "Provider invocation attempts by outcome",
            MetricType.COUNTER,
            ("provider", "outcome"),
        ),
        MetricDefinition(
            PROVIDER_LATENCY,
            "Provider invocation latency in seconds",
            MetricType.HISTOGRAM,
            ("provider",),
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
        ),
        MetricDefinition(
            CACHE_LOOKUPS,
            "Response cache lookups by result (hit or miss)",
            MetricType.COUNTER,
            ("result",),
        ),
        MetricDefinition(
            CIRCUIT_TRANSITIONS,
            "Circuit breaker state transitions",
            MetricType.COUNTER,
            ("provider", "from_state", "to_state"),
        ),
        MetricDefinition(
            CONSENSUS_CONFIDENCE,
            "Final consensus confidence per request",
            MetricType.HISTOGRAM,
            buckets=_SCORE_BUCKETS,
        ),
        MetricDefinition(
            CONSENSUS_AGREEMENT,
            "Consensus agreement score per request",
            MetricType.HISTOGRAM,
            buckets=_SCORE_BUCKETS,
        ),
        MetricDefinition(
            ESCALATIONS,
            "Escalation rounds started, by originating tier",
            MetricType.COUNTER,
            ("tier",),
        ),
        MetricDefinition(
            REQUESTS,
            "Completed requests by tier and status",
            MetricType.COUNTER,
            ("tier", "status"),
        ),
    )
}


def get_metric(name: str) -> MetricDefinition:
    try:
        return METRICS_CATALOG[name]
    except KeyError:
        raise KeyError(f"Unknown metric '{name}'") from None


# =============================================================================
# Sinks
# =============================================================================


@runtime_checkable
class MetricsSink(Protocol):
    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, amount: float = 1.0) -> None:
        ...

    def observe(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        ...

    def set_gauge(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        ...


class NullMetricsSink:
    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, amount: float = 1.0) -> None:
        return None

    def observe(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        return None

    def set_gauge(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        return None


LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Optional[Mapping[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


@dataclass
class InMemoryMetricsSink:
    """Thread-safe in-process sink, handy for tests and the CLI."""

    counters: Dict[str, Dict[LabelKey, float]] = field(default_factory=lambda: defaultdict(dict))
    observations: Dict[str, Dict[LabelKey, List[float]]] = field(default_factory=lambda: defaultdict(dict))
    gauges: Dict[str, Dict[LabelKey, float]] = field(default_factory=lambda: defaultdict(dict))

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, amount: float = 1.0) -> None:
        key = _label_key(labels)
        with self._lock:
            series = self.counters[name]
            series[key] = series.get(key, 0.0) + amount

    def observe(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        with self._lock:
            self.observations[name].setdefault(_label_key(labels), []).append(value)

    def set_gauge(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        with self._lock:
            self.gauges[name][_label_key(labels)] = value

    def counter_value(self, name: str, **labels: str) -> float:
        with self._lock:
            return self.counters.get(name, {}).get(_label_key(labels), 0.0)

    def observed(self, name: str, **labels: str) -> List[float]:
        with self._lock:
            return list(self.observations.get(name, {}).get(_label_key(labels), []))

    def snapshot(self) -> Dict[str, Any]:
        def _render(table: Mapping[str, Mapping[LabelKey, Any]]) -> Dict[str, Any]:
            return {
                name: {",".join(f"{k}={v}" for k, v in key) or "_": value for key, value in series.items()}
                for name, series in table.items()
            }

        with self._lock:
            return {
                "counters": _render(self.counters),
                "observations": _render(self.observations),
                "gauges": _render(self.gauges),
            }


class PrometheusMetricsSink:
    """Exports the metric catalog through prometheus_client."""

    def __init__(
        self,
        *,
        namespace: str = "wallbounce",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()
        self._server_started = False
        self._lock = threading.Lock()
        self._metrics: Dict[str, Any] = {}
        for definition in METRICS_CATALOG.values():
            self._metrics[definition.name] = self._create(definition)

    def _create(self, definition: MetricDefinition) -> Any:
        name = definition.full_name(self.namespace)
        labels = list(definition.labels)
        if definition.metric_type is MetricType.COUNTER:
            return Counter(name, definition.description, labels, registry=self.registry)
        if definition.metric_type is MetricType.GAUGE:
            return Gauge(name, definition.description, labels, registry=self.registry)
        return Histogram(
            name,
            definition.description,
            labels,
            buckets=definition.buckets or Histogram.DEFAULT_BUCKETS,
            registry=self.registry,
        )

    def _child(self, name: str, labels: Optional[Mapping[str, str]]) -> Any:
        metric = self._metrics[get_metric(name).name]
        return metric.labels(**labels) if labels else metric

    def increment(self, name: str, labels: Optional[Mapping[str, str]] = None, amount: float = 1.0) -> None:
        self._child(name, labels).inc(amount)

    def observe(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        self._child(name, labels).observe(value)

    def set_gauge(self, name: str, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        self._child(name, labels).set(value)

    def start_server(self, port: int, host: str = "0.0.0.0") -> bool:
        """Start the /metrics HTTP server once. Returns True if started."""
        if port <= 0:
            return False
        with self._lock:
            if self._server_started:
                return False
            start_http_server(port, addr=host, registry=self.registry)
            self._server_started = True
        logger.info("Prometheus metrics server listening on %s:%d", host, port)
        return True


def create_metrics_sink(config: ObservabilityConfig) -> MetricsSink:
    if not config.prometheus_enabled:
        return NullMetricsSink()
    sink = PrometheusMetricsSink(namespace=config.prometheus_namespace)
    sink.start_server(config.prometheus_port, config.prometheus_host)
    return sink


def safe_record(sink: Optional[MetricsSink], method: str, *args: Any, **kwargs: Any) -> None:
    """Call a sink method, logging instead of raising on failure."""
    if sink is None:
        return
    try:
        getattr(sink, method)(*args, **kwargs)
    except Exception:
        logger.exception("Metrics sink %s failed", method)
