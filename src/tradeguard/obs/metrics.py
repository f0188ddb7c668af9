from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any, Protocol

from tradeguard.obs.metric_registry import REGISTRY, MetricDef, MetricType

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        ...


class LoggingMetricsSink:
    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        logger.debug(
            "metric_emit",
            extra={
                "extra": {
                    "metric_name": defn.name,
                    "metric_type": defn.type.value,
                    "metric_value": str(value),
                    "labels": labels,
                }
            },
        )


class PrometheusMetricsSink:
    """Forwards registry metrics to prometheus_client collectors.

    prometheus_client is an optional extra and is imported on construction.
    Collectors are created lazily with the definition's required labels.
    """

    def __init__(self, registry: Any | None = None) -> None:
        import prometheus_client

        self._client = prometheus_client
        self._registry = registry if registry is not None else prometheus_client.REGISTRY
        self._collectors: dict[str, Any] = {}

    def _collector(self, defn: MetricDef) -> Any:
        collector = self._collectors.get(defn.name)
        if collector is not None:
            return collector
        factory = {
            MetricType.COUNTER: self._client.Counter,
            MetricType.GAUGE: self._client.Gauge,
            MetricType.HISTOGRAM: self._client.Histogram,
        }[defn.type]
        # prometheus_client appends _total to counters itself
        name = defn.name.removesuffix("_total") if defn.type is MetricType.COUNTER else defn.name
        collector = factory(
            name,
            defn.description or defn.name,
            labelnames=defn.required_labels,
            registry=self._registry,
        )
        self._collectors[defn.name] = collector
        return collector

    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        bound = self._collector(defn).labels(
            **{label: str(labels[label]) for label in defn.required_labels}
        )
        numeric = float(value)
        if defn.type is MetricType.COUNTER:
            bound.inc(numeric)
        elif defn.type is MetricType.GAUGE:
            bound.set(numeric)
        else:
            bound.observe(numeric)

    def serve(self, port: int) -> None:
        self._client.start_http_server(port, registry=self._registry)
        logger.info("prometheus_exporter_started", extra={"extra": {"port": port}})


class NullMetricsSink:
    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        return None


_DEFAULT_SINK: MetricsSink = LoggingMetricsSink()
_STRICT_REGISTRY = os.getenv("OBS_METRICS_STRICT", "1") != "0"


def set_metrics_sink(sink: MetricsSink) -> None:
    global _DEFAULT_SINK
    _DEFAULT_SINK = sink


def get_metrics_sink() -> MetricsSink:
    return _DEFAULT_SINK


def configure_metrics_sink(exporter: str, *, prometheus_port: int = 9464) -> MetricsSink:
    sink: MetricsSink
    if exporter == "prometheus":
        prometheus_sink = PrometheusMetricsSink()
        prometheus_sink.serve(prometheus_port)
        sink = prometheus_sink
    elif exporter == "none":
        sink = NullMetricsSink()
    else:
        sink = LoggingMetricsSink()
    set_metrics_sink(sink)
    return sink


def _validate_labels(defn: MetricDef, labels: dict[str, str]) -> None:
    missing = [label for label in defn.required_labels if label not in labels]
    if missing:
        raise ValueError(f"missing labels for {defn.name}: {missing}")


def emit_metric(name: str, value: float | int | Decimal, labels: dict[str, str]) -> None:
    defn = REGISTRY.get(name)
    if defn is None:
        message = f"unknown metric name: {name}"
        if _STRICT_REGISTRY:
            raise ValueError(message)
        logger.error("metric_unknown", extra={"extra": {"name": name}})
        return
    _validate_labels(defn, labels)
    _DEFAULT_SINK.emit(defn, value, labels)


def _emit_typed(
    name: str, expected: MetricType, value: float | int | Decimal, labels: dict[str, str]
) -> None:
    defn = REGISTRY.get(name)
    if defn is not None and defn.type is not expected:
        raise ValueError(f"metric {name} is not a {expected.value}")
    emit_metric(name, value, labels)


def inc_counter(name: str, labels: dict[str, str], delta: int = 1) -> None:
    _emit_typed(name, MetricType.COUNTER, delta, labels)


def set_gauge(name: str, value: float | int | Decimal, labels: dict[str, str]) -> None:
    _emit_typed(name, MetricType.GAUGE, value, labels)


def observe_histogram(name: str, value: float | int | Decimal, labels: dict[str, str]) -> None:
    _emit_typed(name, MetricType.HISTOGRAM, value, labels)
