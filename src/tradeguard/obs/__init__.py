from tradeguard.obs.metric_registry import REGISTRY, MetricDef, MetricType, validate_registry
from tradeguard.obs.metrics import (
    LoggingMetricsSink,
    MetricsSink,
    NullMetricsSink,
    PrometheusMetricsSink,
    configure_metrics_sink,
    emit_metric,
    get_metrics_sink,
    inc_counter,
    observe_histogram,
    set_gauge,
    set_metrics_sink,
)

__all__ = [
    "LoggingMetricsSink",
    "MetricDef",
    "MetricType",
    "MetricsSink",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    "REGISTRY",
    "configure_metrics_sink",
    "emit_metric",
    "get_metrics_sink",
    "inc_counter",
    "observe_histogram",
    "set_gauge",
    "set_metrics_sink",
    "validate_registry",
]
