from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDef:
    name: str
    type: MetricType
    required_labels: tuple[str, ...] = ()
    description: str = ""


REGISTRY: dict[str, MetricDef] = {
    "guard_rate_limit_waits_total": MetricDef(
        name="guard_rate_limit_waits_total",
        type=MetricType.COUNTER,
        required_labels=("key",),
        description="Requests that had to wait for a free rate-limit slot",
    ),
    "guard_rate_limit_wait_seconds": MetricDef(
        name="guard_rate_limit_wait_seconds",
        type=MetricType.HISTOGRAM,
        required_labels=("key",),
        description="Seconds spent waiting for a rate-limit slot",
    ),
    "guard_retry_attempts_total": MetricDef(
        name="guard_retry_attempts_total",
        type=MetricType.COUNTER,
        required_labels=("venue", "endpoint", "category"),
        description="Failed attempts that were scheduled for a retry",
    ),
    "guard_retry_exhausted_total": MetricDef(
        name="guard_retry_exhausted_total",
        type=MetricType.COUNTER,
        required_labels=("venue", "endpoint"),
        description="Operations that ran out of retry attempts",
    ),
    "guard_breaker_state": MetricDef(
        name="guard_breaker_state",
        type=MetricType.GAUGE,
        required_labels=("breaker",),
        description="0 closed, 1 half open, 2 open",
    ),
    "guard_breaker_transitions_total": MetricDef(
        name="guard_breaker_transitions_total",
        type=MetricType.COUNTER,
        required_labels=("breaker", "transition"),
        description="Circuit breaker state changes",
    ),
    "guard_risk_rejections_total": MetricDef(
        name="guard_risk_rejections_total",
        type=MetricType.COUNTER,
        required_labels=("reason",),
        description="Trades refused by the pre-trade risk checks",
    ),
    "guard_trades_total": MetricDef(
        name="guard_trades_total",
        type=MetricType.COUNTER,
        required_labels=("outcome",),
        description="Trade attempts by outcome",
    ),
    "guard_state_save_failures_total": MetricDef(
        name="guard_state_save_failures_total",
        type=MetricType.COUNTER,
        required_labels=("store",),
        description="Snapshot writes that failed",
    ),
}


_NAME_PATTERN = re.compile(r"^[a-z]+(?:_[a-z0-9]+)+$")


def validate_registry(registry: dict[str, MetricDef] | None = None) -> None:
    target = registry or REGISTRY
    for key, metric in target.items():
        if key != metric.name:
            raise ValueError(f"registry key/name mismatch: {key} != {metric.name}")
        if not _NAME_PATTERN.match(metric.name):
            raise ValueError(f"invalid metric name format: {metric.name}")
        if not metric.name.startswith("guard_"):
            raise ValueError(f"metric name must use guard_ namespace: {metric.name}")
        if not metric.required_labels:
            raise ValueError(f"required_labels must be non-empty for {metric.name}")
        if metric.type is MetricType.COUNTER and not metric.name.endswith("_total"):
            raise ValueError(f"counter name must end with _total: {metric.name}")


validate_registry()
