"""Versioned JSON schema for the durable snapshots.

Loading never fails on content: every field is merged with its default and
malformed values fall back silently, so adding or removing fields between
releases cannot break startup.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal

from tradeguard.domain.models import (
    ActiveOperation,
    CircuitBreakerState,
    DiscoveryEntry,
    ErrorCounters,
    OperationStatus,
    PersistedState,
    ProfitStats,
    RuntimeStats,
    to_decimal,
)

SCHEMA_VERSION = 1


def default_state(now: float) -> PersistedState:
    return PersistedState(
        version=SCHEMA_VERSION,
        timestamp=now,
        runtime_stats=RuntimeStats(start_time=now, uptime=0.0, last_health_check=now),
    )


def _as_mapping(value: object) -> Mapping[str, object]:
    return value if isinstance(value, Mapping) else {}


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def _as_float(value: object, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        return float(value)
    return default


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _as_count_map(value: object) -> dict[str, int]:
    counts: dict[str, int] = {}
    for key, raw in _as_mapping(value).items():
        count = _as_int(raw, default=-1)
        if count >= 0:
            counts[str(key)] = count
    return counts


def _parse_operation(raw: object) -> ActiveOperation | None:
    data = _as_mapping(raw)
    operation_id = data.get("operation_id")
    if not isinstance(operation_id, str) or not operation_id:
        return None
    try:
        status = OperationStatus(str(data.get("status", OperationStatus.PENDING.value)))
    except ValueError:
        return None
    amount_raw = data.get("amount")
    finished_raw = data.get("finished_at")
    return ActiveOperation(
        operation_id=operation_id,
        start_time=_as_float(data.get("start_time")),
        status=status,
        venue=_as_optional_str(data.get("venue")),
        token_id=_as_optional_str(data.get("token_id")),
        amount=to_decimal(amount_raw) if amount_raw is not None else None,
        result=_as_optional_str(data.get("result")),
        error=_as_optional_str(data.get("error")),
        finished_at=_as_float(finished_raw) if finished_raw is not None else None,
    )


def _parse_discovery_entry(raw: object) -> DiscoveryEntry | None:
    data = _as_mapping(raw)
    key = data.get("key")
    if not isinstance(key, str) or not key:
        return None
    discovered_at = _as_float(data.get("discovered_at"))
    return DiscoveryEntry(
        key=key,
        venue=str(data.get("venue") or "unknown"),
        discovered_at=discovered_at,
        last_seen=_as_float(data.get("last_seen"), default=discovered_at),
        payload=dict(_as_mapping(data.get("payload"))),
    )


def merge_with_defaults(loaded: Mapping[str, object], defaults: PersistedState) -> PersistedState:
    operations = [
        op
        for op in (_parse_operation(item) for item in _as_list(loaded.get("active_operations")))
        if op is not None
    ]
    cache = [
        entry
        for entry in (
            _parse_discovery_entry(item) for item in _as_list(loaded.get("discovery_cache"))
        )
        if entry is not None
    ]

    counters_raw = _as_mapping(loaded.get("error_counters"))
    default_counters = defaults.error_counters
    counters = ErrorCounters(
        total_errors=_as_int(counters_raw.get("total_errors"), default_counters.total_errors),
        errors_by_type=_as_count_map(counters_raw.get("errors_by_type")),
        errors_by_venue=_as_count_map(counters_raw.get("errors_by_venue")),
        consecutive_errors=_as_int(
            counters_raw.get("consecutive_errors"), default_counters.consecutive_errors
        ),
        last_error_time=_as_float(
            counters_raw.get("last_error_time"), default_counters.last_error_time
        ),
    )

    profit_raw = _as_mapping(loaded.get("profit_stats"))
    default_profit = defaults.profit_stats
    profit = ProfitStats(
        total_trades=_as_int(profit_raw.get("total_trades"), default_profit.total_trades),
        successful_trades=_as_int(
            profit_raw.get("successful_trades"), default_profit.successful_trades
        ),
        total_profit=to_decimal(profit_raw.get("total_profit"), default_profit.total_profit),
        total_loss=to_decimal(profit_raw.get("total_loss"), default_profit.total_loss),
        best_trade=to_decimal(profit_raw.get("best_trade"), default_profit.best_trade),
        worst_trade=to_decimal(profit_raw.get("worst_trade"), default_profit.worst_trade),
        avg_trade_size=to_decimal(profit_raw.get("avg_trade_size"), default_profit.avg_trade_size),
    )

    runtime_raw = _as_mapping(loaded.get("runtime_stats"))
    default_runtime = defaults.runtime_stats
    connections = {
        str(name): value
        for name, value in _as_mapping(runtime_raw.get("connections")).items()
        if isinstance(value, bool)
    }
    runtime = RuntimeStats(
        start_time=_as_float(runtime_raw.get("start_time"), default_runtime.start_time),
        # uptime and health check describe the current process, not the previous one
        uptime=default_runtime.uptime,
        last_health_check=default_runtime.last_health_check,
        connections=connections,
        config_reloads=_as_int(runtime_raw.get("config_reloads"), default_runtime.config_reloads),
    )

    return PersistedState(
        version=_as_int(loaded.get("version"), defaults.version),
        timestamp=_as_float(loaded.get("timestamp"), defaults.timestamp),
        active_operations=operations,
        error_counters=counters,
        discovery_cache=cache,
        profit_stats=profit,
        runtime_stats=runtime,
    )


def _as_list(value: object) -> list[object]:
    return list(value) if isinstance(value, list) else []


def _dec(value: Decimal) -> str:
    return str(value)


def state_to_dict(state: PersistedState) -> dict[str, object]:
    return {
        "version": state.version,
        "timestamp": state.timestamp,
        "active_operations": [
            {
                "operation_id": op.operation_id,
                "start_time": op.start_time,
                "status": op.status.value,
                "venue": op.venue,
                "token_id": op.token_id,
                "amount": _dec(op.amount) if op.amount is not None else None,
                "result": op.result,
                "error": op.error,
                "finished_at": op.finished_at,
            }
            for op in state.active_operations
        ],
        "error_counters": {
            "total_errors": state.error_counters.total_errors,
            "errors_by_type": dict(state.error_counters.errors_by_type),
            "errors_by_venue": dict(state.error_counters.errors_by_venue),
            "consecutive_errors": state.error_counters.consecutive_errors,
            "last_error_time": state.error_counters.last_error_time,
        },
        "discovery_cache": [
            {
                "key": entry.key,
                "venue": entry.venue,
                "discovered_at": entry.discovered_at,
                "last_seen": entry.last_seen,
                "payload": dict(entry.payload),
            }
            for entry in state.discovery_cache
        ],
        "profit_stats": {
            "total_trades": state.profit_stats.total_trades,
            "successful_trades": state.profit_stats.successful_trades,
            "total_profit": _dec(state.profit_stats.total_profit),
            "total_loss": _dec(state.profit_stats.total_loss),
            "best_trade": _dec(state.profit_stats.best_trade),
            "worst_trade": _dec(state.profit_stats.worst_trade),
            "avg_trade_size": _dec(state.profit_stats.avg_trade_size),
        },
        "runtime_stats": {
            "start_time": state.runtime_stats.start_time,
            "uptime": state.runtime_stats.uptime,
            "last_health_check": state.runtime_stats.last_health_check,
            "connections": dict(state.runtime_stats.connections),
            "config_reloads": state.runtime_stats.config_reloads,
        },
    }


def breaker_state_to_dict(state: CircuitBreakerState) -> dict[str, object]:
    return {
        "is_open": state.is_open,
        "is_half_open": state.is_half_open,
        "failure_count": state.failure_count,
        "consecutive_failures": state.consecutive_failures,
        "daily_loss": _dec(state.daily_loss),
        "daily_trades": state.daily_trades,
        "last_failure_time": state.last_failure_time,
        "last_success_time": state.last_success_time,
        "next_attempt_time": state.next_attempt_time,
        "last_reset_time": state.last_reset_time,
        "last_open_reason": state.last_open_reason,
    }


def breaker_state_from_mapping(loaded: Mapping[str, object], now: float) -> CircuitBreakerState:
    is_open = loaded.get("is_open") is True
    daily_loss = to_decimal(loaded.get("daily_loss"))
    last_reset_time = _as_float(loaded.get("last_reset_time"))
    return CircuitBreakerState(
        is_open=is_open,
        is_half_open=loaded.get("is_half_open") is True and not is_open,
        failure_count=max(0, _as_int(loaded.get("failure_count"))),
        consecutive_failures=max(0, _as_int(loaded.get("consecutive_failures"))),
        daily_loss=daily_loss if daily_loss >= 0 else Decimal("0"),
        daily_trades=max(0, _as_int(loaded.get("daily_trades"))),
        last_failure_time=_as_float(loaded.get("last_failure_time")),
        last_success_time=_as_float(loaded.get("last_success_time")),
        next_attempt_time=_as_float(loaded.get("next_attempt_time")),
        last_reset_time=last_reset_time if last_reset_time > 0 else now,
        last_open_reason=_as_optional_str(loaded.get("last_open_reason")),
    )
