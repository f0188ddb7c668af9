from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class BreakerTransition(str, Enum):
    OPENED = "opened"
    HALF_OPEN = "half_open"
    CLOSED = "closed"


class OperationStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {OperationStatus.COMPLETED, OperationStatus.FAILED}


def to_decimal(value: object, default: Decimal = Decimal("0")) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    return parsed if parsed.is_finite() else default


@dataclass(frozen=True)
class BreakerDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class TradeOutcome:
    """Result of one trade attempt as reported to the circuit breaker.

    ``profit_loss`` is positive for a profit and negative for a loss. When it
    is missing on a failed trade the breaker assumes the whole ``amount`` was
    lost, unless ``funds_moved`` says the attempt was rejected before any
    funds left the wallet.
    """

    success: bool
    amount: Decimal
    token_id: str
    profit_loss: Decimal | None = None
    error: str | None = None
    funds_moved: bool = True


@dataclass
class CircuitBreakerState:
    is_open: bool = False
    is_half_open: bool = False
    failure_count: int = 0
    consecutive_failures: int = 0
    daily_loss: Decimal = Decimal("0")
    daily_trades: int = 0
    last_failure_time: float = 0.0
    last_success_time: float = 0.0
    next_attempt_time: float = 0.0
    last_reset_time: float = 0.0
    last_open_reason: str | None = None

    @property
    def label(self) -> str:
        if self.is_open:
            return "open"
        if self.is_half_open:
            return "half_open"
        return "closed"


@dataclass(frozen=True)
class TradeValidation:
    allowed: bool
    errors: tuple[str, ...] = ()


@dataclass
class Position:
    token_id: str
    entry_price: Decimal
    entry_amount: Decimal
    entry_time: datetime
    entry_value: Decimal
    trade_id: str
    current_price: Decimal

    @property
    def unrealized_pnl(self) -> Decimal:
        return (self.current_price - self.entry_price) * self.entry_amount


@dataclass
class DailyStats:
    total_trades: int = 0
    profitable_trades: int = 0
    losing_trades: int = 0
    total_profit: Decimal = Decimal("0")
    total_loss: Decimal = Decimal("0")
    net_pnl: Decimal = Decimal("0")
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class TradeRecord:
    trade_id: str
    side: TradeSide
    token_id: str
    amount: Decimal
    price: Decimal
    tx_ref: str
    timestamp: datetime


@dataclass(frozen=True)
class TradeRecordResult:
    accepted: bool
    realized_pnl: Decimal | None = None
    reason: str | None = None


@dataclass
class ActiveOperation:
    operation_id: str
    start_time: float
    status: OperationStatus = OperationStatus.PENDING
    venue: str | None = None
    token_id: str | None = None
    amount: Decimal | None = None
    result: str | None = None
    error: str | None = None
    finished_at: float | None = None


@dataclass
class ErrorCounters:
    total_errors: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)
    errors_by_venue: dict[str, int] = field(default_factory=dict)
    consecutive_errors: int = 0
    last_error_time: float = 0.0


@dataclass
class DiscoveryEntry:
    key: str
    venue: str
    discovered_at: float
    last_seen: float
    payload: dict[str, object] = field(default_factory=dict)


@dataclass
class ProfitStats:
    total_trades: int = 0
    successful_trades: int = 0
    total_profit: Decimal = Decimal("0")
    total_loss: Decimal = Decimal("0")
    best_trade: Decimal = Decimal("0")
    worst_trade: Decimal = Decimal("0")
    avg_trade_size: Decimal = Decimal("0")


@dataclass
class RuntimeStats:
    start_time: float = 0.0
    uptime: float = 0.0
    last_health_check: float = 0.0
    connections: dict[str, bool] = field(default_factory=dict)
    config_reloads: int = 0


@dataclass
class PersistedState:
    version: int
    timestamp: float
    active_operations: list[ActiveOperation] = field(default_factory=list)
    error_counters: ErrorCounters = field(default_factory=ErrorCounters)
    discovery_cache: list[DiscoveryEntry] = field(default_factory=list)
    profit_stats: ProfitStats = field(default_factory=ProfitStats)
    runtime_stats: RuntimeStats = field(default_factory=RuntimeStats)


@dataclass(frozen=True)
class RecoveryInfo:
    has_recoverable_state: bool
    active_operations: tuple[ActiveOperation, ...]
    consecutive_errors: int
    uptime: float
    last_health_check: float
