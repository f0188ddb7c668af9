from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from tradeguard.config import RiskManagementSettings
from tradeguard.domain.models import (
    DailyStats,
    Position,
    TradeRecord,
    TradeRecordResult,
    TradeSide,
    TradeValidation,
    to_decimal,
)
from tradeguard.domain.schedule import next_daily_boundary, should_reset_daily
from tradeguard.obs.metrics import inc_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskLimits:
    max_daily_loss: Decimal = Decimal("1.0")
    max_single_trade_amount: Decimal = Decimal("0.5")
    trade_cooldown_seconds: float = 5.0
    max_positions: int = 5
    trade_history_size: int = 1000

    @classmethod
    def from_settings(cls, settings: RiskManagementSettings) -> RiskLimits:
        return cls(
            max_daily_loss=settings.max_daily_loss,
            max_single_trade_amount=settings.max_single_trade_amount,
            trade_cooldown_seconds=settings.trade_cooldown_ms / 1000.0,
            max_positions=settings.max_positions,
            trade_history_size=settings.trade_history_size,
        )


class RiskManager:
    """Pre-trade admission checks plus position and realized P&L bookkeeping.

    Daily statistics reset lazily at the first UTC midnight after the previous
    reset; every public call checks the boundary first.
    """

    def __init__(
        self,
        limits: RiskLimits | None = None,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.limits = limits or RiskLimits()
        self.now_provider = now_provider or (lambda: datetime.now(UTC))
        now = self.now_provider()
        self._daily_stats = DailyStats(start_time=now)
        self._next_reset_at = next_daily_boundary(now)
        self._positions: dict[str, Position] = {}
        self._history: deque[TradeRecord] = deque(maxlen=self.limits.trade_history_size)
        self._last_trade_at: datetime | None = None
        self._trade_seq = 0

    def _reset_daily_if_needed(self) -> datetime:
        now = self.now_provider()
        if should_reset_daily(self._next_reset_at, now):
            logger.info(
                "risk_daily_stats_reset",
                extra={
                    "extra": {
                        "previous_net_pnl": str(self._daily_stats.net_pnl),
                        "previous_total_trades": self._daily_stats.total_trades,
                    }
                },
            )
            self._daily_stats = DailyStats(start_time=now)
            self._next_reset_at = next_daily_boundary(now)
        return now

    def can_execute_trade(self, amount: Decimal | str | float, token_id: str) -> TradeValidation:
        now = self._reset_daily_if_needed()
        trade_amount = to_decimal(amount)
        errors: list[tuple[str, str]] = []
        limits = self.limits

        if trade_amount <= 0:
            errors.append(("invalid_amount", f"trade amount must be positive, got {trade_amount}"))
        if self._daily_stats.net_pnl <= -limits.max_daily_loss:
            errors.append(
                ("daily_loss", f"daily loss limit reached: net P&L {self._daily_stats.net_pnl}")
            )
        if trade_amount > limits.max_single_trade_amount:
            errors.append(
                (
                    "trade_size",
                    f"trade amount {trade_amount} exceeds single trade limit "
                    f"{limits.max_single_trade_amount}",
                )
            )
        if len(self._positions) >= limits.max_positions:
            errors.append(
                (
                    "max_positions",
                    f"maximum positions limit reached: {len(self._positions)}/{limits.max_positions}",
                )
            )
        if self._last_trade_at is not None:
            elapsed = (now - self._last_trade_at).total_seconds()
            if elapsed < limits.trade_cooldown_seconds:
                remaining = math.ceil(limits.trade_cooldown_seconds - elapsed)
                errors.append(("cooldown", f"trade cooldown active: {remaining}s remaining"))
        if token_id in self._positions:
            errors.append(
                (
                    "duplicate_position",
                    f"duplicate position: token {token_id} already has an active position",
                )
            )

        if not errors:
            return TradeValidation(allowed=True)

        for code, _ in errors:
            inc_counter("guard_risk_rejections_total", {"reason": code})
        messages = tuple(message for _, message in errors)
        logger.warning(
            "risk_trade_blocked",
            extra={
                "extra": {
                    "token_id": token_id,
                    "amount": str(trade_amount),
                    "reasons": [code for code, _ in errors],
                }
            },
        )
        return TradeValidation(allowed=False, errors=messages)

    def record_trade(
        self,
        side: TradeSide | str,
        token_id: str,
        amount: Decimal | str | float,
        price: Decimal | str | float,
        tx_ref: str,
    ) -> TradeRecordResult:
        now = self._reset_daily_if_needed()
        try:
            trade_side = TradeSide(side)
        except ValueError:
            return TradeRecordResult(accepted=False, reason=f"unknown trade side: {side}")
        trade_amount = to_decimal(amount)
        trade_price = to_decimal(price)

        if trade_side is TradeSide.BUY and token_id in self._positions:
            logger.warning("risk_buy_rejected_duplicate", extra={"extra": {"token_id": token_id}})
            return TradeRecordResult(
                accepted=False, reason=f"duplicate position: {token_id} is already open"
            )
        if trade_side is TradeSide.SELL and token_id not in self._positions:
            logger.warning("risk_sell_without_position", extra={"extra": {"token_id": token_id}})
            return TradeRecordResult(accepted=False, reason=f"no open position for {token_id}")

        self._trade_seq += 1
        record = TradeRecord(
            trade_id=f"{token_id}-{int(now.timestamp() * 1000)}-{self._trade_seq}",
            side=trade_side,
            token_id=token_id,
            amount=trade_amount,
            price=trade_price,
            tx_ref=tx_ref,
            timestamp=now,
        )
        self._history.append(record)
        self._last_trade_at = now

        if trade_side is TradeSide.BUY:
            self._positions[token_id] = Position(
                token_id=token_id,
                entry_price=trade_price,
                entry_amount=trade_amount,
                entry_time=now,
                entry_value=trade_amount * trade_price,
                trade_id=record.trade_id,
                current_price=trade_price,
            )
            logger.info(
                "risk_position_opened",
                extra={
                    "extra": {
                        "token_id": token_id,
                        "entry_price": str(trade_price),
                        "entry_amount": str(trade_amount),
                        "tx_ref": tx_ref,
                    }
                },
            )
            return TradeRecordResult(accepted=True)

        position = self._positions.pop(token_id)
        realized = (trade_price - position.entry_price) * trade_amount
        self._apply_realized(realized)
        logger.info(
            "risk_position_closed",
            extra={
                "extra": {
                    "token_id": token_id,
                    "realized_pnl": str(realized),
                    "net_pnl": str(self._daily_stats.net_pnl),
                    "tx_ref": tx_ref,
                }
            },
        )
        return TradeRecordResult(accepted=True, realized_pnl=realized)

    def _apply_realized(self, realized: Decimal) -> None:
        stats = self._daily_stats
        stats.total_trades += 1
        if realized > 0:
            stats.profitable_trades += 1
            stats.total_profit += realized
        else:
            stats.losing_trades += 1
            stats.total_loss += abs(realized)
        stats.net_pnl = stats.total_profit - stats.total_loss

    def update_position_price(self, token_id: str, price: Decimal | str | float) -> bool:
        self._reset_daily_if_needed()
        position = self._positions.get(token_id)
        if position is None:
            return False
        position.current_price = to_decimal(price, position.current_price)
        return True

    def get_daily_stats(self) -> DailyStats:
        self._reset_daily_if_needed()
        return replace(self._daily_stats)

    def has_position(self, token_id: str) -> bool:
        return token_id in self._positions

    def get_active_positions(self) -> dict[str, Position]:
        self._reset_daily_if_needed()
        return {token_id: replace(position) for token_id, position in self._positions.items()}

    def get_trade_history(self, limit: int | None = None) -> list[TradeRecord]:
        records = list(self._history)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def get_risk_status(self) -> dict:
        self._reset_daily_if_needed()
        stats = self._daily_stats
        return {
            "daily_stats": asdict(stats),
            "active_positions": len(self._positions),
            "max_positions": self.limits.max_positions,
            "daily_loss_limit": self.limits.max_daily_loss,
            "single_trade_limit": self.limits.max_single_trade_amount,
            "unrealized_pnl": sum(
                (position.unrealized_pnl for position in self._positions.values()), Decimal("0")
            ),
            "can_trade": stats.net_pnl > -self.limits.max_daily_loss,
            "next_reset_at": self._next_reset_at.isoformat(),
            "cooldown_until": (
                (
                    self._last_trade_at + timedelta(seconds=self.limits.trade_cooldown_seconds)
                ).isoformat()
                if self._last_trade_at is not None
                else None
            ),
        }
