from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from tradeguard.config import RiskManagementSettings
from tradeguard.domain.models import TradeSide
from tradeguard.services.risk_manager import RiskLimits, RiskManager


def _manager(**limits) -> tuple[RiskManager, dict]:
    clock = {"now": datetime(2024, 3, 1, 12, 0, tzinfo=UTC)}
    manager = RiskManager(RiskLimits(**limits), now_provider=lambda: clock["now"])
    return manager, clock


def _advance(clock: dict, seconds: float) -> None:
    clock["now"] = clock["now"] + timedelta(seconds=seconds)


def test_allows_trade_within_limits() -> None:
    manager, _ = _manager()

    validation = manager.can_execute_trade(Decimal("0.2"), "BONK")

    assert validation.allowed is True
    assert validation.errors == ()


def test_duplicate_position_is_rejected() -> None:
    manager, clock = _manager()
    manager.record_trade(TradeSide.BUY, "BONK", "0.2", "0.00002", "sig-1")
    _advance(clock, 10)

    validation = manager.can_execute_trade("0.1", "BONK")

    assert validation.allowed is False
    assert any("duplicate position" in error.lower() for error in validation.errors)

    second_buy = manager.record_trade(TradeSide.BUY, "BONK", "0.1", "0.00003", "sig-2")
    assert second_buy.accepted is False
    assert "duplicate position" in second_buy.reason


def test_cooldown_blocks_trades_right_after_a_fill() -> None:
    manager, clock = _manager(trade_cooldown_seconds=5.0)
    manager.record_trade("buy", "WIF", "0.1", "2.5", "sig-1")
    _advance(clock, 2)

    blocked = manager.can_execute_trade("0.1", "JUP")

    assert blocked.allowed is False
    assert blocked.errors == ("trade cooldown active: 3s remaining",)

    _advance(clock, 3)
    assert manager.can_execute_trade("0.1", "JUP").allowed is True


def test_size_and_position_limits_are_all_reported() -> None:
    manager, clock = _manager(max_positions=1, trade_cooldown_seconds=0)
    manager.record_trade(TradeSide.BUY, "WIF", "0.1", "2.5", "sig-1")
    _advance(clock, 1)

    validation = manager.can_execute_trade("0.9", "JUP")

    assert validation.allowed is False
    assert len(validation.errors) == 2
    assert "exceeds single trade limit 0.5" in validation.errors[0]
    assert validation.errors[1] == "maximum positions limit reached: 1/1"


def test_non_positive_amount_is_invalid() -> None:
    manager, _ = _manager()

    validation = manager.can_execute_trade("0", "JUP")

    assert validation.allowed is False
    assert "must be positive" in validation.errors[0]


def test_sell_realizes_pnl_into_daily_stats() -> None:
    manager, clock = _manager(trade_cooldown_seconds=0)
    manager.record_trade(TradeSide.BUY, "WIF", "100", "2.0", "sig-buy")
    _advance(clock, 60)

    result = manager.record_trade(TradeSide.SELL, "WIF", "100", "1.99", "sig-sell")

    assert result.accepted is True
    assert result.realized_pnl == Decimal("-1.00")
    stats = manager.get_daily_stats()
    assert stats.total_trades == 1
    assert stats.losing_trades == 1
    assert stats.net_pnl == Decimal("-1.00")
    assert manager.get_active_positions() == {}


def test_daily_loss_floor_blocks_new_trades_until_midnight() -> None:
    manager, clock = _manager(trade_cooldown_seconds=0)
    manager.record_trade(TradeSide.BUY, "WIF", "10", "1.0", "sig-buy")
    manager.record_trade(TradeSide.SELL, "WIF", "10", "0.9", "sig-sell")

    blocked = manager.can_execute_trade("0.1", "JUP")
    assert blocked.allowed is False
    assert blocked.errors[0].startswith("daily loss limit reached")
    assert manager.get_risk_status()["can_trade"] is False

    clock["now"] = datetime(2024, 3, 2, 0, 0, tzinfo=UTC)

    assert manager.can_execute_trade("0.1", "JUP").allowed is True
    assert manager.get_daily_stats().net_pnl == Decimal("0")
    assert manager.get_risk_status()["next_reset_at"] == "2024-03-03T00:00:00+00:00"


def test_sell_without_position_is_rejected_without_raising() -> None:
    manager, _ = _manager()

    result = manager.record_trade(TradeSide.SELL, "JUP", "1", "0.8", "sig")

    assert result.accepted is False
    assert result.reason == "no open position for JUP"
    assert manager.get_trade_history() == []


def test_unknown_side_is_rejected() -> None:
    manager, _ = _manager()

    result = manager.record_trade("short", "JUP", "1", "0.8", "sig")

    assert result.accepted is False
    assert "unknown trade side" in result.reason


def test_price_updates_drive_unrealized_pnl() -> None:
    manager, _ = _manager()
    manager.record_trade(TradeSide.BUY, "WIF", "10", "2.0", "sig")

    assert manager.update_position_price("WIF", "2.5") is True
    assert manager.update_position_price("JUP", "1.0") is False

    position = manager.get_active_positions()["WIF"]
    assert position.unrealized_pnl == Decimal("5.0")
    assert manager.get_risk_status()["unrealized_pnl"] == Decimal("5.0")


def test_trade_history_is_bounded_and_ids_are_unique() -> None:
    manager, clock = _manager(trade_cooldown_seconds=0, trade_history_size=2)
    for token in ("A", "B", "C"):
        manager.record_trade(TradeSide.BUY, token, "0.1", "1", f"sig-{token}")
        _advance(clock, 1)

    history = manager.get_trade_history()

    assert [record.token_id for record in history] == ["B", "C"]
    assert len({record.trade_id for record in history}) == 2
    assert manager.get_trade_history(limit=1)[0].token_id == "C"
    assert manager.get_trade_history(limit=0) == []


def test_limits_from_settings() -> None:
    limits = RiskLimits.from_settings(
        RiskManagementSettings(maxSingleTradeAmount="0.25", tradeCooldownMs=1500)
    )

    assert limits.max_single_trade_amount == Decimal("0.25")
    assert limits.trade_cooldown_seconds == 1.5
    assert limits.max_positions == 5
