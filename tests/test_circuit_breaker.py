from __future__ import annotations

from decimal import Decimal

from tradeguard.config import CircuitBreakerSettings
from tradeguard.domain.models import BreakerTransition, TradeOutcome
from tradeguard.persistence.json_file import JsonFileSnapshotRepo
from tradeguard.persistence.memory import InMemorySnapshotRepo
from tradeguard.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from tradeguard.services.notifications import RecordingNotifier


def _breaker(now: dict, **config_overrides):
    repo = config_overrides.pop("repository", None) or InMemorySnapshotRepo()
    notifier = RecordingNotifier()
    breaker = CircuitBreaker(
        CircuitBreakerConfig(**config_overrides),
        repository=repo,
        notifier=notifier,
        clock=lambda: now["t"],
    )
    transitions: list[BreakerTransition] = []
    breaker.on_state_change(lambda transition, reason: transitions.append(transition))
    return breaker, repo, notifier, transitions


def _loss(amount: str, *, pnl: str | None = None, success: bool = False) -> TradeOutcome:
    return TradeOutcome(
        success=success,
        amount=Decimal(amount),
        token_id="So11111111111111111111111111111111111111112",
        profit_loss=Decimal(pnl) if pnl is not None else None,
    )


def test_daily_loss_reaching_threshold_exactly_opens_on_next_check() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now)

    breaker.record_trade(_loss("0.4", pnl="-0.4", success=True))
    breaker.record_trade(_loss("0.6", pnl="-0.6", success=True))
    decision = breaker.can_trade()

    assert decision.allowed is False
    assert decision.reason == "daily loss threshold exceeded"
    assert breaker.state.is_open is True
    assert transitions == [BreakerTransition.OPENED]


def test_failed_trades_open_when_daily_total_hits_threshold() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now, single_loss_threshold=None)

    breaker.record_trade(_loss("0.4", pnl="-0.4"))
    assert breaker.state.is_open is False
    breaker.record_trade(_loss("0.6", pnl="-0.6"))

    assert breaker.state.is_open is True
    assert breaker.state.daily_loss == Decimal("1.0")
    assert breaker.state.last_open_reason == "daily loss threshold reached: 1.0"


def test_failure_without_pnl_counts_whole_amount_and_trips_single_loss() -> None:
    now = {"t": 1_000.0}
    breaker, _, notifier, _ = _breaker(now)

    breaker.record_trade(_loss("0.5"))

    state = breaker.state
    assert state.is_open is True
    assert state.daily_loss == Decimal("0.5")
    assert state.next_attempt_time == 1_300.0
    assert state.last_open_reason.startswith("single trade loss threshold exceeded")
    assert [n.title for n in notifier.sent] == ["Circuit breaker opened"]
    assert notifier.sent[0].severity == "high"


def test_failure_with_no_funds_moved_adds_no_loss() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now)

    breaker.record_trade(
        TradeOutcome(success=False, amount=Decimal("5"), token_id="tok", funds_moved=False)
    )

    assert breaker.state.daily_loss == Decimal("0")
    assert breaker.state.is_open is False
    assert breaker.state.consecutive_failures == 1


def test_consecutive_failures_open_the_breaker() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now, error_threshold=3)
    unfunded = TradeOutcome(success=False, amount=Decimal("0.1"), token_id="tok", funds_moved=False)

    for _ in range(3):
        breaker.record_trade(unfunded)

    assert breaker.state.is_open is True
    assert "3 consecutive failures" in breaker.state.last_open_reason


def test_open_breaker_denies_with_reason_until_recovery_time() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now)
    breaker.record_trade(_loss("0.5"))

    now["t"] += 100.0
    decision = breaker.can_trade()

    assert decision.allowed is False
    assert "single trade loss threshold exceeded" in decision.reason
    assert "next attempt in 200s" in decision.reason


def test_half_open_admits_one_probe_and_failed_probe_reopens() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now)
    breaker.record_trade(_loss("0.5"))

    now["t"] += 301.0
    first = breaker.can_trade()
    second = breaker.can_trade()

    assert first.allowed is True
    assert second.allowed is False
    assert "probe" in second.reason
    assert breaker.state.is_half_open is True

    breaker.record_trade(_loss("0.1", pnl="-0.1"))

    state = breaker.state
    assert state.is_open is True
    assert state.last_open_reason == "recovery attempt failed"
    assert state.next_attempt_time == now["t"] + 300.0
    assert transitions == [
        BreakerTransition.OPENED,
        BreakerTransition.HALF_OPEN,
        BreakerTransition.OPENED,
    ]


def test_successful_probe_closes_breaker() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now)
    breaker.record_trade(_loss("0.5"))
    now["t"] += 301.0

    assert breaker.can_trade().allowed is True
    breaker.record_trade(_loss("0.2", pnl="0.2", success=True))

    state = breaker.state
    assert state.label == "closed"
    assert state.daily_loss == Decimal("0.3")
    assert state.consecutive_failures == 0
    assert state.last_open_reason is None
    assert transitions[-1] is BreakerTransition.CLOSED
    assert breaker.can_trade().allowed is True


def test_cancel_probe_releases_the_half_open_slot() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now)
    breaker.record_trade(_loss("0.5"))
    now["t"] += 301.0

    assert breaker.can_trade().allowed is True
    breaker.cancel_probe()

    assert breaker.can_trade().allowed is True
    assert breaker.get_status()["probe_in_flight"] is True


def test_daily_counters_reset_after_rolling_day() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now)
    breaker.record_trade(_loss("0.4", pnl="-0.4", success=True))

    now["t"] += 24 * 60 * 60 + 1
    assert breaker.can_trade().allowed is True

    assert breaker.state.daily_loss == Decimal("0")
    assert breaker.state.daily_trades == 0
    assert breaker.state.last_reset_time == now["t"]


def test_state_survives_restart_through_repository() -> None:
    now = {"t": 1_000.0}
    breaker, repo, _, _ = _breaker(now)
    breaker.record_trade(_loss("0.5"))

    restored, _, _, _ = _breaker(now, repository=repo)

    assert restored.state.is_open is True
    assert restored.state.daily_loss == Decimal("0.5")
    decision = restored.can_trade()
    assert decision.allowed is False
    assert "single trade loss threshold exceeded" in decision.reason


def test_listener_failure_does_not_block_transition() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now)

    def _broken(transition, reason) -> None:
        raise RuntimeError("listener down")

    breaker.on_state_change(_broken)
    breaker.record_trade(_loss("0.5"))

    assert breaker.state.is_open is True
    assert transitions == [BreakerTransition.OPENED]

    breaker.remove_state_change_listener(_broken)
    breaker.remove_state_change_listener(_broken)


def test_save_failures_are_swallowed() -> None:
    now = {"t": 1_000.0}
    breaker, repo, _, _ = _breaker(now)
    repo.fail_saves = True

    breaker.record_trade(_loss("0.5"))

    assert breaker.state.is_open is True
    assert repo.save_count == 0


def test_disabled_breaker_always_allows_and_ignores_outcomes() -> None:
    now = {"t": 1_000.0}
    breaker, repo, _, _ = _breaker(now, enabled=False)

    breaker.record_trade(_loss("10"))

    assert breaker.can_trade().allowed is True
    assert breaker.state.daily_trades == 0
    assert repo.save_count == 0


def test_manual_reset_closes_and_clears_counters() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now)
    breaker.record_trade(_loss("0.5"))

    breaker.reset()

    status = breaker.get_status()
    assert status["state"] == "closed"
    assert status["daily_loss"] == Decimal("0")
    assert status["failure_count"] == 0
    assert status["seconds_until_retry"] is None
    assert transitions[-1] is BreakerTransition.CLOSED


def test_config_from_settings_converts_recovery_time() -> None:
    config = CircuitBreakerConfig.from_settings(
        CircuitBreakerSettings(recoveryTimeMs=60000, errorThreshold=None)
    )

    assert config.recovery_seconds == 60.0
    assert config.error_threshold is None
    assert config.daily_loss_threshold == Decimal("1.0")


def test_single_loss_opens_then_half_opens_after_recovery_time() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, _ = _breaker(now, single_loss_threshold=Decimal("0.5"))

    breaker.record_trade(_loss("0.6", pnl="-0.6"))
    decision = breaker.can_trade()

    assert decision.allowed is False
    assert "single trade loss threshold" in decision.reason

    now["t"] += 300.0
    assert breaker.can_trade().allowed is True
    assert breaker.state.is_half_open is True
    assert breaker.state.is_open is False


def test_error_threshold_trip_reopens_when_half_open_check_still_fails() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now, error_threshold=3)
    unfunded = TradeOutcome(success=False, amount=Decimal("0.1"), token_id="tok", funds_moved=False)
    for _ in range(3):
        breaker.record_trade(unfunded)

    now["t"] = 1_300.0
    decision = breaker.can_trade()

    assert decision.allowed is False
    assert decision.reason == "too many consecutive failures"
    assert transitions == [
        BreakerTransition.OPENED,
        BreakerTransition.HALF_OPEN,
        BreakerTransition.OPENED,
    ]
    assert breaker.state.is_open is True
    assert breaker.state.next_attempt_time == 1_600.0


def test_daily_loss_trip_reopens_when_half_open_check_still_fails() -> None:
    now = {"t": 1_000.0}
    breaker, _, _, transitions = _breaker(now, single_loss_threshold=None)
    breaker.record_trade(_loss("0.5", pnl="-0.5"))
    breaker.record_trade(_loss("0.5", pnl="-0.5"))
    assert breaker.state.is_open is True

    now["t"] = 1_300.0
    decision = breaker.can_trade()

    assert decision.allowed is False
    assert decision.reason == "daily loss threshold exceeded"
    assert transitions[-2:] == [BreakerTransition.HALF_OPEN, BreakerTransition.OPENED]
    assert breaker.state.next_attempt_time == 1_600.0
    assert breaker.state.last_open_reason == "daily loss threshold reached: 1.0"


def test_undecodable_state_file_starts_closed(tmp_path) -> None:
    path = tmp_path / "circuit-breaker-state.json"
    path.write_bytes(b"\xff\xfe\x00garbage")
    now = {"t": 1_000.0}

    breaker, _, _, _ = _breaker(now, repository=JsonFileSnapshotRepo(path, max_backups=0))

    assert breaker.state.is_open is False
    assert breaker.can_trade().allowed is True
