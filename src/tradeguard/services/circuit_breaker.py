from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from decimal import Decimal

from tradeguard.config import CircuitBreakerSettings
from tradeguard.domain.models import (
    BreakerDecision,
    BreakerTransition,
    CircuitBreakerState,
    TradeOutcome,
)
from tradeguard.domain.schedule import should_reset_rolling_window
from tradeguard.domain.state_schema import breaker_state_from_mapping, breaker_state_to_dict
from tradeguard.obs.metrics import inc_counter, set_gauge
from tradeguard.persistence.interfaces import SnapshotRepoProtocol
from tradeguard.services.notifications import LoggingNotifier, Notification, Notifier

logger = logging.getLogger(__name__)

StateChangeListener = Callable[[BreakerTransition, str | None], None]

_STATE_GAUGE = {"closed": 0, "half_open": 1, "open": 2}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    enabled: bool = True
    daily_loss_threshold: Decimal | None = Decimal("1.0")
    single_loss_threshold: Decimal | None = Decimal("0.5")
    error_threshold: int | None = 5
    recovery_seconds: float = 300.0
    assume_full_loss_on_failure: bool = True

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings) -> CircuitBreakerConfig:
        return cls(
            enabled=settings.enabled,
            daily_loss_threshold=settings.daily_loss_threshold,
            single_loss_threshold=settings.single_loss_threshold,
            error_threshold=settings.error_threshold,
            recovery_seconds=settings.recovery_time_ms / 1000.0,
            assume_full_loss_on_failure=settings.assume_full_loss_on_failure,
        )


class CircuitBreaker:
    """Closed / open / half-open trading kill switch driven by loss and error thresholds.

    Thresholds set to ``None`` are not checked. While half-open exactly one
    probe trade is admitted; its recorded outcome closes or reopens the
    breaker. Every mutation is written through ``repository`` when one is
    given; write failures are logged and never raised.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        repository: SnapshotRepoProtocol | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        name: str = "trading",
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._repository = repository
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._listeners: list[StateChangeListener] = []
        self._probe_in_flight = False
        self._state = self._load_state()
        self._publish_state_gauge()
        self._reset_daily_if_needed()

    @property
    def state(self) -> CircuitBreakerState:
        return replace(self._state)

    def _load_state(self) -> CircuitBreakerState:
        now = self._clock()
        payload = self._repository.load() if self._repository is not None else None
        if payload is None:
            return CircuitBreakerState(last_reset_time=now)
        state = breaker_state_from_mapping(payload, now)
        logger.info(
            "circuit_breaker_state_loaded",
            extra={
                "extra": {
                    "breaker": self.name,
                    "state": state.label,
                    "daily_loss": str(state.daily_loss),
                    "consecutive_failures": state.consecutive_failures,
                }
            },
        )
        return state

    def on_state_change(self, listener: StateChangeListener) -> None:
        self._listeners.append(listener)

    def remove_state_change_listener(self, listener: StateChangeListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def can_trade(self) -> BreakerDecision:
        if not self.config.enabled:
            return BreakerDecision(allowed=True)

        self._reset_daily_if_needed()
        state = self._state
        now = self._clock()

        if state.is_open:
            if now < state.next_attempt_time:
                remaining = math.ceil(state.next_attempt_time - now)
                opened_for = state.last_open_reason or "threshold breached"
                return BreakerDecision(
                    allowed=False,
                    reason=f"circuit breaker is open ({opened_for}); next attempt in {remaining}s",
                )
            state.is_open = False
            state.is_half_open = True
            self._probe_in_flight = False
            self._save()
            logger.warning(
                "circuit_breaker_half_open",
                extra={"extra": {"breaker": self.name, "previous_reason": state.last_open_reason}},
            )
            self._emit_transition(BreakerTransition.HALF_OPEN, "attempting recovery")

        daily_threshold = self.config.daily_loss_threshold
        if daily_threshold is not None and state.daily_loss >= daily_threshold:
            self._open(f"daily loss threshold reached: {state.daily_loss}")
            return BreakerDecision(allowed=False, reason="daily loss threshold exceeded")

        error_threshold = self.config.error_threshold
        if error_threshold is not None and state.consecutive_failures >= error_threshold:
            self._open(
                f"error threshold reached: {state.consecutive_failures} consecutive failures"
            )
            return BreakerDecision(allowed=False, reason="too many consecutive failures")

        if state.is_half_open:
            if self._probe_in_flight:
                return BreakerDecision(
                    allowed=False, reason="circuit breaker is half-open; probe trade in flight"
                )
            self._probe_in_flight = True

        return BreakerDecision(allowed=True)

    def cancel_probe(self) -> None:
        """Give the half-open probe slot back when the admitted trade never ran."""

        if self._state.is_half_open and self._probe_in_flight:
            self._probe_in_flight = False
            logger.info("circuit_breaker_probe_released", extra={"extra": {"breaker": self.name}})

    def record_trade(self, outcome: TradeOutcome) -> None:
        if not self.config.enabled:
            return

        self._reset_daily_if_needed()
        self._state.daily_trades += 1
        if outcome.success:
            self._record_success(outcome)
        else:
            self._record_failure(outcome)
        self._save()

    def _record_success(self, outcome: TradeOutcome) -> None:
        state = self._state
        state.last_success_time = self._clock()
        state.consecutive_failures = 0

        if outcome.profit_loss is not None:
            if outcome.profit_loss > 0:
                state.daily_loss = max(Decimal("0"), state.daily_loss - outcome.profit_loss)
            else:
                state.daily_loss += abs(outcome.profit_loss)

        if state.is_half_open:
            state.is_half_open = False
            state.failure_count = 0
            state.last_open_reason = None
            self._probe_in_flight = False
            logger.info("circuit_breaker_closed", extra={"extra": {"breaker": self.name}})
            self._emit_transition(BreakerTransition.CLOSED, "recovery successful")

        logger.info(
            "breaker_trade_success",
            extra={
                "extra": {
                    "token_id": outcome.token_id,
                    "amount": str(outcome.amount),
                    "profit_loss": (
                        str(outcome.profit_loss) if outcome.profit_loss is not None else None
                    ),
                    "daily_loss": str(state.daily_loss),
                    "daily_trades": state.daily_trades,
                }
            },
        )

    def failure_loss(self, outcome: TradeOutcome) -> Decimal:
        """Loss a failed trade contributes to the daily and single-loss checks."""

        if outcome.profit_loss is not None:
            return abs(outcome.profit_loss) if outcome.profit_loss < 0 else Decimal("0")
        if outcome.funds_moved and self.config.assume_full_loss_on_failure:
            return abs(outcome.amount)
        return Decimal("0")

    def _record_failure(self, outcome: TradeOutcome) -> None:
        state = self._state
        state.last_failure_time = self._clock()
        state.failure_count += 1
        state.consecutive_failures += 1

        loss = self.failure_loss(outcome)
        state.daily_loss += loss

        logger.error(
            "breaker_trade_failure",
            extra={
                "extra": {
                    "token_id": outcome.token_id,
                    "amount": str(outcome.amount),
                    "accounted_loss": str(loss),
                    "trade_error": outcome.error,
                    "daily_loss": str(state.daily_loss),
                    "consecutive_failures": state.consecutive_failures,
                    "daily_trades": state.daily_trades,
                }
            },
        )

        single_threshold = self.config.single_loss_threshold
        daily_threshold = self.config.daily_loss_threshold
        error_threshold = self.config.error_threshold
        if single_threshold is not None and loss > 0 and loss >= single_threshold:
            self._open(f"single trade loss threshold exceeded: {loss}")
        elif daily_threshold is not None and state.daily_loss >= daily_threshold:
            self._open(f"daily loss threshold reached: {state.daily_loss}")
        elif error_threshold is not None and state.consecutive_failures >= error_threshold:
            self._open(
                f"error threshold reached: {state.consecutive_failures} consecutive failures"
            )
        elif state.is_half_open:
            self._open("recovery attempt failed")

    def _open(self, reason: str) -> None:
        state = self._state
        if state.is_open:
            return
        state.is_open = True
        state.is_half_open = False
        state.next_attempt_time = self._clock() + self.config.recovery_seconds
        state.last_open_reason = reason
        self._probe_in_flight = False
        self._save()

        logger.error(
            "circuit_breaker_opened",
            extra={
                "extra": {
                    "breaker": self.name,
                    "reason": reason,
                    "next_attempt_time": state.next_attempt_time,
                }
            },
        )
        self._emit_transition(BreakerTransition.OPENED, reason)
        try:
            self._notifier.notify(
                Notification(
                    title="Circuit breaker opened",
                    message=reason,
                    severity="high",
                    details={"breaker": self.name, "next_attempt_time": state.next_attempt_time},
                )
            )
        except Exception:  # noqa: BLE001
            logger.exception("circuit_breaker_notification_failed")

    def _emit_transition(self, transition: BreakerTransition, reason: str | None) -> None:
        self._publish_state_gauge()
        inc_counter(
            "guard_breaker_transitions_total",
            {"breaker": self.name, "transition": transition.value},
        )
        for listener in list(self._listeners):
            try:
                listener(transition, reason)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "circuit_breaker_listener_failed",
                    extra={"extra": {"transition": transition.value}},
                )

    def _publish_state_gauge(self) -> None:
        set_gauge(
            "guard_breaker_state", _STATE_GAUGE[self._state.label], {"breaker": self.name}
        )

    def _reset_daily_if_needed(self) -> None:
        now = self._clock()
        if not should_reset_rolling_window(self._state.last_reset_time, now):
            return
        logger.info(
            "circuit_breaker_daily_reset",
            extra={
                "extra": {
                    "previous_daily_loss": str(self._state.daily_loss),
                    "previous_daily_trades": self._state.daily_trades,
                }
            },
        )
        self._state.daily_loss = Decimal("0")
        self._state.daily_trades = 0
        self._state.last_reset_time = now
        self._save()

    def reset(self) -> None:
        was_tripped = self._state.is_open or self._state.is_half_open
        logger.warning(
            "circuit_breaker_manual_reset",
            extra={"extra": {"breaker": self.name, "previous_state": self._state.label}},
        )
        self._state = CircuitBreakerState(last_reset_time=self._clock())
        self._probe_in_flight = False
        self._save()
        if was_tripped:
            self._emit_transition(BreakerTransition.CLOSED, "manual reset")
        else:
            self._publish_state_gauge()

    def get_status(self) -> dict:
        state = self._state
        now = self._clock()
        return {
            "enabled": self.config.enabled,
            "state": state.label,
            "is_open": state.is_open,
            "is_half_open": state.is_half_open,
            "daily_loss": state.daily_loss,
            "daily_trades": state.daily_trades,
            "failure_count": state.failure_count,
            "consecutive_failures": state.consecutive_failures,
            "last_open_reason": state.last_open_reason,
            "next_attempt_time": state.next_attempt_time if state.is_open else None,
            "seconds_until_retry": (
                max(0.0, state.next_attempt_time - now) if state.is_open else None
            ),
            "probe_in_flight": self._probe_in_flight,
            "thresholds": {
                "daily_loss_threshold": self.config.daily_loss_threshold,
                "single_loss_threshold": self.config.single_loss_threshold,
                "error_threshold": self.config.error_threshold,
            },
        }

    def _save(self) -> None:
        if self._repository is None:
            return
        try:
            self._repository.save(breaker_state_to_dict(self._state))
        except (OSError, TypeError, ValueError) as exc:
            inc_counter("guard_state_save_failures_total", {"store": "circuit_breaker"})
            logger.error(
                "circuit_breaker_state_save_failed",
                extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
