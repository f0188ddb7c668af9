from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from tradeguard.config import Settings
from tradeguard.domain.models import OperationStatus, TradeOutcome, TradeSide, to_decimal
from tradeguard.logging_context import with_operation_context
from tradeguard.obs.metrics import inc_counter
from tradeguard.persistence.interfaces import SnapshotRepoProtocol
from tradeguard.persistence.json_file import JsonFileSnapshotRepo
from tradeguard.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from tradeguard.services.execution_errors import (
    ErrorCategory,
    RetryExhaustedError,
    classify_error,
)
from tradeguard.services.notifications import Notifier
from tradeguard.services.rate_limiter import RateLimitConfig, RateLimiter
from tradeguard.services.retry import RetryOptions, RetryPolicy, RetryService
from tradeguard.services.risk_manager import RiskLimits, RiskManager
from tradeguard.services.state_persistence import PersistenceConfig, StatePersistence

logger = logging.getLogger(__name__)

# categories where the venue most likely never accepted the order
_UNFUNDED_CATEGORIES = {
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.TRANSIENT,
    ErrorCategory.AUTH,
    ErrorCategory.REJECT,
}


@dataclass(frozen=True)
class TradeRequest:
    side: TradeSide
    token_id: str
    amount: Decimal
    venue: str | None = None
    endpoint: str = "swap"
    operation_id: str | None = None
    deadline_seconds: float | None = None


@dataclass(frozen=True)
class VenueFill:
    """What a venue order builder returns once the order went through."""

    price: Decimal
    tx_ref: str
    amount: Decimal | None = None
    profit_loss: Decimal | None = None


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reasons: tuple[str, ...] = ()
    blocked_by: str | None = None


class TradeExecutionStatus(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    FAILED = "failed"
    DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(frozen=True)
class TradeExecutionResult:
    status: TradeExecutionStatus
    operation_id: str | None = None
    fill: VenueFill | None = None
    reasons: tuple[str, ...] = ()
    realized_pnl: Decimal | None = None
    attempts: int | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status is TradeExecutionStatus.EXECUTED


def _funds_moved(exc: BaseException) -> bool:
    explicit = getattr(exc, "funds_moved", None)
    if isinstance(explicit, bool):
        return explicit
    return classify_error(exc) not in _UNFUNDED_CATEGORIES


class TradeGuard:
    """Runs one trade attempt through risk, breaker, retry and persistence."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        retry_service: RetryService,
        circuit_breaker: CircuitBreaker,
        risk_manager: RiskManager,
        state: StatePersistence,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.retry_service = retry_service
        self.circuit_breaker = circuit_breaker
        self.risk_manager = risk_manager
        self.state = state

    def admit(
        self,
        amount: Decimal | str | float,
        token_id: str,
        side: TradeSide = TradeSide.BUY,
    ) -> AdmissionDecision:
        """Risk entry checks for buys, an open position for sells, then the breaker."""

        if side is TradeSide.SELL:
            if not self.risk_manager.has_position(token_id):
                return AdmissionDecision(
                    allowed=False,
                    reasons=(f"no open position for {token_id}",),
                    blocked_by="risk_manager",
                )
        else:
            validation = self.risk_manager.can_execute_trade(amount, token_id)
            if not validation.allowed:
                return AdmissionDecision(
                    allowed=False, reasons=validation.errors, blocked_by="risk_manager"
                )
        decision = self.circuit_breaker.can_trade()
        if not decision.allowed:
            return AdmissionDecision(
                allowed=False,
                reasons=(decision.reason or "circuit breaker denied the trade",),
                blocked_by="circuit_breaker",
            )
        return AdmissionDecision(allowed=True)

    async def execute_trade(
        self, operation: Callable[[], Awaitable[VenueFill]], request: TradeRequest
    ) -> TradeExecutionResult:
        admission = self.admit(request.amount, request.token_id, request.side)
        if not admission.allowed:
            inc_counter("guard_trades_total", {"outcome": TradeExecutionStatus.REJECTED.value})
            logger.info(
                "trade_rejected",
                extra={
                    "extra": {
                        "token_id": request.token_id,
                        "blocked_by": admission.blocked_by,
                        "reasons": list(admission.reasons),
                    }
                },
            )
            return TradeExecutionResult(
                status=TradeExecutionStatus.REJECTED, reasons=admission.reasons
            )

        operation_id = request.operation_id or uuid.uuid4().hex
        try:
            self.state.add_active_operation(
                operation_id,
                venue=request.venue,
                token_id=request.token_id,
                amount=request.amount,
            )
        except Exception:
            self.circuit_breaker.cancel_probe()
            raise
        self.state.update_operation_status(operation_id, OperationStatus.EXECUTING)
        options = RetryOptions(
            venue=request.venue,
            endpoint=request.endpoint,
            operation_name=request.side.value,
        )

        with with_operation_context(operation_id, venue=request.venue, token_id=request.token_id):
            try:
                async with asyncio.timeout(request.deadline_seconds):
                    fill = await self.retry_service.execute_with_retry(operation, options)
            except TimeoutError:
                return self._record_not_attempted(operation_id, "deadline_exceeded")
            except asyncio.CancelledError:
                self._record_not_attempted(operation_id, "cancelled")
                raise
            except RetryExhaustedError as exc:
                return self._record_failure(
                    request, operation_id, exc.last_error, attempts=exc.attempts
                )
            except Exception as exc:  # noqa: BLE001
                return self._record_failure(request, operation_id, exc, attempts=None)
            return self._record_success(request, operation_id, fill)

    def _record_success(
        self, request: TradeRequest, operation_id: str, fill: VenueFill
    ) -> TradeExecutionResult:
        filled_amount = fill.amount if fill.amount is not None else request.amount
        risk_result = self.risk_manager.record_trade(
            request.side, request.token_id, filled_amount, fill.price, fill.tx_ref
        )
        if not risk_result.accepted:
            logger.warning(
                "trade_fill_not_tracked",
                extra={"extra": {"operation_id": operation_id, "reason": risk_result.reason}},
            )
        pnl = fill.profit_loss if fill.profit_loss is not None else risk_result.realized_pnl
        self.circuit_breaker.record_trade(
            TradeOutcome(
                success=True,
                amount=to_decimal(filled_amount),
                token_id=request.token_id,
                profit_loss=pnl,
            )
        )
        self.state.record_success()
        self.state.record_trade(True, pnl, filled_amount)
        self.state.update_operation_status(
            operation_id, OperationStatus.COMPLETED, result=fill.tx_ref
        )
        inc_counter("guard_trades_total", {"outcome": TradeExecutionStatus.EXECUTED.value})
        logger.info(
            "trade_executed",
            extra={
                "extra": {
                    "side": request.side.value,
                    "price": str(fill.price),
                    "amount": str(filled_amount),
                    "tx_ref": fill.tx_ref,
                    "realized_pnl": str(pnl) if pnl is not None else None,
                }
            },
        )
        return TradeExecutionResult(
            status=TradeExecutionStatus.EXECUTED,
            operation_id=operation_id,
            fill=fill,
            realized_pnl=pnl,
        )

    def _record_failure(
        self,
        request: TradeRequest,
        operation_id: str,
        error: BaseException,
        *,
        attempts: int | None,
    ) -> TradeExecutionResult:
        category = classify_error(error)
        outcome = TradeOutcome(
            success=False,
            amount=request.amount,
            token_id=request.token_id,
            error=str(error),
            funds_moved=_funds_moved(error),
        )
        self.circuit_breaker.record_trade(outcome)
        loss = self.circuit_breaker.failure_loss(outcome)
        self.state.record_error(category.value, venue=request.venue, error=str(error))
        self.state.record_trade(False, -loss if loss > 0 else None, request.amount)
        self.state.update_operation_status(
            operation_id, OperationStatus.FAILED, error=f"{type(error).__name__}: {error}"
        )
        inc_counter("guard_trades_total", {"outcome": TradeExecutionStatus.FAILED.value})
        logger.error(
            "trade_failed",
            extra={
                "extra": {
                    "category": category.value,
                    "attempts": attempts,
                    "funds_moved": outcome.funds_moved,
                    "error_type": type(error).__name__,
                }
            },
        )
        return TradeExecutionResult(
            status=TradeExecutionStatus.FAILED,
            operation_id=operation_id,
            attempts=attempts,
            error=str(error),
        )

    def _record_not_attempted(self, operation_id: str, reason: str) -> TradeExecutionResult:
        self.circuit_breaker.cancel_probe()
        self.state.update_operation_status(operation_id, OperationStatus.FAILED, error=reason)
        inc_counter(
            "guard_trades_total", {"outcome": TradeExecutionStatus.DEADLINE_EXCEEDED.value}
        )
        logger.warning("trade_not_attempted", extra={"extra": {"reason": reason}})
        return TradeExecutionResult(
            status=TradeExecutionStatus.DEADLINE_EXCEEDED,
            operation_id=operation_id,
            error=reason,
        )

    async def start(self, *, install_exit_handlers: bool = False) -> None:
        if install_exit_handlers:
            self.state.install_exit_handlers()
        await self.state.start()

    async def stop(self) -> None:
        await self.state.stop()
        self.rate_limiter.cleanup()

    def get_status(self) -> dict:
        recovery = self.state.get_recovery_info()
        return {
            "circuit_breaker": self.circuit_breaker.get_status(),
            "risk": self.risk_manager.get_risk_status(),
            "rate_limiter": self.rate_limiter.get_rate_limit_stats(),
            "retry": self.retry_service.get_retry_stats(),
            "recovery": {
                "has_recoverable_state": recovery.has_recoverable_state,
                "active_operations": len(recovery.active_operations),
                "consecutive_errors": recovery.consecutive_errors,
            },
        }


def build_circuit_breaker(
    settings: Settings,
    *,
    notifier: Notifier | None = None,
    repository: SnapshotRepoProtocol | None = None,
) -> CircuitBreaker:
    breaker_settings = settings.circuit_breaker
    if repository is None:
        repository = JsonFileSnapshotRepo(breaker_settings.state_file, max_backups=0)
    return CircuitBreaker(
        CircuitBreakerConfig.from_settings(breaker_settings),
        repository=repository,
        notifier=notifier,
    )


def build_state_persistence(settings: Settings) -> StatePersistence:
    persistence_settings = settings.state_persistence
    return StatePersistence(
        JsonFileSnapshotRepo(
            persistence_settings.state_file, max_backups=persistence_settings.max_backups
        ),
        PersistenceConfig.from_settings(persistence_settings),
    )


def build_trade_guard(settings: Settings, *, notifier: Notifier | None = None) -> TradeGuard:
    rate_limiter = RateLimiter(RateLimitConfig.from_settings(settings.rate_limit_settings))
    return TradeGuard(
        rate_limiter=rate_limiter,
        retry_service=RetryService(
            rate_limiter,
            RetryPolicy.from_settings(settings.retry_settings),
            venue_overrides=settings.api_retry_settings,
        ),
        circuit_breaker=build_circuit_breaker(settings, notifier=notifier),
        risk_manager=RiskManager(RiskLimits.from_settings(settings.risk_management)),
        state=build_state_persistence(settings),
    )
