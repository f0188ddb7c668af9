from __future__ import annotations

import asyncio
import atexit
import contextlib
import copy
import logging
import signal
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal
from types import FrameType

from tradeguard.config import StatePersistenceSettings
from tradeguard.domain.models import (
    ActiveOperation,
    DiscoveryEntry,
    OperationStatus,
    PersistedState,
    RecoveryInfo,
    to_decimal,
)
from tradeguard.domain.state_schema import (
    SCHEMA_VERSION,
    default_state,
    merge_with_defaults,
    state_to_dict,
)
from tradeguard.obs.metrics import inc_counter
from tradeguard.persistence.interfaces import SnapshotRepoProtocol
from tradeguard.services.execution_errors import StatePersistenceError

logger = logging.getLogger(__name__)

_EXIT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass(frozen=True)
class PersistenceConfig:
    enabled: bool = True
    save_interval_seconds: float = 30.0
    operation_grace_seconds: float = 60.0
    discovery_cache_size: int = 1000

    @classmethod
    def from_settings(cls, settings: StatePersistenceSettings) -> PersistenceConfig:
        return cls(
            enabled=settings.enabled,
            save_interval_seconds=settings.save_interval_ms / 1000.0,
            operation_grace_seconds=settings.operation_grace_ms / 1000.0,
            discovery_cache_size=settings.discovery_cache_size,
        )


class StatePersistence:
    """Crash-recovery snapshot of in-flight operations and runtime counters.

    All mutators are synchronous and only touch memory; ``save_state`` is the
    single write path. Write failures are logged and reported as ``False``,
    never raised. Operations that reached a terminal status stay visible for
    ``operation_grace_seconds`` and are pruned lazily afterwards.
    """

    def __init__(
        self,
        repository: SnapshotRepoProtocol | None,
        config: PersistenceConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or PersistenceConfig()
        self._repository = repository
        self._clock = clock
        self._sleep = sleep_fn
        self._process_started_at = clock()
        self._state = self._load()
        self._save_task: asyncio.Task[None] | None = None
        self._previous_handlers: dict[int, object] = {}
        self._exit_hook_registered = False

    def _load(self) -> PersistedState:
        now = self._clock()
        defaults = default_state(now)
        payload = None
        if self.config.enabled and self._repository is not None:
            payload = self._repository.load()
        if payload is None:
            return defaults

        state = merge_with_defaults(payload, defaults)
        if state.version > SCHEMA_VERSION:
            logger.warning(
                "state_schema_newer_than_supported",
                extra={"extra": {"loaded_version": state.version, "supported": SCHEMA_VERSION}},
            )
        state.version = SCHEMA_VERSION
        for operation in state.active_operations:
            if operation.status.is_terminal and operation.finished_at is None:
                operation.finished_at = now
        logger.info(
            "state_loaded",
            extra={
                "extra": {
                    "active_operations": len(state.active_operations),
                    "consecutive_errors": state.error_counters.consecutive_errors,
                    "discovery_cache": len(state.discovery_cache),
                    "total_trades": state.profit_stats.total_trades,
                }
            },
        )
        return state

    def _prune_finished(self) -> None:
        now = self._clock()
        grace = self.config.operation_grace_seconds
        kept = [
            op
            for op in self._state.active_operations
            if not (
                op.status.is_terminal
                and op.finished_at is not None
                and now - op.finished_at >= grace
            )
        ]
        if len(kept) != len(self._state.active_operations):
            logger.debug(
                "state_operations_pruned",
                extra={"extra": {"pruned": len(self._state.active_operations) - len(kept)}},
            )
            self._state.active_operations = kept

    def _touch(self) -> None:
        self._state.timestamp = self._clock()

    def _find_operation(self, operation_id: str) -> ActiveOperation | None:
        for operation in self._state.active_operations:
            if operation.operation_id == operation_id:
                return operation
        return None

    def add_active_operation(
        self,
        operation_id: str,
        *,
        venue: str | None = None,
        token_id: str | None = None,
        amount: Decimal | str | float | None = None,
    ) -> ActiveOperation:
        self._prune_finished()
        if self._find_operation(operation_id) is not None:
            raise StatePersistenceError(f"operation {operation_id} is already tracked")
        operation = ActiveOperation(
            operation_id=operation_id,
            start_time=self._clock(),
            venue=venue,
            token_id=token_id,
            amount=to_decimal(amount) if amount is not None else None,
        )
        self._state.active_operations.append(operation)
        self._touch()
        logger.debug(
            "state_operation_added",
            extra={"extra": {"operation_id": operation_id, "venue": venue, "token_id": token_id}},
        )
        return copy.copy(operation)

    def update_operation_status(
        self,
        operation_id: str,
        status: OperationStatus | str,
        result: str | None = None,
        error: str | None = None,
    ) -> bool:
        self._prune_finished()
        try:
            new_status = OperationStatus(status)
        except ValueError as exc:
            raise StatePersistenceError(f"unknown operation status: {status}") from exc
        operation = self._find_operation(operation_id)
        if operation is None:
            logger.warning(
                "state_operation_unknown", extra={"extra": {"operation_id": operation_id}}
            )
            return False
        operation.status = new_status
        if result is not None:
            operation.result = result
        if error is not None:
            operation.error = error
        operation.finished_at = self._clock() if new_status.is_terminal else None
        self._touch()
        return True

    def remove_active_operation(self, operation_id: str) -> bool:
        operation = self._find_operation(operation_id)
        if operation is None:
            return False
        self._state.active_operations.remove(operation)
        self._touch()
        return True

    def record_error(
        self, error_type: str, venue: str | None = None, error: str | None = None
    ) -> None:
        counters = self._state.error_counters
        counters.total_errors += 1
        counters.errors_by_type[error_type] = counters.errors_by_type.get(error_type, 0) + 1
        if venue:
            counters.errors_by_venue[venue] = counters.errors_by_venue.get(venue, 0) + 1
        counters.consecutive_errors += 1
        counters.last_error_time = self._clock()
        self._touch()
        logger.warning(
            "state_error_recorded",
            extra={
                "extra": {
                    "error_type": error_type,
                    "venue": venue,
                    "error": error,
                    "consecutive_errors": counters.consecutive_errors,
                }
            },
        )

    def record_success(self) -> None:
        self._state.error_counters.consecutive_errors = 0
        self._touch()

    def record_trade(
        self,
        success: bool,
        profit: Decimal | str | float | None = None,
        trade_size: Decimal | str | float | None = None,
    ) -> None:
        stats = self._state.profit_stats
        stats.total_trades += 1
        if success:
            stats.successful_trades += 1
        pnl = to_decimal(profit) if profit is not None else None
        if pnl is not None:
            if pnl > 0:
                stats.total_profit += pnl
            elif pnl < 0:
                stats.total_loss += abs(pnl)
            stats.best_trade = max(stats.best_trade, pnl)
            stats.worst_trade = min(stats.worst_trade, pnl)
        if trade_size is not None:
            size = to_decimal(trade_size)
            stats.avg_trade_size = (
                stats.avg_trade_size * (stats.total_trades - 1) + size
            ) / stats.total_trades
        self._touch()
        logger.info(
            "state_trade_recorded",
            extra={
                "extra": {
                    "success": success,
                    "profit": str(pnl) if pnl is not None else None,
                    "total_trades": stats.total_trades,
                    "success_rate": round(stats.successful_trades / stats.total_trades, 4),
                }
            },
        )

    def update_discovery_cache(
        self, key: str, venue: str, payload: dict[str, object] | None = None
    ) -> DiscoveryEntry:
        now = self._clock()
        cache = self._state.discovery_cache
        existing = next((entry for entry in cache if entry.key == key), None)
        if existing is not None:
            cache.remove(existing)
            existing.last_seen = now
            existing.venue = venue
            if payload is not None:
                existing.payload = dict(payload)
            entry = existing
        else:
            entry = DiscoveryEntry(
                key=key,
                venue=venue,
                discovered_at=now,
                last_seen=now,
                payload=dict(payload or {}),
            )
        cache.append(entry)
        overflow = len(cache) - self.config.discovery_cache_size
        if overflow > 0:
            del cache[:overflow]
        self._touch()
        return copy.copy(entry)

    def replace_discovery_cache(self, entries: Iterable[DiscoveryEntry]) -> None:
        ordered = sorted(entries, key=lambda entry: entry.last_seen)
        self._state.discovery_cache = ordered[-self.config.discovery_cache_size :]
        self._touch()

    def update_connection_liveness(self, name: str, connected: bool) -> None:
        self._state.runtime_stats.connections[name] = connected
        self._touch()

    def record_config_reload(self) -> None:
        self._state.runtime_stats.config_reloads += 1
        self._touch()

    def update_runtime_stats(self) -> None:
        now = self._clock()
        runtime = self._state.runtime_stats
        runtime.uptime = max(0.0, now - self._process_started_at)
        runtime.last_health_check = now
        self._touch()

    def get_state(self) -> PersistedState:
        self._prune_finished()
        return copy.deepcopy(self._state)

    def get_recovery_info(self) -> RecoveryInfo:
        self._prune_finished()
        pending = tuple(
            copy.copy(op) for op in self._state.active_operations if not op.status.is_terminal
        )
        counters = self._state.error_counters
        runtime = self._state.runtime_stats
        return RecoveryInfo(
            has_recoverable_state=bool(pending) or counters.consecutive_errors > 0,
            active_operations=pending,
            consecutive_errors=counters.consecutive_errors,
            uptime=runtime.uptime,
            last_health_check=runtime.last_health_check,
        )

    def save_state(self) -> bool:
        if not self.config.enabled or self._repository is None:
            return False
        self._prune_finished()
        self.update_runtime_stats()
        try:
            self._repository.save(state_to_dict(self._state))
        except (OSError, TypeError, ValueError) as exc:
            inc_counter("guard_state_save_failures_total", {"store": "bot_state"})
            logger.error(
                "state_save_failed",
                extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
            return False
        logger.debug(
            "state_saved",
            extra={"extra": {"active_operations": len(self._state.active_operations)}},
        )
        return True

    async def start(self) -> None:
        if not self.config.enabled or self._repository is None:
            return
        if self._save_task is not None and not self._save_task.done():
            return
        self._save_task = asyncio.create_task(self._periodic_save())
        logger.info(
            "state_periodic_save_started",
            extra={"extra": {"interval_seconds": self.config.save_interval_seconds}},
        )

    async def _periodic_save(self) -> None:
        while True:
            await self._sleep(self.config.save_interval_seconds)
            self.save_state()

    async def stop(self) -> None:
        task = self._save_task
        self._save_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.save_state()

    def install_exit_handlers(self) -> bool:
        """Register a final synchronous save on SIGINT, SIGTERM and interpreter exit.

        Previously installed signal handlers still run after the save. Returns
        ``False`` when signal handlers cannot be installed from this thread; the
        atexit hook is registered either way.
        """

        if not self._exit_hook_registered:
            atexit.register(self._save_on_exit)
            self._exit_hook_registered = True
        try:
            for signum in _EXIT_SIGNALS:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_exit_signal)
        except ValueError:
            logger.warning("state_exit_handlers_unavailable")
            return False
        return True

    def uninstall_exit_handlers(self) -> None:
        for signum, previous in self._previous_handlers.items():
            with contextlib.suppress(ValueError, TypeError):
                signal.signal(signum, previous)
        self._previous_handlers.clear()
        if self._exit_hook_registered:
            atexit.unregister(self._save_on_exit)
            self._exit_hook_registered = False

    def _save_on_exit(self) -> None:
        self.save_state()

    def _handle_exit_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.warning("state_exit_signal", extra={"extra": {"signal": signum}})
        self.save_state()
        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        if previous == signal.SIG_IGN:
            return
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + signum)
