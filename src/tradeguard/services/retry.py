from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Protocol, TypeVar

from tradeguard.config import ApiRetryOverride, RetrySettings
from tradeguard.obs.metrics import inc_counter
from tradeguard.services.execution_errors import (
    ErrorCategory,
    RetryExhaustedError,
    classify_error,
    retry_after_of,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimitGate(Protocol):
    async def wait_for_rate_limit(self, key: str = ..., venue: str | None = ...) -> float: ...


@dataclass(frozen=True)
class RetryOptions:
    """Per-call retry options. Delays are in seconds; ``None`` means inherit."""

    venue: str | None = None
    endpoint: str = "general"
    operation_name: str = "operation"
    max_retries: int | None = None
    base_delay: float | None = None
    max_delay: float | None = None
    exponential_base: float | None = None
    jitter_range: float | None = None

    @property
    def operation_key(self) -> str:
        return f"{self.venue or 'default'}:{self.endpoint}:{self.operation_name}"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_range: float = 1.0

    def validate(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter_range < 0:
            raise ValueError("delay values must be >= 0")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be >= 1")

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay_ms / 1000.0,
            max_delay=settings.max_delay_ms / 1000.0,
            exponential_base=settings.exponential_base,
            jitter_range=settings.jitter_range_ms / 1000.0,
        )


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    error_type: str
    error_message: str
    delay_seconds: float
    timestamp: float
    venue: str | None
    endpoint: str
    operation: str
    rate_limited: bool = False
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    try:
        parsed = float(candidate)
        return parsed if parsed >= 0 else None
    except ValueError:
        pass
    try:
        parsed_dt = parsedate_to_datetime(candidate)
    except (TypeError, ValueError):
        return None
    now = datetime.now(UTC)
    if parsed_dt.tzinfo is None:
        parsed_dt = parsed_dt.replace(tzinfo=UTC)
    return max(0.0, (parsed_dt - now).total_seconds())


def compute_backoff_delay(attempt: int, policy: RetryPolicy, prng: random.Random) -> float:
    raw = policy.base_delay * (policy.exponential_base ** (attempt - 1))
    jitter = prng.uniform(0.0, policy.jitter_range) if policy.jitter_range > 0 else 0.0
    return min(raw + jitter, policy.max_delay)


def compute_rate_limit_delay(
    attempt: int, policy: RetryPolicy, retry_after_s: float | None = None
) -> tuple[float, bool]:
    delay = min(policy.base_delay * (2**attempt), policy.max_delay)
    if retry_after_s is not None and retry_after_s > delay:
        return min(retry_after_s, policy.max_delay), True
    return delay, False


class RetryService:
    def __init__(
        self,
        rate_limiter: RateLimitGate,
        policy: RetryPolicy | None = None,
        *,
        venue_overrides: Mapping[str, ApiRetryOverride] | None = None,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter_seed: int | None = None,
        history_size: int = 10,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.policy.validate()
        self._rate_limiter = rate_limiter
        self._venue_overrides = {
            venue.lower(): override for venue, override in (venue_overrides or {}).items()
        }
        self._clock = clock
        self._sleep = sleep_fn
        self._prng = random.Random(jitter_seed)
        self._history_size = history_size
        self._history: dict[str, deque[RetryAttempt]] = {}
        self._calls_total = 0
        self._calls_with_retries = 0
        self._retries_total = 0
        self._retries_by_key: Counter[str] = Counter()

    def resolve_policy(self, options: RetryOptions) -> RetryPolicy:
        """Explicit option, then the venue override, then the global policy."""

        resolved = self.policy
        override = self._venue_overrides.get(options.venue.lower()) if options.venue else None
        if override is not None:
            resolved = replace(
                resolved,
                max_retries=override.max_retries or resolved.max_retries,
                base_delay=(
                    override.base_delay_ms / 1000.0
                    if override.base_delay_ms is not None
                    else resolved.base_delay
                ),
                max_delay=(
                    override.max_delay_ms / 1000.0
                    if override.max_delay_ms is not None
                    else resolved.max_delay
                ),
            )
        explicit = {
            name: value
            for name, value in (
                ("max_retries", options.max_retries),
                ("base_delay", options.base_delay),
                ("max_delay", options.max_delay),
                ("exponential_base", options.exponential_base),
                ("jitter_range", options.jitter_range),
            )
            if value is not None
        }
        if explicit:
            resolved = replace(resolved, **explicit)
        resolved.validate()
        return resolved

    def compute_delay(
        self, attempt: int, policy: RetryPolicy, exc: BaseException, category: ErrorCategory
    ) -> tuple[float, bool]:
        if category is ErrorCategory.RATE_LIMIT:
            retry_after = parse_retry_after_seconds(retry_after_of(exc))
            return compute_rate_limit_delay(attempt, policy, retry_after)
        return compute_backoff_delay(attempt, policy, self._prng), False

    async def execute_with_retry(  # noqa: UP047
        self,
        operation: Callable[[], Awaitable[T]],
        options: RetryOptions | None = None,
        **overrides: object,
    ) -> T:
        opts = options or RetryOptions()
        if overrides:
            opts = replace(opts, **overrides)
        policy = self.resolve_policy(opts)
        key = opts.operation_key
        last_error: Exception | None = None

        for attempt in range(1, policy.max_retries + 1):
            await self._rate_limiter.wait_for_rate_limit(opts.endpoint, opts.venue)
            try:
                result = await operation()
            except Exception as exc:
                last_error = exc
                category = classify_error(exc)
                is_last = attempt >= policy.max_retries
                if not category.retryable or is_last:
                    self._remember(opts, attempt, exc, 0.0, category, used_retry_after=False)
                    if not category.retryable:
                        self._record_call(key, attempt - 1)
                        logger.warning(
                            "retry_aborted_non_retryable",
                            extra={
                                "extra": {
                                    "operation_key": key,
                                    "attempt": attempt,
                                    "category": category.value,
                                    "error_type": type(exc).__name__,
                                }
                            },
                        )
                        raise
                    break
                delay, used_retry_after = self.compute_delay(attempt, policy, exc, category)
                self._remember(opts, attempt, exc, delay, category, used_retry_after)
                inc_counter(
                    "guard_retry_attempts_total",
                    {
                        "venue": opts.venue or "default",
                        "endpoint": opts.endpoint,
                        "category": category.value,
                    },
                )
                logger.warning(
                    "retry_scheduled",
                    extra={
                        "extra": {
                            "operation_key": key,
                            "attempt": attempt,
                            "max_retries": policy.max_retries,
                            "delay_seconds": round(delay, 3),
                            "category": category.value,
                            "used_retry_after": used_retry_after,
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        }
                    },
                )
                await self._sleep(delay)
            else:
                self._record_call(key, attempt - 1)
                if attempt > 1:
                    logger.info(
                        "retry_succeeded",
                        extra={"extra": {"operation_key": key, "attempt": attempt}},
                    )
                return result

        if last_error is None:
            raise RuntimeError("retry loop exhausted unexpectedly")
        self._record_call(key, policy.max_retries - 1)
        inc_counter(
            "guard_retry_exhausted_total",
            {"venue": opts.venue or "default", "endpoint": opts.endpoint},
        )
        logger.error(
            "retry_exhausted",
            extra={
                "extra": {
                    "operation_key": key,
                    "attempts": policy.max_retries,
                    "error_type": type(last_error).__name__,
                    "error": str(last_error),
                }
            },
        )
        raise RetryExhaustedError(key, policy.max_retries, last_error) from last_error

    def _remember(
        self,
        options: RetryOptions,
        attempt: int,
        exc: Exception,
        delay: float,
        category: ErrorCategory,
        used_retry_after: bool,
    ) -> None:
        history = self._history.setdefault(
            options.operation_key, deque(maxlen=self._history_size)
        )
        history.appendleft(
            RetryAttempt(
                attempt=attempt,
                error_type=type(exc).__name__,
                error_message=str(exc),
                delay_seconds=delay,
                timestamp=self._clock(),
                venue=options.venue,
                endpoint=options.endpoint,
                operation=options.operation_name,
                rate_limited=category is ErrorCategory.RATE_LIMIT,
                used_retry_after=used_retry_after,
            )
        )

    def _record_call(self, key: str, retries: int) -> None:
        self._calls_total += 1
        if retries > 0:
            self._calls_with_retries += 1
            self._retries_total += retries
            self._retries_by_key[key] += retries

    def get_recent_attempts(self, operation_key: str) -> list[RetryAttempt]:
        return list(self._history.get(operation_key, ()))

    def get_retry_stats(self, top_n: int = 10) -> dict:
        average = (
            self._retries_total / self._calls_with_retries if self._calls_with_retries else 0.0
        )
        return {
            "total_operations": self._calls_total,
            "operations_with_retries": self._calls_with_retries,
            "average_retries": round(average, 3),
            "most_retried": [
                {"operation_key": key, "retries": retries}
                for key, retries in self._retries_by_key.most_common(top_n)
            ],
        }

    def clear_history(self) -> None:
        self._history.clear()
        self._calls_total = 0
        self._calls_with_retries = 0
        self._retries_total = 0
        self._retries_by_key.clear()
