from __future__ import annotations

from enum import Enum

import httpx

_RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "too many requests")


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    AUTH = "auth"
    REJECT = "reject"
    UNCERTAIN = "uncertain"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self not in {ErrorCategory.AUTH, ErrorCategory.REJECT}


class RetryExhaustedError(RuntimeError):
    def __init__(self, operation_key: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"operation {operation_key} failed after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}"
        )
        self.operation_key = operation_key
        self.attempts = attempts
        self.last_error = last_error


class StatePersistenceError(ValueError):
    """Raised for caller mistakes against the persisted state, never for I/O."""


def status_code_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return int(exc.response.status_code)
    raw = getattr(exc, "status_code", None)
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return None


def retry_after_of(exc: BaseException) -> str | None:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return exc.response.headers.get("Retry-After")
    raw = getattr(exc, "retry_after", None)
    return str(raw) if raw is not None else None


def is_rate_limit_error(exc: BaseException) -> bool:
    if status_code_of(exc) == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def classify_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCategory.UNCERTAIN
    if isinstance(exc, httpx.ConnectError | httpx.NetworkError):
        return ErrorCategory.TRANSIENT

    status = status_code_of(exc)
    if status == 429 or (status is None and is_rate_limit_error(exc)):
        return ErrorCategory.RATE_LIMIT
    if status in {401, 403}:
        return ErrorCategory.AUTH
    if status is not None and status >= 500:
        return ErrorCategory.TRANSIENT
    if status in {400, 404, 409, 422}:
        return ErrorCategory.REJECT
    if isinstance(exc, httpx.TransportError | ConnectionError):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, TimeoutError):
        return ErrorCategory.UNCERTAIN
    return ErrorCategory.FATAL
