from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class RetrySettings(_Section):
    max_retries: int = Field(default=3, alias="maxRetries")
    base_delay_ms: int = Field(default=1000, alias="baseDelay")
    max_delay_ms: int = Field(default=30000, alias="maxDelay")
    exponential_base: float = Field(default=2.0, alias="exponentialBase")
    jitter_range_ms: int = Field(default=1000, alias="jitterRange")

    @field_validator("max_retries")
    def validate_max_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("maxRetries must be >= 1")
        return value

    @field_validator("base_delay_ms", "max_delay_ms", "jitter_range_ms")
    def validate_delays(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry delays must be >= 0")
        return value

    @field_validator("exponential_base")
    def validate_exponential_base(cls, value: float) -> float:
        if value < 1:
            raise ValueError("exponentialBase must be >= 1")
        return value


class ApiRetryOverride(_Section):
    max_retries: int | None = Field(default=None, alias="maxRetries")
    base_delay_ms: int | None = Field(default=None, alias="baseDelay")
    max_delay_ms: int | None = Field(default=None, alias="maxDelay")

    @field_validator("max_retries")
    def validate_max_retries(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("maxRetries must be >= 1")
        return value

    @field_validator("base_delay_ms", "max_delay_ms")
    def validate_delays(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("retry delays must be >= 0")
        return value


def _default_api_retry_settings() -> dict[str, ApiRetryOverride]:
    return {
        "pumpfun": ApiRetryOverride(max_retries=3, base_delay_ms=2000),
        "raydium": ApiRetryOverride(max_retries=2, base_delay_ms=1500),
        "jupiter": ApiRetryOverride(max_retries=3, base_delay_ms=1000),
        "meteora": ApiRetryOverride(max_retries=2, base_delay_ms=2000),
        "solana": ApiRetryOverride(max_retries=5, base_delay_ms=500),
    }


class RateLimitSettings(_Section):
    window_ms: int = Field(default=10000, alias="windowMs")
    max_requests_per_window: int = Field(default=100, alias="maxRequestsPerWindow")
    max_requests_per_method: int = Field(default=40, alias="maxRequestsPerMethod")
    global_limit: int = Field(default=200, alias="globalLimit")
    max_concurrent_connections: int = Field(default=40, alias="maxConcurrentConnections")
    warning_cooldown_ms: int = Field(default=30000, alias="warningCooldownMs")

    @field_validator("window_ms")
    def validate_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("windowMs must be > 0")
        return value

    @field_validator(
        "max_requests_per_window",
        "max_requests_per_method",
        "global_limit",
        "max_concurrent_connections",
    )
    def validate_ceilings(cls, value: int) -> int:
        if value < 1:
            raise ValueError("rate limit ceilings must be >= 1")
        return value

    @field_validator("warning_cooldown_ms")
    def validate_warning_cooldown(cls, value: int) -> int:
        if value < 0:
            raise ValueError("warningCooldownMs must be >= 0")
        return value

    @property
    def global_ceiling(self) -> int:
        return min(self.max_requests_per_window, self.global_limit)


class CircuitBreakerSettings(_Section):
    enabled: bool = True
    daily_loss_threshold: Decimal | None = Field(default=Decimal("1.0"), alias="dailyLossThreshold")
    single_loss_threshold: Decimal | None = Field(
        default=Decimal("0.5"), alias="singleLossThreshold"
    )
    error_threshold: int | None = Field(default=5, alias="errorThreshold")
    recovery_time_ms: int = Field(default=300000, alias="recoveryTimeMs")
    state_file: str = Field(default="./circuit-breaker-state.json", alias="stateFile")
    assume_full_loss_on_failure: bool = Field(default=True, alias="assumeFullLossOnFailure")

    @field_validator("daily_loss_threshold", "single_loss_threshold")
    def validate_loss_thresholds(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value <= 0:
            raise ValueError("loss thresholds must be > 0")
        return value

    @field_validator("error_threshold")
    def validate_error_threshold(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("errorThreshold must be >= 1")
        return value

    @field_validator("recovery_time_ms")
    def validate_recovery_time(cls, value: int) -> int:
        if value < 0:
            raise ValueError("recoveryTimeMs must be >= 0")
        return value


class StatePersistenceSettings(_Section):
    enabled: bool = True
    state_file: str = Field(default="./bot-state.json", alias="stateFile")
    save_interval_ms: int = Field(default=30000, alias="saveIntervalMs")
    max_backups: int = Field(default=5, alias="maxBackups")
    operation_grace_ms: int = Field(default=60000, alias="operationGraceMs")
    discovery_cache_size: int = Field(default=1000, alias="discoveryCacheSize")

    @field_validator("save_interval_ms")
    def validate_save_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("saveIntervalMs must be > 0")
        return value

    @field_validator("max_backups", "operation_grace_ms")
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("maxBackups and operationGraceMs must be >= 0")
        return value

    @field_validator("discovery_cache_size")
    def validate_cache_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("discoveryCacheSize must be >= 1")
        return value


class RiskManagementSettings(_Section):
    max_daily_loss: Decimal = Field(default=Decimal("1.0"), alias="maxDailyLoss")
    max_single_trade_amount: Decimal = Field(default=Decimal("0.5"), alias="maxSingleTradeAmount")
    trade_cooldown_ms: int = Field(default=5000, alias="tradeCooldownMs")
    max_positions: int = Field(default=5, alias="maxPositions")
    trade_history_size: int = Field(default=1000, alias="tradeHistorySize")

    @field_validator("max_daily_loss", "max_single_trade_amount")
    def validate_amounts(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("risk amounts must be > 0")
        return value

    @field_validator("trade_cooldown_ms")
    def validate_cooldown(cls, value: int) -> int:
        if value < 0:
            raise ValueError("tradeCooldownMs must be >= 0")
        return value

    @field_validator("max_positions", "trade_history_size")
    def validate_counts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("maxPositions and tradeHistorySize must be >= 1")
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    retry_settings: RetrySettings = Field(
        default_factory=RetrySettings,
        validation_alias=AliasChoices("retrySettings", "RETRY_SETTINGS"),
    )
    rate_limit_settings: RateLimitSettings = Field(
        default_factory=RateLimitSettings,
        validation_alias=AliasChoices("rateLimitSettings", "RATE_LIMIT_SETTINGS"),
    )
    circuit_breaker: CircuitBreakerSettings = Field(
        default_factory=CircuitBreakerSettings,
        validation_alias=AliasChoices("circuitBreaker", "CIRCUIT_BREAKER"),
    )
    state_persistence: StatePersistenceSettings = Field(
        default_factory=StatePersistenceSettings,
        validation_alias=AliasChoices("statePersistence", "STATE_PERSISTENCE"),
    )
    risk_management: RiskManagementSettings = Field(
        default_factory=RiskManagementSettings,
        validation_alias=AliasChoices("riskManagement", "RISK_MANAGEMENT"),
    )
    api_retry_settings: dict[str, ApiRetryOverride] = Field(
        default_factory=_default_api_retry_settings,
        validation_alias=AliasChoices("apiRetrySettings", "API_RETRY_SETTINGS"),
    )

    log_level: str = Field(default="INFO", validation_alias=AliasChoices("logLevel", "LOG_LEVEL"))
    metrics_exporter: str = Field(
        default="log", validation_alias=AliasChoices("metricsExporter", "METRICS_EXPORTER")
    )
    prometheus_port: int = Field(
        default=9464, validation_alias=AliasChoices("prometheusPort", "PROMETHEUS_PORT")
    )

    @field_validator("api_retry_settings", mode="before")
    def normalize_venue_names(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(venue).strip().lower(): override for venue, override in value.items()}
        return value

    @field_validator("log_level")
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return normalized

    @field_validator("metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"log", "prometheus", "none"}:
            raise ValueError("METRICS_EXPORTER must be one of log, prometheus, none")
        return normalized


def _canonical_key(key: str) -> str:
    """Map a field name or any of its aliases to the field's first alias."""

    for name, field in Settings.model_fields.items():
        alias = field.validation_alias
        choices = [choice for choice in getattr(alias, "choices", ()) if isinstance(choice, str)]
        if key == name or key in choices:
            return choices[0] if choices else name
    return key


def load_settings(config_path: str | Path | None = None, **overrides: object) -> Settings:
    """Build settings from an optional JSON config file.

    Keys in the file use the camelCase section names (``retrySettings``,
    ``circuitBreaker`` ...). Explicit ``overrides`` win over the file, and the
    file wins over environment variables.
    """

    values: dict[str, object] = {}
    if config_path is not None:
        raw = Path(config_path).expanduser().read_text(encoding="utf-8")
        loaded = json.loads(raw)
        if not isinstance(loaded, dict):
            raise ValueError(f"config file must contain a JSON object: {config_path}")
        values.update({_canonical_key(str(key)): value for key, value in loaded.items()})
    values.update({_canonical_key(key): value for key, value in overrides.items()})
    return Settings(**values)
