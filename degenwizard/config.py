"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides for secrets and paths
  - Validation of schedule times, percentages, and payout weights
  - All subsystem configs: scheduling, trading, payouts, reputation,
    markets, signal, chain, execution, chat, storage, observability, alerts
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from degenwizard.errors import ConfigError


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class SchedulingConfig(BaseModel):
    timezone: str = "America/New_York"
    tick_interval_seconds: int = Field(default=5, ge=1)
    morning_trade_time: str = "09:30"
    morning_blackout_minutes: int = Field(default=30, ge=0)
    trade_hours_start: int = Field(default=10, ge=0, le=23)
    trade_hours_end: int = Field(default=22, ge=1, le=24)
    interval_variance_minutes: int = Field(default=10, ge=0, le=29)
    min_gap_minutes: int = Field(default=20, ge=0)
    weekly_payout_weekday: str = "sun"
    weekly_payout_hour: int = Field(default=18, ge=0, le=23)

    @field_validator("morning_trade_time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v

    @field_validator("weekly_payout_weekday")
    @classmethod
    def _check_weekday(cls, v: str) -> str:
        v = v.lower()[:3]
        if v not in WEEKDAYS:
            raise ValueError(f"unknown weekday {v!r}")
        return v

    @model_validator(mode="after")
    def _check_window(self) -> "SchedulingConfig":
        if self.trade_hours_start >= self.trade_hours_end:
            raise ValueError("trade_hours_start must be before trade_hours_end")
        return self

    @property
    def morning_hour(self) -> int:
        return int(self.morning_trade_time.split(":")[0])

    @property
    def morning_minute(self) -> int:
        return int(self.morning_trade_time.split(":")[1])


class TradingConfig(BaseModel):
    voting_window_seconds: int = Field(default=300, ge=10)
    min_votes: int = Field(default=5, ge=1)
    min_position_pct: float = Field(default=0.05, gt=0, le=1)
    max_position_pct: float = Field(default=0.10, gt=0, le=1)
    min_position_usd: float = 1.0
    resolution_stale_minutes: int = 60

    @model_validator(mode="after")
    def _check_sizes(self) -> "TradingConfig":
        if self.min_position_pct > self.max_position_pct:
            raise ValueError("min_position_pct must not exceed max_position_pct")
        return self


class DistributionConfig(BaseModel):
    """Weights for 1st / 2nd / 3rd place."""
    first: float = Field(default=50, ge=0)
    second: float = Field(default=30, ge=0)
    third: float = Field(default=20, ge=0)

    @model_validator(mode="after")
    def _check_first(self) -> "DistributionConfig":
        if self.first <= 0:
            raise ValueError("distribution.first must be positive")
        return self

    def weights(self) -> list[float]:
        return [self.first, self.second, self.third]


class PayoutsConfig(BaseModel):
    min_payout_usd: float = Field(default=10.0, ge=0)
    payout_share: float = Field(default=0.40, gt=0, le=1)
    distribution: DistributionConfig = Field(default_factory=DistributionConfig)
    max_retries: int = Field(default=5, ge=1)
    retry_delays_seconds: list[int] = Field(default_factory=lambda: [60, 120, 240, 480, 960])
    retry_interval_seconds: int = Field(default=300, ge=1)
    receipt_timeout_seconds: int = Field(default=120, ge=1)

    @field_validator("retry_delays_seconds")
    @classmethod
    def _check_delays(cls, v: list[int]) -> list[int]:
        if not v or any(d < 0 for d in v):
            raise ValueError("retry_delays_seconds must be a non-empty list of non-negative ints")
        return v


class ReputationConfig(BaseModel):
    initial_weight: float = 0.1
    weight_increase_per_prediction: float = Field(default=0.01, ge=0)
    max_weight: float = Field(default=1.0, gt=0)


class MarketsConfig(BaseModel):
    """Which 15-minute Up/Down series the bot trades."""
    assets: list[str] = Field(default_factory=lambda: ["BTC", "ETH", "SOL", "XRP"])
    series_ids: dict[str, int] = Field(default_factory=lambda: {
        "BTC": 10192, "ETH": 10191, "SOL": 10423, "XRP": 10422,
    })
    candle_interval: str = "1m"
    candle_limit: int = 61
    request_timeout_secs: float = 15.0


class SignalConfig(BaseModel):
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 600
    timeout_secs: float = 45.0


class ChainConfig(BaseModel):
    chain_id: int = 137
    usdc_contract: str = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
    ctf_contract: str = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
    min_gas_balance: float = 0.1
    redeem_gas_limit: int = 200_000


class ExecutionConfig(BaseModel):
    dry_run: bool = True
    paper_bankroll: float = 1000.0
    slippage_tolerance: float = 0.02
    fill_timeout_secs: int = 30


class ChatConfig(BaseModel):
    """Discord channel the bot posts to."""
    trading_channel_id: str = ""
    guild_id: str = ""
    holder_role_id: str = ""
    up_emoji: str = "\U0001f7e2"
    down_emoji: str = "\U0001f534"
    request_timeout_secs: float = 10.0


class StorageConfig(BaseModel):
    sqlite_path: str = "data/degenwizard.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"
    log_file: str = "logs/degenwizard.log"
    metrics_snapshot_ticks: int = Field(default=10, ge=1)


class AlertsConfig(BaseModel):
    """Alerting configuration."""
    enabled: bool = True
    min_alert_level: str = "info"
    default_cooldown_secs: int = 300


class BotConfig(BaseModel):
    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    payouts: PayoutsConfig = Field(default_factory=PayoutsConfig)
    reputation: ReputationConfig = Field(default_factory=ReputationConfig)
    markets: MarketsConfig = Field(default_factory=MarketsConfig)
    signal: SignalConfig = Field(default_factory=SignalConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


def load_config(path: str | Path | None = None) -> BotConfig:
    """Load config from YAML file, falling back to defaults.

    ``CONFIG_PATH`` overrides the default location and ``DATABASE_PATH``
    overrides ``storage.sqlite_path``.
    """
    if path is None:
        path = os.environ.get("CONFIG_PATH") or _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    try:
        cfg = BotConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e

    db_path = os.environ.get("DATABASE_PATH")
    if db_path:
        cfg.storage.sqlite_path = db_path
    return cfg


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


def get_secret(key: str, required: bool = False, default: str = "") -> str:
    """Read a secret from the environment."""
    value = os.environ.get(key, "")
    if not value and required:
        raise ConfigError(f"Missing required environment variable: {key}")
    return value or default


def polygon_rpc_url() -> str:
    return get_secret("POLYGON_RPC_URL", default="https://polygon-rpc.com")
