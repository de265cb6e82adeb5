"""Database models — Pydantic models for storage records."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from pydantic import BaseModel


EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime | None) -> str | None:
    """Normalise a datetime to a UTC ISO-8601 string for storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


class TradeStatus(str, Enum):
    VOTING = "voting"
    EXECUTED = "executed"
    RESOLVED = "resolved"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class UserRecord(BaseModel):
    """Community member who votes and receives payouts."""
    id: str
    display_name: str | None = None
    wallet_address: str | None = None
    reputation_weight: float = 0.1
    current_streak: int = 0
    best_streak: int = 0


class TradeRecord(BaseModel):
    """One trading round."""
    id: int
    settlement_id: int | None = None
    asset: str
    market_id: str
    proposal_message_ref: str | None = None
    order_id: str | None = None
    executed_direction: Direction | None = None
    pnl: float | None = None
    resolution_time: dt.datetime | None = None
    voting_ends_at: dt.datetime
    status: TradeStatus = TradeStatus.VOTING
    executed_at: dt.datetime | None = None
    resolved_at: dt.datetime | None = None


class PredictionRecord(BaseModel):
    """One user's vote on one trade."""
    id: int
    user_id: str
    trade_id: int
    direction: Direction
    was_correct: bool | None = None
    snapshot_at: dt.datetime | None = None

    @property
    def is_snapshotted(self) -> bool:
        return self.snapshot_at is not None


class SettlementRecord(BaseModel):
    """One payout distribution event."""
    id: int
    status: SettlementStatus = SettlementStatus.PENDING
    triggered_at: dt.datetime
    error_message: str | None = None


class PayoutRecord(BaseModel):
    """One winner's share of a settlement."""
    id: int
    user_id: str
    settlement_id: int
    amount: float
    status: PayoutStatus = PayoutStatus.PENDING
    tx_hash: str | None = None
    tx_request: str | None = None
    rank: int
    retry_count: int = 0
    last_retry_at: dt.datetime | None = None
    error_message: str | None = None


class RuntimeStateRecord(BaseModel):
    """Process-wide scheduling memory."""
    emergency_stopped: bool = False
    last_daily_trade_date: str = "1970-01-01"
    next_hourly_trade_at: dt.datetime = EPOCH
    last_weekly_payout_date: str = "1970-01-01"


class VoteCounts(BaseModel):
    up: int = 0
    down: int = 0

    @property
    def total(self) -> int:
        return self.up + self.down


class WinnerRow(BaseModel):
    """Candidate for a settlement payout."""
    user_id: str
    display_name: str | None = None
    wallet_address: str
    reputation_weight: float
    correct_count: int
    total_count: int


class LeaderboardRow(BaseModel):
    user_id: str
    display_name: str | None = None
    reputation_weight: float
    current_streak: int
    correct_predictions: int
    total_predictions: int

    @property
    def accuracy(self) -> float:
        if self.total_predictions == 0:
            return 0.0
        return self.correct_predictions / self.total_predictions


class UserStats(BaseModel):
    total_predictions: int = 0
    correct_predictions: int = 0
    total_earned: float = 0.0

    @property
    def accuracy(self) -> float:
        if self.total_predictions == 0:
            return 0.0
        return self.correct_predictions / self.total_predictions
