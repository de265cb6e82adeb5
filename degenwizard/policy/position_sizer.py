"""Position sizer — turns a vote tally into a stake.

Conviction is the normalized vote margin ``|up - down| / total``. The stake
interpolates linearly between ``min_position_pct`` and ``max_position_pct``
of the pool balance:

    size = pool × (min_pct + (max_pct − min_pct) × conviction)

A stake below the exchange minimum is raised to it when the pool can cover
it; otherwise the round is not sized at all.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from degenwizard.config import TradingConfig
from degenwizard.storage.models import Direction, VoteCounts
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class VoteDecision:
    """Outcome of a closed voting window."""
    direction: Direction
    conviction: float
    is_tie: bool
    up_pct: int
    down_pct: int


@dataclass
class PositionSize:
    """Computed position size."""
    stake_usd: float
    pool_balance: float
    conviction: float
    capped_by: str  # "conviction" | "minimum" | "insufficient_pool"

    @property
    def ok(self) -> bool:
        return self.capped_by != "insufficient_pool"


def compute_conviction(counts: VoteCounts) -> float:
    if counts.total == 0:
        return 0.0
    return abs(counts.up - counts.down) / counts.total


def decide_direction(counts: VoteCounts, rng: random.Random) -> VoteDecision:
    """Pick the majority direction; a tie is a fair coin from ``rng``."""
    if counts.total == 0:
        raise ValueError("cannot decide direction with no votes")
    is_tie = counts.up == counts.down
    if counts.up > counts.down:
        direction = Direction.UP
    elif counts.down > counts.up:
        direction = Direction.DOWN
    else:
        direction = Direction.UP if rng.random() < 0.5 else Direction.DOWN
    up_pct = round(counts.up / counts.total * 100)
    return VoteDecision(
        direction=direction,
        conviction=compute_conviction(counts),
        is_tie=is_tie,
        up_pct=up_pct,
        down_pct=100 - up_pct,
    )


def conviction_label(conviction: float) -> str:
    if conviction > 0.6:
        return "High"
    if conviction > 0.3:
        return "Medium"
    return "Low"


def calculate_position_size(
    pool_balance: float,
    conviction: float,
    config: TradingConfig,
) -> PositionSize:
    """Size a position from pool balance and conviction."""
    conviction = min(max(conviction, 0.0), 1.0)
    min_size = pool_balance * config.min_position_pct
    max_size = pool_balance * config.max_position_pct
    stake = min_size + (max_size - min_size) * conviction

    if stake >= config.min_position_usd:
        return PositionSize(
            stake_usd=stake, pool_balance=pool_balance,
            conviction=conviction, capped_by="conviction",
        )

    if pool_balance >= config.min_position_usd:
        log.info(
            "position_sizer.raised_to_minimum",
            computed=round(stake, 4),
            minimum=config.min_position_usd,
        )
        return PositionSize(
            stake_usd=config.min_position_usd, pool_balance=pool_balance,
            conviction=conviction, capped_by="minimum",
        )

    return PositionSize(
        stake_usd=0.0, pool_balance=pool_balance,
        conviction=conviction, capped_by="insufficient_pool",
    )
