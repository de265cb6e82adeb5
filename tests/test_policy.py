"""Tests for policy: vote decisions, position sizing, and the payout split."""

from __future__ import annotations

import random

import pytest

from degenwizard.config import DistributionConfig, TradingConfig
from degenwizard.policy.payout_split import floor_to_cents, payout_total, split_payout
from degenwizard.policy.position_sizer import (
    calculate_position_size,
    compute_conviction,
    conviction_label,
    decide_direction,
)
from degenwizard.storage.models import Direction, VoteCounts


# ─── helpers ────────────────────────────────────────────────────────────

def _trading_cfg(**overrides) -> TradingConfig:
    defaults = dict(min_position_pct=0.05, max_position_pct=0.10, min_position_usd=1.0)
    defaults.update(overrides)
    return TradingConfig(**defaults)


# ─── direction & conviction ────────────────────────────────────────────

class TestDecideDirection:
    def test_majority_up(self) -> None:
        decision = decide_direction(VoteCounts(up=12, down=8), random.Random(0))
        assert decision.direction == Direction.UP
        assert decision.is_tie is False
        assert decision.conviction == pytest.approx(0.2)
        assert (decision.up_pct, decision.down_pct) == (60, 40)

    def test_majority_down(self) -> None:
        decision = decide_direction(VoteCounts(up=1, down=4), random.Random(0))
        assert decision.direction == Direction.DOWN
        assert decision.conviction == pytest.approx(0.6)

    def test_tie_uses_rng(self) -> None:
        counts = VoteCounts(up=3, down=3)
        seen = {decide_direction(counts, random.Random(seed)).direction for seed in range(40)}
        assert seen == {Direction.UP, Direction.DOWN}
        decision = decide_direction(counts, random.Random(1))
        assert decision.is_tie is True
        assert decision.conviction == 0.0

    def test_tie_is_reproducible_with_seed(self) -> None:
        counts = VoteCounts(up=5, down=5)
        first = decide_direction(counts, random.Random(42)).direction
        assert all(decide_direction(counts, random.Random(42)).direction == first for _ in range(5))

    def test_no_votes_rejected(self) -> None:
        with pytest.raises(ValueError):
            decide_direction(VoteCounts(), random.Random(0))

    def test_unanimous_conviction_is_one(self) -> None:
        assert compute_conviction(VoteCounts(up=7, down=0)) == pytest.approx(1.0)
        assert compute_conviction(VoteCounts()) == 0.0

    def test_conviction_labels(self) -> None:
        assert conviction_label(0.8) == "High"
        assert conviction_label(0.5) == "Medium"
        assert conviction_label(0.3) == "Low"


# ─── position sizing ───────────────────────────────────────────────────

class TestPositionSizer:
    def test_interpolates_by_conviction(self) -> None:
        # 5% + (10% - 5%) × 0.2 of $1000 = $60
        size = calculate_position_size(1000.0, 0.2, _trading_cfg())
        assert size.stake_usd == pytest.approx(60.0)
        assert size.capped_by == "conviction"
        assert size.ok

    def test_bounds(self) -> None:
        cfg = _trading_cfg()
        assert calculate_position_size(1000.0, 0.0, cfg).stake_usd == pytest.approx(50.0)
        assert calculate_position_size(1000.0, 1.0, cfg).stake_usd == pytest.approx(100.0)
        assert calculate_position_size(1000.0, 7.0, cfg).stake_usd == pytest.approx(100.0)

    def test_raised_to_minimum(self) -> None:
        size = calculate_position_size(10.0, 0.0, _trading_cfg())
        assert size.stake_usd == pytest.approx(1.0)
        assert size.capped_by == "minimum"
        assert size.ok

    def test_pool_cannot_cover_minimum(self) -> None:
        size = calculate_position_size(0.5, 1.0, _trading_cfg())
        assert not size.ok
        assert size.stake_usd == 0.0

    def test_min_above_max_rejected(self) -> None:
        with pytest.raises(ValueError):
            _trading_cfg(min_position_pct=0.2, max_position_pct=0.1)


# ─── payout split ──────────────────────────────────────────────────────

class TestPayoutSplit:
    def test_payout_total_floors_to_cents(self) -> None:
        assert payout_total(100.0, 0.40) == pytest.approx(40.0)
        assert payout_total(33.337, 0.40) == pytest.approx(13.33)
        assert payout_total(0.0, 0.40) == 0.0
        assert payout_total(-5.0, 0.40) == 0.0

    def test_floor_does_not_lose_a_cent(self) -> None:
        assert floor_to_cents(12.34) == pytest.approx(12.34)
        assert floor_to_cents(0.29) == pytest.approx(0.29)

    def test_three_winners(self) -> None:
        shares = split_payout(40.0, DistributionConfig(), 3)
        assert shares == pytest.approx([20.0, 12.0, 8.0])

    def test_two_winners_renormalized(self) -> None:
        shares = split_payout(40.0, DistributionConfig(), 2)
        assert shares == pytest.approx([25.0, 15.0])

    def test_single_winner_takes_all(self) -> None:
        assert split_payout(13.33, DistributionConfig(), 1) == pytest.approx([13.33])

    def test_remainder_goes_to_first(self) -> None:
        shares = split_payout(10.01, DistributionConfig(first=1, second=1, third=1), 3)
        assert shares == pytest.approx([3.35, 3.33, 3.33])
        assert round(sum(shares) * 100) == 1001

    @pytest.mark.parametrize("total", [10.0, 13.33, 99.99, 1234.57])
    @pytest.mark.parametrize("winners", [1, 2, 3])
    def test_shares_sum_to_total(self, total: float, winners: int) -> None:
        shares = split_payout(total, DistributionConfig(), winners)
        assert len(shares) == winners
        assert round(sum(shares) * 100) == round(total * 100)
        assert all(s >= 0 for s in shares)

    def test_no_winners(self) -> None:
        assert split_payout(40.0, DistributionConfig(), 0) == []

    def test_first_weight_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            DistributionConfig(first=0, second=50, third=50)
