"""Payout split — divides a settlement total among ranked winners.

All arithmetic is in integer cents so the shares always add back up to the
total exactly; any rounding remainder goes to first place.
"""

from __future__ import annotations

import math

from degenwizard.config import DistributionConfig


def floor_to_cents(amount: float) -> float:
    # round() first so 12.34 * 100 = 1233.9999... does not lose a cent
    return math.floor(round(amount * 100, 6)) / 100


def payout_total(profit: float, payout_share: float) -> float:
    """Amount to distribute from ``profit``: floor(profit × share × 100) / 100."""
    if profit <= 0:
        return 0.0
    return floor_to_cents(profit * payout_share)


def split_payout(total: float, distribution: DistributionConfig, winner_count: int) -> list[float]:
    """Split ``total`` across ``winner_count`` (1-3) ranked winners."""
    if winner_count <= 0:
        return []
    weights = distribution.weights()[:winner_count]
    weight_sum = sum(weights)
    if weight_sum <= 0:
        return []

    total_cents = round(total * 100)
    cents = [math.floor(total_cents * w / weight_sum) for w in weights]
    cents[0] += total_cents - sum(cents)
    return [c / 100 for c in cents]
