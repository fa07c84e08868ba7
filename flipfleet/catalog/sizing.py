"""
Fractional-Kelly position sizing.

For a flip the "odds" are the relative margin: b = (sell - buy) / buy. With
p the probability the flip completes at a profit, full Kelly is
(b*p - q) / b. We bet a fixed fraction of that (quarter Kelly by default) and
clamp to [0, 1] so a negative edge simply means "do not trade".
"""

from __future__ import annotations

import math

from flipfleet.domain.models import RiskCategory, TradeProfile

DEFAULT_KELLY_FRACTION = 0.25


def kelly_fraction(
    win_probability: float,
    buy_price: int,
    sell_price: int,
    safety_fraction: float = DEFAULT_KELLY_FRACTION,
) -> float:
    """Clamped fractional-Kelly share of the bankroll (0.0 .. 1.0)."""
    if buy_price <= 0 or sell_price <= buy_price:
        return 0.0

    p = float(win_probability)
    q = 1.0 - p
    b = (sell_price - buy_price) / float(buy_price)

    raw = (b * p - q) / b
    fraction = raw * float(safety_fraction)
    if math.isnan(fraction):
        return 0.0
    return max(0.0, min(fraction, 1.0))


def size_position(
    profile: TradeProfile,
    bankroll: int,
    win_probability: float,
    safety_fraction: float = DEFAULT_KELLY_FRACTION,
) -> int:
    """
    Quantity to buy this cycle.

    Returns 0 when the item has no positive margin, when Kelly says the edge is
    negative, or when the bankroll cannot afford a single unit. Otherwise the
    result is at least 1 and never more than the item's per-cycle guardrail.
    """
    buy = int(profile.buy_price())
    sell = int(profile.sell_price())
    if buy <= 0 or sell <= buy:
        return 0

    fraction = kelly_fraction(win_probability, buy, sell, safety_fraction)
    if fraction <= 0.0:
        return 0

    bankroll = max(0, int(bankroll))
    qty = int(bankroll * fraction // buy)
    qty = min(qty, int(profile.max_qty_per_cycle))
    qty = max(1, qty)

    # Flooring at one unit must not buy something the bankroll cannot cover.
    affordable = bankroll // buy
    return max(0, min(qty, affordable))


def risk_category(fraction: float) -> RiskCategory:
    if fraction >= 0.20:
        return RiskCategory.HIGH
    if fraction >= 0.10:
        return RiskCategory.MEDIUM
    if fraction >= 0.05:
        return RiskCategory.LOW
    if fraction > 0:
        return RiskCategory.MINIMAL
    return RiskCategory.SKIP


def is_safe_to_trade(win_probability: float, margin: int, buy_price: int) -> bool:
    """Reject implausible probabilities and margins thinner than 1% of the price."""
    if win_probability < 0.3 or win_probability > 0.95:
        return False
    if buy_price <= 0:
        return False
    return (margin / float(buy_price)) >= 0.01
