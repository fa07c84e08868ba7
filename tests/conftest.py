import random

import pytest

from flipfleet.domain.models import TradeProfile


class FakeClock:
    """Manually advanced epoch clock; `sleep` advances it instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)

    def sleep(self, seconds: float) -> None:
        self.slept.append(float(seconds))
        self.now += float(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def make_profile():
    def _make(
        name="Coal",
        buy=100,
        sell=120,
        *,
        max_buy=None,
        min_sell=None,
        min_margin=5,
        rise_probability=0.9,
        max_qty=10_000,
        probe_qty=10,
    ):
        return TradeProfile(
            name=name,
            item_id=None,
            est_buy=buy,
            est_sell=sell,
            rise_probability=rise_probability,
            liquidity=50_000.0,
            horizon_minutes=60,
            max_buy=buy + 1 if max_buy is None else max_buy,
            min_sell=sell - 1 if min_sell is None else min_sell,
            max_qty_per_cycle=max_qty,
            probe_qty=probe_qty,
            min_margin=min_margin,
        )

    return _make
