"""
Margin probe.

Buys a handful of units at the guardrail buy price and sells them straight
back at the guardrail sell price. If both legs fill and the spread clears the
item's minimum margin, the observed prices replace the cached estimate.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from flipfleet.domain.models import BuyOutcome, ProbeResult, SellOutcome, TradeProfile
from flipfleet.errors import CapacityExhausted, StaleDataRejected, TransientExecutionFailure
from flipfleet.ports.venue import VenuePort
from flipfleet.trader.timeout import call_with_timeout

if TYPE_CHECKING:
    from flipfleet.coord.coordinator import Coordinator
    from flipfleet.limits.tracker import LimitTracker
    from flipfleet.trader.profit import ProfitTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeConfig:
    stale_minutes: int
    open_timeout_seconds: float
    poll_base_min_seconds: float
    poll_base_max_seconds: float
    poll_jitter: float
    poll_growth: float
    poll_max_seconds: float
    max_polls: int


def load_probe_config(config: dict) -> ProbeConfig:
    p = (config.get("probe") or {}) if isinstance(config, dict) else {}
    return ProbeConfig(
        stale_minutes=int(p.get("stale_minutes", 60)),
        open_timeout_seconds=float(p.get("open_timeout_seconds", 10.0)),
        poll_base_min_seconds=float(p.get("poll_base_min_seconds", 3.0)),
        poll_base_max_seconds=float(p.get("poll_base_max_seconds", 5.0)),
        poll_jitter=float(p.get("poll_jitter", 0.25)),
        poll_growth=float(p.get("poll_growth", 1.5)),
        poll_max_seconds=float(p.get("poll_max_seconds", 10.0)),
        max_polls=int(p.get("max_polls", 6)),
    )


class MarginProbe:
    def __init__(
        self,
        venue: VenuePort,
        cfg: ProbeConfig,
        *,
        rng: random.Random,
        limits: LimitTracker | None = None,
        coordinator: Coordinator | None = None,
        profit: ProfitTracker | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.venue = venue
        self.cfg = cfg
        self.rng = rng
        self.limits = limits
        self.coordinator = coordinator
        self.profit = profit
        self._clock = clock
        self._sleep = sleep
        # Drawn once so each agent keeps its own polling rhythm.
        lo = min(cfg.poll_base_min_seconds, cfg.poll_base_max_seconds)
        hi = max(cfg.poll_base_min_seconds, cfg.poll_base_max_seconds)
        self.base_poll_seconds = rng.uniform(lo, hi)

    def is_stale(self, profile: TradeProfile) -> bool:
        if profile.last_probe_at is None:
            return True
        age = self._clock() - profile.last_probe_at
        return age > self.cfg.stale_minutes * 60

    def _await_settled(self, item: str) -> bool:
        """Poll until the venue reports the item's orders settled; False after max_polls."""
        interval = self.base_poll_seconds
        for _ in range(max(1, self.cfg.max_polls)):
            wait = interval * (1.0 + self.rng.uniform(-self.cfg.poll_jitter, self.cfg.poll_jitter))
            self._sleep(max(0.0, wait))
            if self.venue.orders_settled(item):
                return True
            interval = min(interval * self.cfg.poll_growth, self.cfg.poll_max_seconds)
        return False

    def _capacity_hit(self, profile: TradeProfile) -> None:
        if self.limits is not None:
            self.limits.block(profile.name)
        if self.coordinator is not None:
            self.coordinator.report(profile.name)

    def probe(self, profile: TradeProfile) -> ProbeResult:
        """Run one probe flip. The profile is only touched when the probe succeeds."""
        item = profile.name
        logger.info(f"Starting margin probe: {item}")
        try:
            return self._run(profile)
        except CapacityExhausted as e:
            logger.warning(f"Probe stopped: {e}")
            self._capacity_hit(profile)
            return ProbeResult(False, "capacity exhausted", buy_price=int(profile.max_buy))
        except StaleDataRejected as e:
            logger.warning(f"Probe rejected the cached estimate for {item}: {e}")
            return e.observed or ProbeResult(False, str(e))
        except TransientExecutionFailure as e:
            logger.warning(f"Probe aborted for {item}: {e}")
            return ProbeResult(False, f"venue error: {e}")
        finally:
            self.venue.close()

    def _run(self, profile: TradeProfile) -> ProbeResult:
        item = profile.name
        if not call_with_timeout(self.venue.ensure_open, self.cfg.open_timeout_seconds):
            logger.warning(f"Venue did not open for probe: {item}")
            return ProbeResult(False, "venue not open")

        qty = max(1, int(profile.probe_qty))
        buy_price = int(profile.max_buy)
        sell_price = int(profile.min_sell)
        baseline = int(self.venue.holdings_count(item))

        logger.info(f"Probe buy: {qty}x {item} @ {buy_price}")
        bought = self.venue.place_buy(item, buy_price, qty)
        if bought == BuyOutcome.CAPACITY_EXHAUSTED:
            raise CapacityExhausted(item)
        if bought != BuyOutcome.PLACED:
            logger.warning(f"Probe buy failed: {bought}")
            return ProbeResult(False, f"buy {bought.value.lower()}", buy_price=buy_price)

        if not self._await_settled(item):
            logger.warning(f"Probe buy did not settle: {item}")
            return ProbeResult(False, "buy fill timeout", buy_price=buy_price, residual_qty=qty)

        self.venue.collect()
        received = int(self.venue.holdings_count(item)) - baseline
        if received <= 0:
            logger.warning(f"Probe buy not filled: {item}")
            return ProbeResult(False, "buy not filled", buy_price=buy_price, residual_qty=qty)
        buy_residual = max(0, qty - received)

        logger.info(f"Probe sell: {received}x {item} @ {sell_price}")
        sold = self.venue.place_sell(item, sell_price, received)
        if sold != SellOutcome.PLACED:
            logger.warning(f"Probe sell failed: {sold}")
            return ProbeResult(
                False, "sell failed", buy_price=buy_price, sell_price=sell_price, filled_qty=received, residual_qty=received
            )

        if not self._await_settled(item):
            logger.warning(f"Probe sell did not settle: {item}")
            return ProbeResult(
                False, "sell fill timeout", buy_price=buy_price, sell_price=sell_price, filled_qty=received, residual_qty=received
            )

        self.venue.collect()
        sell_residual = max(0, int(self.venue.holdings_count(item)) - baseline)
        if self.profit is not None:
            self.profit.record_buy(item, received, buy_price)
            self.profit.record_sell(item, received - sell_residual, sell_price)

        margin = sell_price - buy_price
        residual = buy_residual + sell_residual
        if residual > 0:
            logger.warning(f"Probe left {residual} unfilled for {item}")
            return ProbeResult(
                False, "partial fill", buy_price=buy_price, sell_price=sell_price, filled_qty=received, residual_qty=residual
            )
        if margin < profile.min_margin:
            observed = ProbeResult(False, "margin too low", buy_price=buy_price, sell_price=sell_price, filled_qty=received)
            raise StaleDataRejected(f"margin {margin} < min {profile.min_margin}", observed)

        profile.record_probe(buy_price, sell_price, self._clock())
        logger.info(f"Probe OK: {item} | buy {buy_price} -> sell {sell_price} | margin {margin}")
        return ProbeResult(True, "ok", buy_price=buy_price, sell_price=sell_price, filled_qty=received)
