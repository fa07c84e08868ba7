from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from flipfleet.domain.models import BuyOutcome, ExecutionReport, OrderResult, SellOutcome, TradeProfile
from flipfleet.errors import TransientExecutionFailure
from flipfleet.ports.venue import VenuePort
from flipfleet.trader.timeout import call_with_timeout
from flipfleet.trading.retry import RetryPolicy

if TYPE_CHECKING:
    from flipfleet.coord.coordinator import Coordinator
    from flipfleet.limits.tracker import LimitTracker
    from flipfleet.trader.profit import ProfitTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionConfig:
    per_request_cap: int
    max_capital_per_flip: int
    open_timeout_seconds: float
    settle_min_seconds: float
    settle_max_seconds: float


def load_execution_config(config: dict) -> ExecutionConfig:
    e = (config.get("execution") or {}) if isinstance(config, dict) else {}
    return ExecutionConfig(
        per_request_cap=int(e.get("per_request_cap", 100)),
        max_capital_per_flip=int(e.get("max_capital_per_flip", 250_000)),
        open_timeout_seconds=float(e.get("open_timeout_seconds", 10.0)),
        settle_min_seconds=float(e.get("settle_min_seconds", 1.5)),
        settle_max_seconds=float(e.get("settle_max_seconds", 3.0)),
    )


class OrderExecutor:
    """
    Bulk order placement for one item under capital and slot ceilings.

    A capacity signal from the venue is terminal: the item is blocked locally
    for the rest of the window and shared with the other agents. Running out
    of slots or budget is an ordinary stop. The venue is always closed on the
    way out, and orders already placed stay in place.
    """

    def __init__(
        self,
        venue: VenuePort,
        cfg: ExecutionConfig,
        limits: LimitTracker,
        *,
        retry: RetryPolicy,
        coordinator: Coordinator | None = None,
        profit: ProfitTracker | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.venue = venue
        self.cfg = cfg
        self.limits = limits
        self.retry = retry
        self.coordinator = coordinator
        self.profit = profit
        self.rng = rng or random.Random()
        self._sleep = sleep

    def _settle(self) -> None:
        """Short randomized pause between consecutive requests."""
        self._sleep(self.rng.uniform(self.cfg.settle_min_seconds, self.cfg.settle_max_seconds))

    def _open(self) -> bool:
        try:
            return bool(call_with_timeout(self.venue.ensure_open, self.cfg.open_timeout_seconds))
        except TransientExecutionFailure as e:
            logger.warning(f"Opening the venue failed: {e}")
            return False

    def _on_capacity_exhausted(self, item: str) -> None:
        self.limits.block(item)
        logger.warning(f"Trade volume ceiling hit: {item} (blocked {self.limits.format_remaining(item)})")
        if self.coordinator is not None:
            self.coordinator.report(item)

    def place_buys(
        self, profile: TradeProfile, target_qty: int, capital_ceiling: int, slot_ceiling: int
    ) -> ExecutionReport:
        item = profile.name
        if self.limits.is_blocked(item):
            logger.info(f"Blocked locally: {item} ({self.limits.format_remaining(item)} left)")
            return ExecutionReport(OrderResult.CAPACITY_EXHAUSTED)

        if not self._open():
            logger.warning(f"Cannot open venue for buys: {item}")
            return ExecutionReport(OrderResult.FAILED)

        price = int(profile.buy_price())
        placed = 0
        slots_used = 0
        retries_exhausted = False
        try:
            # Finished offers from the last cycle still hold slots.
            self.venue.collect()
            if price <= 0:
                logger.warning(f"Refusing to buy {item} at non-positive price {price}")
                return ExecutionReport(OrderResult.FAILED)

            while placed < target_qty:
                if self.venue.free_slots() <= 0 or slots_used >= slot_ceiling:
                    logger.info(f"No free slots left for {item}")
                    break

                available = capital_ceiling - int(self.venue.capital_in_flight())
                batch = min(
                    target_qty - placed,
                    available // price,
                    self.cfg.per_request_cap,
                    self.cfg.max_capital_per_flip // price,
                )
                if batch <= 0:
                    logger.info(f"Capital ceiling reached for {item}")
                    break

                res = self.retry.execute(
                    lambda p: self.venue.place_buy(item, p, batch),
                    price,
                    is_success=lambda o: o == BuyOutcome.PLACED,
                    is_terminal=lambda o: o == BuyOutcome.CAPACITY_EXHAUSTED,
                    upward=True,
                )
                if res.outcome == BuyOutcome.CAPACITY_EXHAUSTED:
                    self._on_capacity_exhausted(item)
                    return ExecutionReport(OrderResult.CAPACITY_EXHAUSTED, placed, price)
                if res.outcome != BuyOutcome.PLACED:
                    logger.warning(f"Buy failed after {res.attempts} attempts: {item}")
                    retries_exhausted = True
                    break

                price = res.price
                placed += batch
                slots_used += 1
                if self.profit is not None:
                    self.profit.record_buy(item, batch, price)
                logger.info(f"Buy placed: {batch}x {item} @ {price}")
                self._settle()
        finally:
            self.venue.close()

        if retries_exhausted and placed == 0:
            return ExecutionReport(OrderResult.FAILED, 0, price)
        if placed > 0:
            logger.info(f"Total buys placed: {placed}x {item}")
        return ExecutionReport(OrderResult.OK, placed, price)

    def list_sells(self, profile: TradeProfile, available_qty: int) -> ExecutionReport:
        item = profile.name
        if available_qty <= 0:
            logger.info(f"Nothing to sell: {item}")
            return ExecutionReport(OrderResult.OK)

        if not self._open():
            logger.warning(f"Cannot open venue for sells: {item}")
            return ExecutionReport(OrderResult.FAILED)

        price = int(profile.sell_price())
        listed = 0
        retries_exhausted = False
        try:
            while listed < available_qty:
                if self.venue.free_slots() <= 0:
                    logger.info(f"No free slots left to sell {item}")
                    break
                batch = min(available_qty - listed, self.cfg.per_request_cap)

                res = self.retry.execute(
                    lambda p: self.venue.place_sell(item, p, batch),
                    price,
                    is_success=lambda o: o == SellOutcome.PLACED,
                    upward=False,
                )
                if res.outcome != SellOutcome.PLACED:
                    logger.warning(f"Sell failed after {res.attempts} attempts: {item}")
                    retries_exhausted = True
                    break

                price = res.price
                listed += batch
                if self.profit is not None:
                    self.profit.record_sell(item, batch, price)
                logger.info(f"Sell listed: {batch}x {item} @ {price}")
                self._settle()
        finally:
            self.venue.close()

        if retries_exhausted and listed == 0:
            return ExecutionReport(OrderResult.FAILED, 0, price)
        return ExecutionReport(OrderResult.OK, listed, price)
