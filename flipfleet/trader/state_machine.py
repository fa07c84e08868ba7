from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from flipfleet.catalog.catalog import Catalog
from flipfleet.catalog.sizing import DEFAULT_KELLY_FRACTION, is_safe_to_trade, kelly_fraction, risk_category, size_position
from flipfleet.coord.coordinator import Coordinator
from flipfleet.domain.models import CycleStats, OrderResult, Phase, TradeProfile
from flipfleet.errors import TransientExecutionFailure
from flipfleet.limits.tracker import LimitTracker
from flipfleet.ports.venue import BankPort, NavigatorPort, VenuePort
from flipfleet.trader.pacing import Pacer
from flipfleet.trader.rotation import RANDOM_TOP_K, TAKEOVER_WINDOW, PrioritizedQueue, build_queue, select_next
from flipfleet.trader.timeout import call_with_timeout
from flipfleet.trading.executor import OrderExecutor
from flipfleet.trading.probe import MarginProbe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingConfig:
    max_capital_in_flight: int
    max_slots: int
    kelly_fraction: float
    takeover_window: int
    random_top_k: int
    tax_rate: float


def load_trading_config(config: dict) -> TradingConfig:
    t = (config.get("trading") or {}) if isinstance(config, dict) else {}
    return TradingConfig(
        max_capital_in_flight=int(t.get("max_capital_in_flight", 15_000_000)),
        max_slots=int(t.get("max_slots", 8)),
        kelly_fraction=float(t.get("kelly_fraction", DEFAULT_KELLY_FRACTION)),
        takeover_window=int(t.get("takeover_window", TAKEOVER_WINDOW)),
        random_top_k=int(t.get("random_top_k", RANDOM_TOP_K)),
        tax_rate=float(t.get("tax_rate", 0.01)),
    )


class TradingStateMachine:
    """
    One agent's trading cycle.

    IDLE -> TRAVEL -> (PROBE) -> BUY -> SELL -> BANK -> COOLDOWN -> ROTATE -> IDLE.
    Any failure on the way short-circuits to ROTATE. `tick()` performs exactly
    one transition and returns how long the caller should sleep before the
    next one.
    """

    def __init__(
        self,
        agent_id: str,
        cfg: TradingConfig,
        catalog: Catalog,
        venue: VenuePort,
        limits: LimitTracker,
        coordinator: Coordinator,
        probe: MarginProbe,
        executor: OrderExecutor,
        pacer: Pacer,
        *,
        rng: random.Random,
        fill_poll_seconds: float = 5.0,
        fill_max_polls: int = 12,
        travel_timeout_seconds: float = 60.0,
        navigator: NavigatorPort | None = None,
        bank: BankPort | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.agent_id = agent_id
        self.cfg = cfg
        self.catalog = catalog
        self.venue = venue
        self.limits = limits
        self.coordinator = coordinator
        self.probe = probe
        self.executor = executor
        self.pacer = pacer
        self.rng = rng
        self.fill_poll_seconds = float(fill_poll_seconds)
        self.fill_max_polls = int(fill_max_polls)
        self.travel_timeout_seconds = float(travel_timeout_seconds)
        self.navigator = navigator
        self.bank = bank
        self._sleep = sleep

        self.phase = Phase.IDLE
        self.current: TradeProfile | None = None
        self.queue = PrioritizedQueue()
        self.stats = CycleStats()
        self._holdings = 0
        self._stopped = False

    # ----- lifecycle -----

    @property
    def running(self) -> bool:
        return not self._stopped

    def stop(self) -> None:
        self._stopped = True
        logger.info("State machine for %s stopping", self.agent_id)

    def update_catalog(self, profiles: Iterable[TradeProfile]) -> None:
        """Hot reload. The queue for the cycle in flight is left alone; the next ROTATE picks this up."""
        self.catalog.replace(profiles)

    def rebuild_queue(self) -> PrioritizedQueue:
        self.queue = build_queue(self.catalog.snapshot(), self.limits, self.coordinator.blocked_by_others())
        return self.queue

    # ----- the loop -----

    def tick(self) -> float:
        self.stats.bump_phase(self.phase)
        handler = {
            Phase.IDLE: self._idle,
            Phase.TRAVEL: self._travel,
            Phase.PROBE: self._probe,
            Phase.BUY: self._buy,
            Phase.SELL: self._sell,
            Phase.BANK: self._bank,
            Phase.COOLDOWN: self._cooldown,
            Phase.ROTATE: self._rotate,
        }[self.phase]
        try:
            return handler()
        except Exception as e:
            item = self.current.name if self.current else "-"
            logger.error("Unexpected error in %s for %s: %s", self.phase.value, item, e, exc_info=True)
            self.stats.failures += 1
            self.phase = Phase.ROTATE
            return self.pacer.tick()

    def _idle(self) -> float:
        if not self.queue:
            self.rebuild_queue()
        profile, takeover = select_next(
            self.queue,
            self.limits,
            self.rng,
            takeover_window=self.cfg.takeover_window,
            top_k=self.cfg.random_top_k,
        )
        if profile is None:
            self.rebuild_queue()
            logger.info("Nothing eligible to trade; retrying in %.0fs", self.pacer.idle_retry())
            return self.pacer.idle_retry()

        self.current = profile
        self.stats.last_item = profile.name
        if takeover:
            self.stats.takeovers += 1
        self.phase = Phase.TRAVEL
        return self.pacer.tick()

    def _travel(self) -> float:
        if self.navigator is not None:
            try:
                arrived = call_with_timeout(self.navigator.travel_to_venue, self.travel_timeout_seconds)
            except TransientExecutionFailure as e:
                logger.warning("Travel to venue failed: %s", e)
                arrived = False
            if not arrived:
                self.phase = Phase.ROTATE
                return self.pacer.tick()

        assert self.current is not None
        self.phase = Phase.PROBE if self.probe.is_stale(self.current) else Phase.BUY
        return self.pacer.tick()

    def _probe(self) -> float:
        assert self.current is not None
        result = self.probe.probe(self.current)
        if result.success:
            self.stats.probes_ok += 1
            self.phase = Phase.BUY
        else:
            self.stats.probes_failed += 1
            if result.reason == "capacity exhausted":
                self.stats.capacity_hits += 1
            logger.info("Skipping %s this cycle: probe %s", self.current.name, result.reason)
            self.phase = Phase.ROTATE
        return self.pacer.tick()

    def _buy(self) -> float:
        profile = self.current
        assert profile is not None
        bankroll = self.cfg.max_capital_in_flight
        p = profile.rise_probability
        if not is_safe_to_trade(p, profile.margin(), profile.buy_price()):
            logger.info(
                "Not trading %s: probability %.2f or margin %s at %s is out of bounds",
                profile.name,
                p,
                profile.margin(),
                profile.buy_price(),
            )
            self.phase = Phase.ROTATE
            return self.pacer.tick()
        qty = size_position(profile, bankroll, p, self.cfg.kelly_fraction)
        fraction = kelly_fraction(p, profile.buy_price(), profile.sell_price(), self.cfg.kelly_fraction)
        logger.info(
            "Kelly: %s x %s (%.1f%% of bankroll, %s risk)",
            qty,
            profile.name,
            fraction * 100,
            risk_category(fraction).value,
        )
        if qty <= 0:
            self.phase = Phase.ROTATE
            return self.pacer.tick()

        report = self.executor.place_buys(profile, qty, bankroll, self.cfg.max_slots)
        if report.result == OrderResult.CAPACITY_EXHAUSTED:
            self.stats.capacity_hits += 1
            self.phase = Phase.ROTATE
            return self.pacer.tick()
        if report.result == OrderResult.FAILED:
            self.stats.failures += 1
            self.phase = Phase.ROTATE
            return self.pacer.tick()
        if report.placed_qty <= 0:
            self.phase = Phase.ROTATE
            return self.pacer.tick()

        self._holdings = self._await_holdings(profile.name)
        if self._holdings > 0:
            self.phase = Phase.SELL
        else:
            logger.info("Buys for %s did not fill in time", profile.name)
            self.phase = Phase.ROTATE
        return self.pacer.tick()

    def _await_holdings(self, item: str) -> int:
        """Bounded wait for bought units to arrive."""
        held = 0
        for _ in range(max(1, self.fill_max_polls)):
            self._sleep(self.fill_poll_seconds)
            self.venue.collect()
            held = int(self.venue.holdings_count(item))
            if held > 0:
                break
        return held

    def _sell(self) -> float:
        assert self.current is not None
        report = self.executor.list_sells(self.current, self._holdings)
        if report.placed_qty > 0:
            self.stats.trades += 1
        elif report.result == OrderResult.FAILED:
            self.stats.failures += 1
        self._holdings = 0
        self.phase = Phase.BANK
        return self.pacer.tick()

    def _bank(self) -> float:
        if self.bank is None:
            logger.debug("No bank configured; skipping")
        else:
            try:
                if not self.bank.bank_all():
                    logger.warning("Banking did not complete")
            except Exception as e:
                logger.warning("Banking failed: %s", e)
        self.phase = Phase.COOLDOWN
        return self.pacer.tick()

    def _cooldown(self) -> float:
        dwell, took_break = self.pacer.cooldown()
        if took_break:
            logger.info("Taking a break for %.0fs", dwell)
        self.phase = Phase.ROTATE
        return dwell

    def _rotate(self) -> float:
        self.stats.cycles += 1
        self.current = None
        self._holdings = 0
        self.rebuild_queue()
        self.phase = Phase.IDLE
        return self.pacer.rotate_settle()
