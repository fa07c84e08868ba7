from __future__ import annotations

import argparse
import logging
import random
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from flipfleet.catalog.catalog import Catalog
from flipfleet.catalog.loader import catalog_mtime, load_catalog_rows
from flipfleet.coord.coordinator import Coordinator
from flipfleet.coord.factory import agent_seed, build_coordinator
from flipfleet.coord.transports import SharedDocumentTransport
from flipfleet.errors import CoordinationUnavailable
from flipfleet.limits.store import LimitStore
from flipfleet.limits.tracker import LimitTracker
from flipfleet.ports.venue import BankPort, NavigatorPort, VenuePort
from flipfleet.trader.pacing import Pacer, load_pacing_config
from flipfleet.trader.profit import ProfitTracker
from flipfleet.trader.state_machine import TradingStateMachine, load_trading_config
from flipfleet.trading.executor import OrderExecutor, load_execution_config
from flipfleet.trading.probe import MarginProbe, load_probe_config
from flipfleet.trading.retry import RetryPolicy
from flipfleet.utils.config_loader import load_config, resolve_path
from flipfleet.venue.paper import PaperVenue

logger = logging.getLogger(__name__)

STATS_INTERVAL_SECONDS = 300
CLEANUP_INTERVAL_SECONDS = 3600


@dataclass
class Agent:
    agent_id: str
    config: dict
    machine: TradingStateMachine
    catalog: Catalog
    catalog_path: Path | None
    limits: LimitTracker
    store: LimitStore
    coordinator: Coordinator
    profit: ProfitTracker
    rng: random.Random


def _load_catalog(path: Path, tax_rate: float, drop_unprofitable: bool) -> Catalog:
    catalog = Catalog.load(load_catalog_rows(path))
    if drop_unprofitable:
        catalog.filter_unprofitable(tax_rate)
    return catalog


def build_agent(
    config: dict,
    *,
    venue: VenuePort | None = None,
    navigator: NavigatorPort | None = None,
    bank: BankPort | None = None,
    catalog: Catalog | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> Agent:
    """Wire one agent. Every random draw in it comes from a single generator seeded by the agent id."""
    agent_cfg = config.get("agent") or {}
    agent_id = str(agent_cfg["id"])
    rng = random.Random(agent_seed(agent_id))

    trading_cfg = load_trading_config(config)
    pacing_cfg = load_pacing_config(config)

    catalog_path: Path | None = None
    if catalog is None:
        cat_cfg = config.get("catalog") or {}
        catalog_path = resolve_path(cat_cfg.get("path", "data/items.csv"))
        catalog = _load_catalog(catalog_path, trading_cfg.tax_rate, bool(cat_cfg.get("filter_unprofitable", True)))

    store = LimitStore(resolve_path(agent_cfg.get("data_dir", "data")))
    limits = store.load(agent_id, clock=clock)
    coordinator = build_coordinator(config, agent_id, rng, clock=clock, sleep=sleep)
    profit = ProfitTracker(clock=clock)

    if venue is None:
        venue = PaperVenue(slots=trading_cfg.max_slots, clock=clock)
        logger.info("Using the paper venue for %s", agent_id)

    probe = MarginProbe(
        venue,
        load_probe_config(config),
        rng=rng,
        limits=limits,
        coordinator=coordinator,
        profit=profit,
        clock=clock,
        sleep=sleep,
    )
    executor = OrderExecutor(
        venue,
        load_execution_config(config),
        limits,
        retry=RetryPolicy.from_config(config, rng=rng, sleep=sleep),
        coordinator=coordinator,
        profit=profit,
        rng=rng,
        sleep=sleep,
    )
    machine = TradingStateMachine(
        agent_id,
        trading_cfg,
        catalog,
        venue,
        limits,
        coordinator,
        probe,
        executor,
        Pacer(pacing_cfg, rng),
        rng=rng,
        fill_poll_seconds=pacing_cfg.fill_poll_seconds,
        fill_max_polls=pacing_cfg.fill_max_polls,
        travel_timeout_seconds=pacing_cfg.travel_timeout_seconds,
        navigator=navigator,
        bank=bank,
        sleep=sleep,
    )
    return Agent(
        agent_id=agent_id,
        config=config,
        machine=machine,
        catalog=catalog,
        catalog_path=catalog_path,
        limits=limits,
        store=store,
        coordinator=coordinator,
        profit=profit,
        rng=rng,
    )


class CatalogWatcher:
    """Reload the catalog when the export file changes on disk."""

    def __init__(self, agent: Agent, interval_seconds: float, clock: Callable[[], float] = time.time):
        self.agent = agent
        self.interval_seconds = float(interval_seconds)
        self._clock = clock
        self._last_check = clock()
        self._mtime = catalog_mtime(agent.catalog_path) if agent.catalog_path else None

    def poll(self) -> bool:
        path = self.agent.catalog_path
        if path is None or self.interval_seconds <= 0:
            return False
        now = self._clock()
        if now - self._last_check < self.interval_seconds:
            return False
        self._last_check = now

        mtime = catalog_mtime(path)
        if mtime is None or mtime == self._mtime:
            return False
        try:
            rows = load_catalog_rows(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Catalog reload failed, keeping the current list: {e}")
            return False
        fresh = Catalog.load(rows)
        if len(fresh) == 0:
            logger.warning("Reloaded catalog has no valid items; keeping the current list")
            return False
        self._mtime = mtime
        self.agent.machine.update_catalog(fresh.snapshot())
        logger.info(f"Catalog hot-reloaded from {path} ({len(fresh)} items)")
        return True


def _interruptible_sleep(seconds: float, machine: TradingStateMachine, sleep: Callable[[float], None]) -> None:
    remaining = max(0.0, float(seconds))
    while remaining > 0 and machine.running:
        step = min(1.0, remaining)
        sleep(step)
        remaining -= step


def run_agent(
    agent: Agent,
    *,
    max_ticks: int | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Drive the state machine until stopped (or `max_ticks`), then persist the limit ledger."""
    machine = agent.machine
    reload_interval = float((agent.config.get("catalog") or {}).get("reload_interval_seconds", 60))
    watcher = CatalogWatcher(agent, reload_interval, clock=clock)
    last_stats = clock()
    last_cleanup = clock()
    ticks = 0

    logger.info(f"Agent {agent.agent_id} started with {len(agent.catalog)} items")
    try:
        while machine.running:
            if max_ticks is not None and ticks >= max_ticks:
                break
            delay = machine.tick()
            ticks += 1

            watcher.poll()
            now = clock()
            if now - last_stats >= STATS_INTERVAL_SECONDS:
                last_stats = now
                s = machine.stats
                logger.info(
                    f"[{agent.agent_id}] cycles={s.cycles} trades={s.trades} probes={s.probes_ok}/"
                    f"{s.probes_ok + s.probes_failed} capacity_hits={s.capacity_hits} "
                    f"takeovers={s.takeovers} | {agent.profit.summary()}"
                )
            transport = agent.coordinator.transport
            if isinstance(transport, SharedDocumentTransport) and now - last_cleanup >= CLEANUP_INTERVAL_SECONDS:
                last_cleanup = now
                try:
                    transport.cleanup()
                except CoordinationUnavailable as e:
                    logger.warning(f"Coordination cleanup failed: {e}")

            _interruptible_sleep(delay, machine, sleep)
    except KeyboardInterrupt:
        logger.info(f"Stopping agent {agent.agent_id}...")
    finally:
        agent.store.save(agent.agent_id, agent.limits)
        logger.info(f"Final: {agent.profit.summary()}")
        per_item = agent.profit.summary_frame()
        if not per_item.empty:
            logger.info(f"Per-item results:\n{per_item.to_string(index=False)}")


def _install_signal_handlers(machine: TradingStateMachine) -> None:
    def _stop(signum, _frame):
        logger.info(f"Received signal {signum}; stopping after the current tick")
        machine.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv: list[str] | None = None) -> None:
    # Configure logging (idempotent; safe if configured elsewhere).
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Run one FlipFleet trading agent.")
    parser.add_argument("--config", help="Path to config.yaml (default: config/config.yaml)")
    parser.add_argument("--agent-id", help="Override agent.id from the config")
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop after this many transitions")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.agent_id:
        config.setdefault("agent", {})["id"] = args.agent_id

    agent = build_agent(config)
    _install_signal_handlers(agent.machine)
    run_agent(agent, max_ticks=args.max_ticks)


if __name__ == "__main__":
    main()
