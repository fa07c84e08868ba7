"""
In-memory venue.

Orders fill immediately (unless `auto_fill` is off) and sit in a slot until
collected. Buys count against a per-item volume ceiling over a rolling window;
crossing it returns CAPACITY_EXHAUSTED, as the real venue does. Tests can
queue scripted outcomes per item to simulate rejections.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Union

from flipfleet.domain.models import BuyOutcome, SellOutcome, item_key

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 4 * 3600

Outcome = Union[BuyOutcome, SellOutcome]


@dataclass
class PaperOrder:
    item: str
    side: str
    price: int
    qty: int
    filled: bool = False


class PaperVenue:
    def __init__(
        self,
        *,
        slots: int = 8,
        default_ceiling: int = 10_000,
        ceilings: dict[str, int] | None = None,
        window_seconds: float = WINDOW_SECONDS,
        auto_fill: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.slots = int(slots)
        self.default_ceiling = int(default_ceiling)
        self.ceilings = {item_key(k): int(v) for k, v in (ceilings or {}).items()}
        self.window_seconds = float(window_seconds)
        self.auto_fill = auto_fill
        self._clock = clock
        self._lock = threading.Lock()

        self.is_open = False
        self.open_calls = 0
        self.close_calls = 0
        self.orders: list[PaperOrder] = []
        self.history: list[PaperOrder] = []
        self._holdings: dict[str, int] = defaultdict(int)
        self._volume: dict[str, deque[tuple[float, int]]] = defaultdict(deque)
        self._scripted: dict[str, deque[Outcome]] = defaultdict(deque)

    # ----- test hooks -----

    def script(self, item: str, *outcomes: Outcome) -> None:
        """Queue outcomes returned (in order) by the next place_buy/place_sell calls for an item."""
        self._scripted[item_key(item)].extend(outcomes)

    def give(self, item: str, qty: int) -> None:
        with self._lock:
            self._holdings[item_key(item)] += int(qty)

    # ----- venue primitives -----

    def ensure_open(self) -> bool:
        self.open_calls += 1
        self.is_open = True
        return True

    def close(self) -> None:
        self.close_calls += 1
        self.is_open = False

    def free_slots(self) -> int:
        with self._lock:
            return max(0, self.slots - len(self.orders))

    def capital_in_flight(self) -> int:
        with self._lock:
            return sum(o.price * o.qty for o in self.orders if o.side == "BUY")

    def _window_volume(self, key: str) -> int:
        cutoff = self._clock() - self.window_seconds
        q = self._volume[key]
        while q and q[0][0] <= cutoff:
            q.popleft()
        return sum(qty for _, qty in q)

    def _take_scripted(self, key: str) -> Outcome | None:
        q = self._scripted.get(key)
        if q:
            return q.popleft()
        return None

    def place_buy(self, item: str, price: int, qty: int) -> BuyOutcome:
        key = item_key(item)
        with self._lock:
            scripted = self._take_scripted(key)
            if scripted is not None and scripted != BuyOutcome.PLACED:
                logger.debug("Scripted buy outcome for %s: %s", item, scripted)
                return BuyOutcome(scripted.value)
            if qty <= 0 or price <= 0 or len(self.orders) >= self.slots:
                return BuyOutcome.FAILED
            ceiling = self.ceilings.get(key, self.default_ceiling)
            if self._window_volume(key) + qty > ceiling:
                return BuyOutcome.CAPACITY_EXHAUSTED
            self._volume[key].append((self._clock(), int(qty)))
            order = PaperOrder(item, "BUY", int(price), int(qty), filled=self.auto_fill)
            self.orders.append(order)
            self.history.append(order)
        return BuyOutcome.PLACED

    def place_sell(self, item: str, price: int, qty: int) -> SellOutcome:
        key = item_key(item)
        with self._lock:
            scripted = self._take_scripted(key)
            if scripted is not None and scripted != SellOutcome.PLACED:
                logger.debug("Scripted sell outcome for %s: %s", item, scripted)
                return SellOutcome.FAILED
            if qty <= 0 or price <= 0 or len(self.orders) >= self.slots:
                return SellOutcome.FAILED
            if self._holdings[key] < qty:
                return SellOutcome.FAILED
            # Units leave the inventory as soon as they are listed.
            self._holdings[key] -= int(qty)
            order = PaperOrder(item, "SELL", int(price), int(qty), filled=self.auto_fill)
            self.orders.append(order)
            self.history.append(order)
        return SellOutcome.PLACED

    def collect(self) -> None:
        with self._lock:
            pending: list[PaperOrder] = []
            for o in self.orders:
                if not o.filled:
                    pending.append(o)
                elif o.side == "BUY":
                    self._holdings[item_key(o.item)] += o.qty
            self.orders = pending

    def holdings_count(self, item: str) -> int:
        with self._lock:
            return int(self._holdings.get(item_key(item), 0))

    def orders_settled(self, item: str) -> bool:
        key = item_key(item)
        with self._lock:
            return all(o.filled for o in self.orders if item_key(o.item) == key)
