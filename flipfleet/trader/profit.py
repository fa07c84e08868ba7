from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import pandas as pd

from flipfleet.domain.models import item_key

logger = logging.getLogger(__name__)

MILESTONES = (100_000, 500_000, 1_000_000, 5_000_000, 10_000_000, 50_000_000, 100_000_000)


@dataclass
class _Position:
    held: int = 0
    cost: int = 0  # total cost of the units still held


@dataclass
class ProfitTracker:
    """
    Running profit and trade log for one agent.

    Realized profit is booked on sells against the average cost of the units
    held for that item. Sells beyond what we bought (leftover inventory from a
    previous run) are logged but book no profit.
    """

    clock: Callable[[], float] = time.time
    started_at: float = field(default=0.0)
    realized: int = 0
    total_bought: int = 0
    total_sold: int = 0
    _positions: dict[str, _Position] = field(default_factory=dict, repr=False)
    _trades: list[dict[str, Any]] = field(default_factory=list, repr=False)
    _last_milestone: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = self.clock()

    def record_buy(self, item: str, qty: int, price: int) -> None:
        if qty <= 0:
            return
        with self._lock:
            pos = self._positions.setdefault(item_key(item), _Position())
            pos.held += int(qty)
            pos.cost += int(qty) * int(price)
            self.total_bought += int(qty)
            self._trades.append(
                {"ts": self.clock(), "item": item, "side": "BUY", "qty": int(qty), "price": int(price), "profit": 0}
            )

    def record_sell(self, item: str, qty: int, price: int) -> int:
        """Book a sell and return the profit it realized."""
        if qty <= 0:
            return 0
        with self._lock:
            pos = self._positions.setdefault(item_key(item), _Position())
            matched = min(int(qty), pos.held)
            profit = 0
            if matched > 0:
                avg_cost = pos.cost / pos.held
                profit = int(round(matched * (int(price) - avg_cost)))
                pos.cost -= int(round(avg_cost * matched))
                pos.held -= matched
            self.total_sold += int(qty)
            self.realized += profit
            self._trades.append(
                {"ts": self.clock(), "item": item, "side": "SELL", "qty": int(qty), "price": int(price), "profit": profit}
            )
        self._check_milestone()
        return profit

    def _check_milestone(self) -> None:
        for m in MILESTONES:
            if self.realized >= m > self._last_milestone:
                self._last_milestone = m
                logger.info(f"Milestone reached: {m:,} profit")

    def runtime_seconds(self) -> float:
        return max(0.0, self.clock() - self.started_at)

    def profit_per_hour(self) -> int:
        hours = self.runtime_seconds() / 3600.0
        if hours <= 0:
            return 0
        return int(self.realized / hours)

    def trades_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._trades)
        return pd.DataFrame(rows, columns=["ts", "item", "side", "qty", "price", "profit"])

    def summary_frame(self) -> pd.DataFrame:
        """Per-item totals, most profitable first."""
        df = self.trades_frame()
        if df.empty:
            return pd.DataFrame(columns=["item", "bought", "sold", "spent", "received", "profit"])
        df["value"] = df["qty"] * df["price"]
        buys = df[df["side"] == "BUY"]
        sells = df[df["side"] == "SELL"]
        out = pd.DataFrame(
            {
                "bought": buys.groupby("item")["qty"].sum(),
                "sold": sells.groupby("item")["qty"].sum(),
                "spent": buys.groupby("item")["value"].sum(),
                "received": sells.groupby("item")["value"].sum(),
                "profit": df.groupby("item")["profit"].sum(),
            }
        ).fillna(0)
        out = out.astype(int).reset_index().rename(columns={"index": "item"})
        return out.sort_values("profit", ascending=False, kind="stable").reset_index(drop=True)

    def summary(self) -> str:
        runtime = int(self.runtime_seconds())
        h, rest = divmod(runtime, 3600)
        m = rest // 60
        return (
            f"P: {self.realized:,}  |  {self.profit_per_hour():,}/h  |  "
            f"B:{self.total_bought} S:{self.total_sold}  |  {h}h {m}m"
        )
