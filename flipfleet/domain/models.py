from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OrderResult(str, Enum):
    OK = "OK"
    CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"
    FAILED = "FAILED"


class BuyOutcome(str, Enum):
    PLACED = "PLACED"
    CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"
    FAILED = "FAILED"


class SellOutcome(str, Enum):
    PLACED = "PLACED"
    FAILED = "FAILED"


class RiskCategory(str, Enum):
    SKIP = "SKIP"
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Phase(str, Enum):
    IDLE = "IDLE"
    TRAVEL = "TRAVEL"
    PROBE = "PROBE"
    BUY = "BUY"
    SELL = "SELL"
    BANK = "BANK"
    COOLDOWN = "COOLDOWN"
    ROTATE = "ROTATE"


def item_key(name: str) -> str:
    """Case-folded key used wherever items are compared by name."""
    return str(name or "").strip().casefold()


@dataclass
class TradeProfile:
    """
    Per-item trading parameters.

    The raw estimates come from the catalog export; the guardrails are derived
    once at load time. The last_probe_* fields are written only by the margin
    probe after a successful round trip.
    """

    name: str
    item_id: int | None
    est_buy: int
    est_sell: int
    rise_probability: float
    liquidity: float
    horizon_minutes: int
    max_buy: int
    min_sell: int
    max_qty_per_cycle: int
    probe_qty: int
    min_margin: int
    last_probe_buy: int | None = None
    last_probe_sell: int | None = None
    last_probe_at: float | None = None

    @property
    def key(self) -> str:
        return item_key(self.name)

    def has_probe(self) -> bool:
        return self.last_probe_buy is not None and self.last_probe_sell is not None

    def buy_price(self) -> int:
        """Best buy price: the probed price (capped by the guardrail) when we have one."""
        if self.last_probe_buy is not None and self.last_probe_buy > 0:
            return min(self.last_probe_buy, self.max_buy)
        return self.est_buy

    def sell_price(self) -> int:
        if self.last_probe_sell is not None and self.last_probe_sell > 0:
            return max(self.last_probe_sell, self.min_sell)
        return self.est_sell

    def margin(self) -> int:
        return self.sell_price() - self.buy_price()

    def record_probe(self, buy: int, sell: int, at: float | None = None) -> None:
        self.last_probe_buy = int(buy)
        self.last_probe_sell = int(sell)
        self.last_probe_at = float(at if at is not None else time.time())

    def __str__(self) -> str:
        return f"{self.name} (buy {self.buy_price()}, sell {self.sell_price()}, margin {self.margin()})"


@dataclass(frozen=True)
class CoordinationEntry:
    item: str
    owner: str
    expires_at: float
    reported_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at

    def owned_by(self, agent_id: str) -> bool:
        return item_key(self.owner) == item_key(agent_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "account": self.owner,
            "expiresAt": int(self.expires_at),
            "reportedAt": int(self.reported_at),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CoordinationEntry:
        return cls(
            item=str(d["item"]),
            owner=str(d["account"]),
            expires_at=float(d["expiresAt"]),
            reported_at=float(d.get("reportedAt") or 0.0),
        )


@dataclass(frozen=True)
class ExecutionReport:
    """Outcome of one bulk buy/sell pass; `result` is the tri-state the state machine acts on."""

    result: OrderResult
    placed_qty: int = 0
    price: int = 0

    @property
    def ok(self) -> bool:
        return self.result == OrderResult.OK


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    reason: str
    buy_price: int | None = None
    sell_price: int | None = None
    filled_qty: int = 0
    residual_qty: int = 0

    @property
    def margin(self) -> int | None:
        if self.buy_price is None or self.sell_price is None:
            return None
        return self.sell_price - self.buy_price


@dataclass
class CycleStats:
    """Counters the runner logs periodically."""

    cycles: int = 0
    trades: int = 0
    probes_ok: int = 0
    probes_failed: int = 0
    capacity_hits: int = 0
    failures: int = 0
    takeovers: int = 0
    last_item: str | None = None
    by_phase: dict[str, int] = field(default_factory=dict)

    def bump_phase(self, phase: Phase) -> None:
        self.by_phase[phase.value] = self.by_phase.get(phase.value, 0) + 1
