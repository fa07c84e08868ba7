from __future__ import annotations

import logging
import math
import threading
from typing import Any, Iterable, Iterator, Mapping

from flipfleet.domain.models import TradeProfile, item_key
from flipfleet.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

# Prices above this are almost certainly a bad export row.
SUSPICIOUS_PRICE = 1_000_000_000


def _to_int(v: Any, *, name: str) -> int:
    try:
        f = float(v)
    except (TypeError, ValueError) as e:
        raise ConfigurationInvalid(f"{name} is not a number: {v!r}") from e
    if math.isnan(f) or math.isinf(f):
        raise ConfigurationInvalid(f"{name} is not finite: {v!r}")
    return int(round(f))


def _to_float(v: Any, default: float) -> float:
    if v is None or v == "":
        return default
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    if math.isnan(f) or math.isinf(f):
        return default
    return f


def _optional_int(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if math.isnan(f):
        return None
    return int(f)


def probe_quantity_for(est_buy: int) -> int:
    if est_buy > 5000:
        return 1
    if est_buy > 1000:
        return 2
    if est_buy > 200:
        return 5
    return 10


def profile_from_row(row: Mapping[str, Any]) -> TradeProfile:
    """
    Validate one raw catalog row and derive its guardrails.

    Raises ConfigurationInvalid for rows that must be dropped.
    """
    if not isinstance(row, Mapping):
        raise ConfigurationInvalid(f"row is not a mapping: {type(row).__name__}")
    name = str(row.get("name") or "").strip()
    if not name:
        raise ConfigurationInvalid("empty item name")

    est_buy = _to_int(row.get("est_buy"), name="est_buy")
    est_sell = _to_int(row.get("est_sell"), name="est_sell")
    if est_buy <= 0 or est_sell <= 0:
        raise ConfigurationInvalid(f"{name}: non-positive prices buy={est_buy} sell={est_sell}")

    if est_sell <= est_buy:
        # Kept: a probe may still find a real spread.
        logger.warning("%s has a non-positive estimated margin: buy=%s sell=%s", name, est_buy, est_sell)
    if est_buy > SUSPICIOUS_PRICE or est_sell > SUSPICIOUS_PRICE:
        logger.warning("Suspicious price for %s (buy=%s sell=%s)", name, est_buy, est_sell)

    rise_probability = min(1.0, max(0.0, _to_float(row.get("rise_probability"), 0.5)))
    liquidity = max(0.0, _to_float(row.get("liquidity"), 0.0))
    horizon = int(round(_to_float(row.get("horizon_minutes"), 60.0)))
    expected_profit = _to_float(row.get("expected_profit"), float(max(1, est_sell - est_buy)))

    max_buy = int(math.ceil(est_buy * 1.01))
    min_sell = int(math.floor(est_sell * 0.99))
    max_qty = max(100, min(10_000, int(round(liquidity * 0.2))))
    min_margin = max(2, int(round(expected_profit * 0.5)))

    return TradeProfile(
        name=name,
        item_id=_optional_int(row.get("id")),
        est_buy=est_buy,
        est_sell=est_sell,
        rise_probability=rise_probability,
        liquidity=liquidity,
        horizon_minutes=horizon,
        max_buy=max(max_buy, est_buy),
        min_sell=min(min_sell, est_sell),
        max_qty_per_cycle=max_qty,
        probe_qty=probe_quantity_for(est_buy),
        min_margin=min_margin,
    )


class Catalog:
    """
    The agent's working set of trade profiles.

    Profiles are shared objects: the margin probe updates them in place, so a
    snapshot list taken by the state machine still sees fresh probe data.
    Replacing the whole list (hot reload) happens under a lock.
    """

    def __init__(self, profiles: Iterable[TradeProfile] | None = None):
        self._lock = threading.Lock()
        self._profiles: list[TradeProfile] = list(profiles or [])

    @classmethod
    def load(cls, raw_rows: Iterable[Mapping[str, Any]]) -> Catalog:
        profiles: list[TradeProfile] = []
        seen: set[str] = set()
        dropped = 0
        for line_no, row in enumerate(raw_rows, start=1):
            try:
                profile = profile_from_row(row)
            except ConfigurationInvalid as e:
                dropped += 1
                logger.warning("Catalog row %s dropped: %s", line_no, e)
                continue
            if profile.key in seen:
                dropped += 1
                logger.warning("Catalog row %s dropped: duplicate item %s", line_no, profile.name)
                continue
            seen.add(profile.key)
            profiles.append(profile)

        if not profiles:
            logger.error("Catalog loaded but no valid items found (%s rows dropped)", dropped)
        else:
            logger.info("Loaded %s catalog items (%s rows dropped)", len(profiles), dropped)
        return cls(profiles)

    def snapshot(self) -> list[TradeProfile]:
        with self._lock:
            return list(self._profiles)

    def replace(self, profiles: Iterable[TradeProfile]) -> None:
        """Swap in a new profile list, keeping probe results for items that survive."""
        new_profiles = list(profiles)
        with self._lock:
            old = {p.key: p for p in self._profiles}
            for p in new_profiles:
                prev = old.get(p.key)
                if prev is not None and prev.has_probe() and not p.has_probe():
                    p.last_probe_buy = prev.last_probe_buy
                    p.last_probe_sell = prev.last_probe_sell
                    p.last_probe_at = prev.last_probe_at
            self._profiles = new_profiles
        logger.info("Catalog replaced with %s items", len(new_profiles))

    def get(self, name: str) -> TradeProfile | None:
        key = item_key(name)
        with self._lock:
            for p in self._profiles:
                if p.key == key:
                    return p
        return None

    def filter_unprofitable(self, tax_rate: float = 0.01) -> int:
        """Drop items whose margin after the sell-side tax is below their minimum. Returns how many were dropped."""
        with self._lock:
            kept: list[TradeProfile] = []
            for p in self._profiles:
                tax = int(p.est_sell * float(tax_rate))
                net = p.est_sell - p.est_buy - tax
                if net >= p.min_margin:
                    kept.append(p)
                else:
                    logger.debug("Filtered unprofitable: %s (net %s < min %s)", p.name, net, p.min_margin)
            dropped = len(self._profiles) - len(kept)
            self._profiles = kept
        logger.info("Filtered %s unprofitable items after %.1f%% tax; %s remain", dropped, tax_rate * 100, len(kept))
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)

    def __iter__(self) -> Iterator[TradeProfile]:
        return iter(self.snapshot())
