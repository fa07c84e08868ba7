from __future__ import annotations

from typing import Protocol

from flipfleet.domain.models import BuyOutcome, SellOutcome


class VenuePort(Protocol):
    """Low-level trading venue primitives consumed by the probe, executor and state machine."""

    def ensure_open(self) -> bool: ...

    def close(self) -> None: ...

    def free_slots(self) -> int: ...

    def capital_in_flight(self) -> int: ...

    def place_buy(self, item: str, price: int, qty: int) -> BuyOutcome: ...

    def place_sell(self, item: str, price: int, qty: int) -> SellOutcome: ...

    def collect(self) -> None: ...

    def holdings_count(self, item: str) -> int: ...

    def orders_settled(self, item: str) -> bool: ...


class BankPort(Protocol):
    def bank_all(self) -> bool: ...


class NavigatorPort(Protocol):
    def travel_to_venue(self) -> bool: ...
