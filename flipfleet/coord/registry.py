from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from flipfleet.domain.models import item_key

# Server-side TTL: the 4h venue window plus a grace period for clock drift.
REGISTRY_TTL_SECONDS = 4 * 3600 + 5 * 60


@dataclass(frozen=True)
class RegistryEntry:
    item: str
    account: str
    reported_at: float


class CoordinationRegistry:
    """
    In-memory item -> (owner, reported_at) map behind the coordinator service.

    One entry per item: a later report from any agent replaces the earlier one.
    Expired entries are purged when the list is read.
    """

    def __init__(self, ttl_seconds: float = REGISTRY_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, RegistryEntry] = {}
        self.started_at = clock()
        self.total_requests = 0

    def count_request(self) -> None:
        with self._lock:
            self.total_requests += 1

    def report(self, item: str, account: str) -> RegistryEntry:
        entry = RegistryEntry(item=str(item), account=str(account), reported_at=self._clock())
        with self._lock:
            self._entries[item_key(item)] = entry
        return entry

    def live(self) -> list[dict[str, Any]]:
        """Live entries as wire dicts (age in whole seconds); expired ones are dropped on the way."""
        now = self._clock()
        out: list[dict[str, Any]] = []
        with self._lock:
            for key in list(self._entries):
                e = self._entries[key]
                age = now - e.reported_at
                if age > self.ttl_seconds:
                    del self._entries[key]
                    continue
                out.append({"item": e.item, "account": e.account, "age": int(max(0.0, age))})
        return out

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def uptime_seconds(self) -> int:
        return int(self._clock() - self.started_at)

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
        return n

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            items = [
                {"item": e.item, "account": e.account, "ageSeconds": int(max(0.0, now - e.reported_at))}
                for e in self._entries.values()
            ]
            total = self.total_requests
        return {
            "uptime": self.uptime_seconds(),
            "totalRequests": total,
            "blockedItems": len(items),
            "items": items,
        }
