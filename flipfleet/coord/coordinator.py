from __future__ import annotations

import logging
import time
from typing import Any, Callable

from flipfleet.coord.transports import CoordinationTransport
from flipfleet.domain.models import CoordinationEntry, item_key
from flipfleet.errors import CoordinationUnavailable

logger = logging.getLogger(__name__)

COORDINATION_TTL_SECONDS = 4 * 3600


class Coordinator:
    """
    Advisory sharing of "I hit the ceiling on X" between sibling agents.

    Nothing here is authoritative. When the transport is down the coordinator
    answers with an empty set, which means "no known opportunities" and never
    "everything is blocked".
    """

    def __init__(
        self,
        agent_id: str,
        transport: CoordinationTransport,
        *,
        ttl_seconds: float = COORDINATION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.agent_id = str(agent_id)
        self.transport = transport
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self.reports_sent = 0
        self.reports_failed = 0

    def report(self, item: str) -> bool:
        now = self._clock()
        entry = CoordinationEntry(item=str(item), owner=self.agent_id, expires_at=now + self.ttl_seconds, reported_at=now)
        try:
            self.transport.upsert(entry)
        except CoordinationUnavailable as e:
            self.reports_failed += 1
            logger.warning("Could not share limit on %s via %s: %s", item, self.transport.name, e)
            return False
        self.reports_sent += 1
        logger.info("Shared limit on %s with other agents", item)
        return True

    def blocked_with_owners(self) -> dict[str, str]:
        """Case-folded item -> owner for live entries reported by other agents."""
        try:
            entries = self.transport.live_entries()
        except CoordinationUnavailable as e:
            logger.warning("Coordination lookup failed via %s: %s", self.transport.name, e)
            return {}
        now = self._clock()
        return {item_key(e.item): e.owner for e in entries if e.is_live(now) and not e.owned_by(self.agent_id)}

    def blocked_by_others(self) -> set[str]:
        return set(self.blocked_with_owners())

    def is_available(self) -> bool:
        return bool(self.transport.available)

    def health(self) -> dict[str, Any]:
        try:
            reachable = bool(self.transport.ping())
        except CoordinationUnavailable:
            reachable = False
        return {
            "transport": self.transport.name,
            "available": reachable,
            "reportsSent": self.reports_sent,
            "reportsFailed": self.reports_failed,
        }


class NullTransport:
    """Coordination switched off: reports go nowhere and nothing is ever blocked by others."""

    name = "disabled"

    @property
    def available(self) -> bool:
        return False

    def upsert(self, entry: CoordinationEntry) -> None:
        logger.debug("Coordination disabled; not sharing %s", entry.item)

    def live_entries(self) -> list[CoordinationEntry]:
        return []

    def ping(self) -> bool:
        return False
