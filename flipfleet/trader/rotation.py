from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Iterable

from flipfleet.domain.models import TradeProfile
from flipfleet.limits.tracker import LimitTracker

logger = logging.getLogger(__name__)

TAKEOVER_WINDOW = 3
RANDOM_TOP_K = 10
HIGH_MARGIN_FACTOR = 1.5


@dataclass
class PrioritizedQueue:
    """Items in trading order; `takeover` is how many at the front another agent has exhausted."""

    items: list[TradeProfile] = field(default_factory=list)
    takeover: int = 0
    high_margin: int = 0

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)


def build_queue(
    profiles: Iterable[TradeProfile],
    limits: LimitTracker,
    blocked_by_others: set[str],
) -> PrioritizedQueue:
    """
    Drop what we are blocked on, then order: takeovers, high-margin, regular.

    Each group is sorted by margin, best first. The sort is stable so equal
    margins keep catalog order.
    """
    takeover: list[TradeProfile] = []
    high: list[TradeProfile] = []
    regular: list[TradeProfile] = []

    for p in profiles:
        if limits.is_blocked(p.name):
            logger.debug("Skipping %s: blocked locally", p.name)
            continue
        if p.key in blocked_by_others:
            takeover.append(p)
        elif p.margin() >= p.min_margin * HIGH_MARGIN_FACTOR:
            high.append(p)
        else:
            regular.append(p)

    for group in (takeover, high, regular):
        group.sort(key=lambda p: p.margin(), reverse=True)

    logger.info(
        "Queue: %s takeovers, %s high-margin, %s regular", len(takeover), len(high), len(regular)
    )
    return PrioritizedQueue(items=takeover + high + regular, takeover=len(takeover), high_margin=len(high))


def select_next(
    queue: PrioritizedQueue,
    limits: LimitTracker,
    rng: random.Random,
    *,
    takeover_window: int = TAKEOVER_WINDOW,
    top_k: int = RANDOM_TOP_K,
) -> tuple[TradeProfile | None, bool]:
    """
    Pick the next item. Returns (profile, is_takeover).

    Takeovers at the front win; otherwise a random pick among the first
    `top_k` keeps the trading pattern from being predictable.
    """
    if not queue:
        return None, False

    for p in queue.items[: min(takeover_window, queue.takeover)]:
        if not limits.is_blocked(p.name):
            logger.info("Selected takeover item: %s", p.name)
            return p, True

    pick_from = min(top_k, len(queue.items))
    for _ in range(pick_from):
        p = queue.items[rng.randrange(pick_from)]
        if not limits.is_blocked(p.name):
            logger.info("Selected item (random from top %s): %s", pick_from, p.name)
            return p, False

    logger.warning("All candidate items are blocked locally")
    return None, False
