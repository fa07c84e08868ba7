"""
Local per-item cool-down ledger.

Keys are case-folded item names, values are unblock times in epoch seconds.
Expiry is evaluated when asked; nothing sweeps the ledger in the background.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from flipfleet.domain.models import item_key

BLOCK_SECONDS = 4 * 3600


class LimitTracker:
    def __init__(self, clock: Callable[[], float] = time.time, block_seconds: int = BLOCK_SECONDS):
        self._clock = clock
        self.block_seconds = int(block_seconds)
        self._blocked_until: dict[str, int] = {}
        # The control loop is the only writer, but snapshots may be taken from a saver thread.
        self._lock = threading.Lock()

    def _now(self) -> int:
        return int(self._clock())

    def is_blocked(self, item: str) -> bool:
        with self._lock:
            until = self._blocked_until.get(item_key(item))
        return until is not None and self._now() < until

    def block(self, item: str) -> int:
        until = self._now() + self.block_seconds
        with self._lock:
            self._blocked_until[item_key(item)] = until
        return until

    def remaining_seconds(self, item: str) -> int:
        with self._lock:
            until = self._blocked_until.get(item_key(item))
        if until is None:
            return 0
        return max(0, until - self._now())

    def format_remaining(self, item: str) -> str:
        seconds = self.remaining_seconds(item)
        if seconds == 0:
            return "Not blocked"
        hours, rest = divmod(seconds, 3600)
        minutes = rest // 60
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"

    def active_blocks(self) -> dict[str, int]:
        """Unexpired records only (a filtered copy; the ledger itself is untouched)."""
        now = self._now()
        with self._lock:
            return {k: v for k, v in self._blocked_until.items() if now < v}

    def unblock(self, item: str) -> None:
        with self._lock:
            self._blocked_until.pop(item_key(item), None)

    def clear(self) -> None:
        with self._lock:
            self._blocked_until.clear()

    # Persistence hooks (see limits.store)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._blocked_until)

    def restore(self, item: str, until_epoch: int) -> None:
        with self._lock:
            self._blocked_until[item_key(item)] = int(until_epoch)
