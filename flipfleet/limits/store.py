from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Callable

from flipfleet.limits.tracker import LimitTracker
from flipfleet.utils.files import atomic_write_json

logger = logging.getLogger(__name__)

_RE_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def _safe_name(agent_id: str) -> str:
    return _RE_UNSAFE.sub("_", str(agent_id or "agent")) or "agent"


class LimitStore:
    """
    Per-agent persistence for the limit ledger.

    File: <data_dir>/limits/<agent>.json, format {"<item>": <unblock epoch seconds>}.
    """

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)

    def path_for(self, agent_id: str) -> Path:
        return self.data_dir / "limits" / f"{_safe_name(agent_id)}.json"

    def load(self, agent_id: str, *, clock: Callable[[], float] = time.time) -> LimitTracker:
        """Load the ledger; any failure yields an empty tracker rather than stopping the agent."""
        tracker = LimitTracker(clock=clock)
        path = self.path_for(agent_id)
        if not path.exists():
            logger.info("No saved limits found for %s", agent_id)
            return tracker

        try:
            with path.open("r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load limits for %s: %s", agent_id, e)
            return tracker

        if not isinstance(doc, dict):
            logger.warning("Ignoring limits file for %s: expected an object, got %s", agent_id, type(doc).__name__)
            return tracker

        restored = 0
        for item, until in doc.items():
            try:
                tracker.restore(str(item), int(until))
                restored += 1
            except (TypeError, ValueError):
                logger.debug("Skipping invalid limit entry %r=%r", item, until)
        logger.info("Loaded %s limit blocks for %s", restored, agent_id)
        return tracker

    def save(self, agent_id: str, tracker: LimitTracker) -> Path:
        """Persist the still-active blocks."""
        path = self.path_for(agent_id)
        snapshot = tracker.active_blocks()
        atomic_write_json(path, snapshot)
        logger.info("Saved %s limit blocks for %s", len(snapshot), agent_id)
        return path
