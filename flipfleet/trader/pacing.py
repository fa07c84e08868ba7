from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class PacingConfig:
    tick_min_seconds: float
    tick_max_seconds: float
    idle_retry_seconds: float
    cooldown_min_seconds: float
    cooldown_max_seconds: float
    break_probability: float
    break_min_seconds: float
    break_max_seconds: float
    rotate_settle_seconds: float
    fill_poll_seconds: float
    fill_max_polls: int
    travel_timeout_seconds: float


def load_pacing_config(config: dict) -> PacingConfig:
    p = (config.get("pacing") or {}) if isinstance(config, dict) else {}
    return PacingConfig(
        tick_min_seconds=float(p.get("tick_min_seconds", 0.3)),
        tick_max_seconds=float(p.get("tick_max_seconds", 0.7)),
        idle_retry_seconds=float(p.get("idle_retry_seconds", 30.0)),
        cooldown_min_seconds=float(p.get("cooldown_min_seconds", 2.0)),
        cooldown_max_seconds=float(p.get("cooldown_max_seconds", 4.0)),
        break_probability=float(p.get("break_probability", 0.02)),
        break_min_seconds=float(p.get("break_min_seconds", 30.0)),
        break_max_seconds=float(p.get("break_max_seconds", 300.0)),
        rotate_settle_seconds=float(p.get("rotate_settle_seconds", 10.0)),
        fill_poll_seconds=float(p.get("fill_poll_seconds", 5.0)),
        fill_max_polls=int(p.get("fill_max_polls", 12)),
        travel_timeout_seconds=float(p.get("travel_timeout_seconds", 60.0)),
    )


class Pacer:
    """Randomized waits for the control loop, all drawn from the agent's generator."""

    def __init__(self, cfg: PacingConfig, rng: random.Random):
        self.cfg = cfg
        self.rng = rng

    def _between(self, lo: float, hi: float) -> float:
        if hi <= lo:
            return lo
        return self.rng.uniform(lo, hi)

    def tick(self) -> float:
        return self._between(self.cfg.tick_min_seconds, self.cfg.tick_max_seconds)

    def idle_retry(self) -> float:
        return self.cfg.idle_retry_seconds

    def rotate_settle(self) -> float:
        return self.cfg.rotate_settle_seconds

    def cooldown(self) -> tuple[float, bool]:
        """Cooldown dwell, and whether a longer break was added to it."""
        dwell = self._between(self.cfg.cooldown_min_seconds, self.cfg.cooldown_max_seconds)
        if self.rng.random() < self.cfg.break_probability:
            return dwell + self._between(self.cfg.break_min_seconds, self.cfg.break_max_seconds), True
        return dwell, False
