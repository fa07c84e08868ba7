from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    outcome: T
    price: int
    attempts: int


class RetryPolicy:
    """
    Bounded retry for a single order request.

    Attempt n waits `base_delay * n` plus up to `jitter` seconds. From the
    second attempt onward the price may be nudged by `nudge_pct` (at least
    one unit): up for buys, down for sells.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        jitter: float = 0.5,
        nudge_pct: float = 0.01,
        nudge_probability: float = 0.3,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = int(max_attempts)
        self.base_delay = float(base_delay)
        self.jitter = float(jitter)
        self.nudge_pct = float(nudge_pct)
        self.nudge_probability = float(nudge_probability)
        self.rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: dict,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> RetryPolicy:
        r = ((config.get("execution") or {}).get("retry") or {}) if isinstance(config, dict) else {}
        return cls(
            max_attempts=int(r.get("max_attempts", 3)),
            base_delay=float(r.get("base_delay_seconds", 0.5)),
            jitter=float(r.get("jitter_seconds", 0.5)),
            nudge_pct=float(r.get("nudge_pct", 0.01)),
            nudge_probability=float(r.get("nudge_probability", 0.3)),
            rng=rng,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt + self.rng.uniform(0.0, self.jitter)

    def nudge(self, price: int, *, upward: bool) -> int:
        step = max(1, int(round(price * self.nudge_pct)))
        if upward:
            return price + step
        return max(1, price - step)

    def execute(
        self,
        attempt_fn: Callable[[int], T],
        price: int,
        *,
        is_success: Callable[[T], bool],
        is_terminal: Callable[[T], bool] = lambda _: False,
        upward: bool = True,
    ) -> RetryResult[T]:
        """
        Call attempt_fn(price) until it succeeds, returns a terminal outcome
        or attempts run out.
        """
        outcome: T | None = None
        attempt = 0
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self._sleep(self.delay_for(attempt - 1))
                if self.rng.random() < self.nudge_probability:
                    nudged = self.nudge(price, upward=upward)
                    if nudged != price:
                        logger.debug(f"Nudging price {price} -> {nudged} on attempt {attempt}")
                    price = nudged
            outcome = attempt_fn(price)
            if is_success(outcome) or is_terminal(outcome):
                break
            logger.debug(f"Attempt {attempt}/{self.max_attempts} at {price} returned {outcome}")
        assert outcome is not None
        return RetryResult(outcome=outcome, price=price, attempts=attempt)
