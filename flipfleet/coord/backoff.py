from __future__ import annotations

import logging
import random
import time
from typing import Callable

logger = logging.getLogger(__name__)


class Backoff:
    """
    Exponential backoff with jitter.

    Doubles the delay on each failure up to `max_delay`. Jitter adds up to 30%
    on top, drawn from the agent's generator so two agents started together do
    not retry in lockstep.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        *,
        jitter: float = 0.3,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.initial_delay = float(initial_delay)
        self.max_delay = float(max_delay)
        self.jitter = float(jitter)
        self.rng = rng or random.Random()
        self._sleep = sleep
        self.current_delay = self.initial_delay
        self.attempts = 0

    def reset(self) -> None:
        self.current_delay = self.initial_delay
        self.attempts = 0

    def increase(self) -> None:
        self.attempts += 1
        self.current_delay = min(self.current_delay * 2, self.max_delay)
        logger.debug("Backoff increased to %.2fs (attempt %s)", self.current_delay, self.attempts)

    def next_delay(self) -> float:
        return self.current_delay + self.rng.random() * self.current_delay * self.jitter

    def sleep(self) -> float:
        delay = self.next_delay()
        self._sleep(delay)
        return delay

    def should_give_up(self, max_attempts: int) -> bool:
        return self.attempts >= int(max_attempts)
