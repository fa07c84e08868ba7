"""
Failure taxonomy for the trading core.

Everything below the state machine raises (or returns) one of these and the
state machine decides whether to skip, retry or rotate. None of them are meant
to escape an agent's control loop.
"""

from __future__ import annotations

from typing import Any


class FlipFleetError(Exception):
    """Base class for trading-core failures."""


class TransientExecutionFailure(FlipFleetError):
    """An order was rejected or timed out; retry with backoff, then skip the cycle."""


class CapacityExhausted(FlipFleetError):
    """The venue refused more volume for an item on this account (a signal, not a fault)."""

    def __init__(self, item: str, message: str | None = None):
        super().__init__(message or f"Trade volume ceiling reached for {item}")
        self.item = item


class CoordinationUnavailable(FlipFleetError):
    """The coordination transport could not be reached or returned garbage."""


class StaleDataRejected(FlipFleetError):
    """A probe disagreed with the cached margin estimate. `observed` carries what the probe saw."""

    def __init__(self, message: str, observed: Any = None):
        super().__init__(message)
        self.observed = observed


class ConfigurationInvalid(FlipFleetError, ValueError):
    """A catalog row or config value failed validation."""
