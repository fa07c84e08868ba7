"""
Interchangeable transports for the coordinator.

Every transport exposes the same small contract (`upsert`, `live_entries`,
`ping`, `available`) and signals any failure with CoordinationUnavailable.
The coordinator turns that into "no information"; transports never decide
what an outage means for trading.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import random
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

import requests

from flipfleet.coord.backoff import Backoff
from flipfleet.coord.registry import REGISTRY_TTL_SECONDS, CoordinationRegistry
from flipfleet.domain.models import CoordinationEntry, item_key
from flipfleet.errors import CoordinationUnavailable
from flipfleet.utils.files import atomic_write_json

logger = logging.getLogger(__name__)


class CoordinationTransport(Protocol):
    name: str

    @property
    def available(self) -> bool: ...

    def upsert(self, entry: CoordinationEntry) -> None: ...

    def live_entries(self) -> list[CoordinationEntry]: ...

    def ping(self) -> bool: ...


# -------------------
# (a) Networked service
# -------------------


class HttpTransport:
    """
    Client for the coordinator service (see flipfleet.api.app).

    Failures grow an exponential backoff; until it elapses calls fail fast
    without touching the network. After `max_failures` consecutive failures
    the transport marks itself unavailable and only re-probes /health every
    `reprobe_seconds`.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        max_failures: int = 3,
        report_attempts: int = 3,
        reprobe_seconds: float = 60.0,
        server_ttl_seconds: float = REGISTRY_TTL_SECONDS,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        session: requests.Session | None = None,
        user_agent: str = "FlipFleet/1.0",
    ):
        self.base_url = str(base_url).rstrip("/")
        self.timeout = float(timeout)
        self.max_failures = int(max_failures)
        self.report_attempts = int(report_attempts)
        self.reprobe_seconds = float(reprobe_seconds)
        self.server_ttl_seconds = float(server_ttl_seconds)
        self._clock = clock
        self.backoff = Backoff(1.0, 30.0, rng=rng, sleep=sleep)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

        self._available = True
        self._consecutive_failures = 0
        self._next_attempt_at = 0.0
        self._last_health_check = 0.0

    @property
    def available(self) -> bool:
        return self._available

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object from {path}; got {type(data).__name__}")
        return data

    def _record_success(self) -> None:
        if not self._available:
            logger.info("Coordinator at %s is reachable again", self.base_url)
        self._available = True
        self._consecutive_failures = 0
        self._next_attempt_at = 0.0
        self.backoff.reset()

    def _record_failure(self, exc: BaseException) -> None:
        self._consecutive_failures += 1
        self.backoff.increase()
        self._next_attempt_at = self._clock() + self.backoff.next_delay()
        if self._available and self._consecutive_failures >= self.max_failures:
            self._available = False
            self._last_health_check = self._clock()
            logger.error(
                "Coordinator at %s unavailable after %s consecutive failures (last: %s)",
                self.base_url,
                self._consecutive_failures,
                exc,
            )

    def _gate(self) -> None:
        """Fail fast while backing off, and re-probe an unavailable service on the slow cadence."""
        now = self._clock()
        if not self._available:
            if now - self._last_health_check < self.reprobe_seconds:
                raise CoordinationUnavailable(f"Coordinator {self.base_url} marked unavailable")
            if not self.ping():
                raise CoordinationUnavailable(f"Coordinator {self.base_url} still unreachable")
            return
        if now < self._next_attempt_at:
            raise CoordinationUnavailable(f"Backing off coordinator calls for {self._next_attempt_at - now:.1f}s")

    def upsert(self, entry: CoordinationEntry) -> None:
        self._gate()
        last_exc: BaseException | None = None
        for attempt in range(1, self.report_attempts + 1):
            try:
                self._get("/report", {"item": entry.item, "account": entry.owner})
                self._record_success()
                return
            except (requests.RequestException, ValueError) as e:
                last_exc = e
                self._record_failure(e)
                logger.warning("Coordinator report failed (attempt %s/%s): %s", attempt, self.report_attempts, e)
                if not self._available:
                    break
                if attempt < self.report_attempts:
                    self.backoff.sleep()
        raise CoordinationUnavailable(f"Report of {entry.item} failed: {last_exc}") from last_exc

    def live_entries(self) -> list[CoordinationEntry]:
        self._gate()
        try:
            data = self._get("/list")
            rows = data.get("blocked") or []
            if not isinstance(rows, list):
                raise ValueError("'blocked' must be a list")
            now = self._clock()
            entries: list[CoordinationEntry] = []
            for row in rows:
                reported_at = now - float(row.get("age") or 0)
                entries.append(
                    CoordinationEntry(
                        item=str(row["item"]),
                        owner=str(row["account"]),
                        expires_at=reported_at + self.server_ttl_seconds,
                        reported_at=reported_at,
                    )
                )
        except (requests.RequestException, ValueError, TypeError, KeyError, AttributeError) as e:
            self._record_failure(e)
            raise CoordinationUnavailable(f"List from {self.base_url} failed: {e}") from e
        self._record_success()
        return entries

    def ping(self) -> bool:
        self._last_health_check = self._clock()
        try:
            data = self._get("/health")
        except (requests.RequestException, ValueError) as e:
            logger.warning("Coordinator health check failed: %s", e)
            self._available = False
            return False
        ok = str(data.get("status")) == "ok"
        if ok:
            self._record_success()
        else:
            self._available = False
        return ok


# -------------------
# (b) Shared document
# -------------------


class SharedDocumentTransport:
    """
    Coordination state in a JSON document on a commonly reachable path (shared drive, NFS).

    Writes are read-modify-write, replaced atomically; an advisory lock
    serializes writers on the same host but is never waited on indefinitely.
    Reads are cached for `cache_seconds`.
    """

    name = "document"

    def __init__(
        self,
        path: str | Path,
        *,
        cache_seconds: float = 5.0,
        lock_attempts: int = 20,
        lock_wait_seconds: float = 0.05,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path)
        self.cache_seconds = float(cache_seconds)
        self.lock_attempts = int(lock_attempts)
        self.lock_wait_seconds = float(lock_wait_seconds)
        self._clock = clock
        self._sleep = sleep
        self._mutex = threading.Lock()
        self._cache: list[CoordinationEntry] | None = None
        self._cached_at = 0.0

    @property
    def available(self) -> bool:
        parent = self.path.parent
        return parent.is_dir() and os.access(parent, os.R_OK | os.W_OK)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextlib.contextmanager
    def _writer_lock(self) -> Iterator[bool]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+") as lf:
            acquired = False
            for _ in range(self.lock_attempts):
                try:
                    fcntl.flock(lf.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    acquired = True
                    break
                except BlockingIOError:
                    self._sleep(self.lock_wait_seconds)
            if not acquired:
                logger.warning("Could not lock %s; writing without it (last write wins)", self.lock_path)
            try:
                yield acquired
            finally:
                if acquired:
                    fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    def _read_document(self, *, strict: bool = True) -> list[CoordinationEntry]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                doc = json.load(f)
        except OSError as e:
            raise CoordinationUnavailable(f"Cannot read {self.path}: {e}") from e
        except ValueError as e:
            if strict:
                raise CoordinationUnavailable(f"Corrupt coordination document {self.path}: {e}") from e
            logger.warning("Overwriting corrupt coordination document %s: %s", self.path, e)
            return []

        limits = doc.get("limits") if isinstance(doc, dict) else None
        if not isinstance(limits, list):
            return []
        entries: list[CoordinationEntry] = []
        for d in limits:
            try:
                entries.append(CoordinationEntry.from_dict(d))
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.debug("Skipping malformed coordination entry: %r", d)
        return entries

    def live_entries(self) -> list[CoordinationEntry]:
        now = self._clock()
        with self._mutex:
            if self._cache is None or (now - self._cached_at) >= self.cache_seconds:
                self._cache = self._read_document()
                self._cached_at = now
            entries = list(self._cache)
        return [e for e in entries if e.is_live(now)]

    def upsert(self, entry: CoordinationEntry) -> None:
        key = item_key(entry.item)
        try:
            with self._mutex, self._writer_lock():
                now = self._clock()
                current = self._read_document(strict=False)
                kept = [e for e in current if e.is_live(now) and item_key(e.item) != key]
                kept.append(entry)
                atomic_write_json(self.path, {"limits": [e.to_dict() for e in kept]})
                self._cache = kept
                self._cached_at = now
        except OSError as e:
            raise CoordinationUnavailable(f"Cannot write {self.path}: {e}") from e

    def cleanup(self) -> int:
        """Rewrite the document without expired entries. Returns how many were removed."""
        try:
            with self._mutex, self._writer_lock():
                now = self._clock()
                current = self._read_document(strict=False)
                kept = [e for e in current if e.is_live(now)]
                removed = len(current) - len(kept)
                if removed:
                    atomic_write_json(self.path, {"limits": [e.to_dict() for e in kept]})
                    logger.info("Cleaned up %s expired coordination entries", removed)
                self._cache = kept
                self._cached_at = now
                return removed
        except OSError as e:
            raise CoordinationUnavailable(f"Cannot clean {self.path}: {e}") from e

    def ping(self) -> bool:
        return self.available


# -------------------
# In-process
# -------------------


class RegistryTransport:
    """Agents in one process sharing a CoordinationRegistry directly (also what the service wraps)."""

    name = "registry"

    def __init__(self, registry: CoordinationRegistry, clock: Callable[[], float] = time.time):
        self.registry = registry
        self._clock = clock

    @property
    def available(self) -> bool:
        return True

    def upsert(self, entry: CoordinationEntry) -> None:
        self.registry.report(entry.item, entry.owner)

    def live_entries(self) -> list[CoordinationEntry]:
        now = self._clock()
        out: list[CoordinationEntry] = []
        for row in self.registry.live():
            reported_at = now - float(row["age"])
            out.append(
                CoordinationEntry(
                    item=row["item"],
                    owner=row["account"],
                    expires_at=reported_at + self.registry.ttl_seconds,
                    reported_at=reported_at,
                )
            )
        return out

    def ping(self) -> bool:
        return True
