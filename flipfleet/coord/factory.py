from __future__ import annotations

import hashlib
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

from flipfleet.coord.coordinator import COORDINATION_TTL_SECONDS, Coordinator, NullTransport
from flipfleet.coord.registry import REGISTRY_TTL_SECONDS
from flipfleet.coord.transports import CoordinationTransport, HttpTransport, SharedDocumentTransport
from flipfleet.utils.config_loader import resolve_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoordinationConfig:
    mode: str
    url: str
    document_path: str
    timeout_seconds: float
    max_failures: int
    report_attempts: int
    reprobe_seconds: float
    cache_seconds: float
    ttl_seconds: float
    server_ttl_seconds: float


def load_coordination_config(config: dict) -> CoordinationConfig:
    c = (config.get("coordination") or {}) if isinstance(config, dict) else {}
    return CoordinationConfig(
        mode=str(c.get("mode", "disabled")).lower(),
        url=str(c.get("url", "http://127.0.0.1:8888")),
        document_path=str(c.get("document_path", "data/shared_limits.json")),
        timeout_seconds=float(c.get("timeout_seconds", 5.0)),
        max_failures=int(c.get("max_failures", 3)),
        report_attempts=int(c.get("report_attempts", 3)),
        reprobe_seconds=float(c.get("reprobe_seconds", 60.0)),
        cache_seconds=float(c.get("cache_seconds", 5.0)),
        ttl_seconds=float(c.get("ttl_seconds", COORDINATION_TTL_SECONDS)),
        server_ttl_seconds=float(c.get("server_ttl_seconds", REGISTRY_TTL_SECONDS)),
    )


def agent_seed(agent_id: str) -> int:
    """Stable across processes and Python versions (unlike hash())."""
    digest = hashlib.sha256(str(agent_id).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def build_coordinator(
    config: dict,
    agent_id: str,
    rng: random.Random,
    *,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> Coordinator:
    cc = load_coordination_config(config)
    transport: CoordinationTransport
    if cc.mode == "http":
        transport = HttpTransport(
            cc.url,
            timeout=cc.timeout_seconds,
            max_failures=cc.max_failures,
            report_attempts=cc.report_attempts,
            reprobe_seconds=cc.reprobe_seconds,
            server_ttl_seconds=cc.server_ttl_seconds,
            rng=rng,
            clock=clock,
            sleep=sleep,
        )
    elif cc.mode == "document":
        transport = SharedDocumentTransport(
            resolve_path(cc.document_path),
            cache_seconds=cc.cache_seconds,
            clock=clock,
            sleep=sleep,
        )
    elif cc.mode == "disabled":
        transport = NullTransport()
    else:
        raise ValueError(f"Unknown coordination mode: {cc.mode!r}")

    logger.info("Coordination for %s via %s transport", agent_id, transport.name)
    return Coordinator(agent_id, transport, ttl_seconds=cc.ttl_seconds, clock=clock)
