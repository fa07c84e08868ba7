from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

_COORDINATION_MODES = {"http", "document", "disabled"}


def _project_root() -> Path:
    # flipfleet/utils/config_loader.py -> flipfleet/utils -> flipfleet -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Environment variables win over the YAML file.

    Lets several agents share one config file and differ only by environment.
    """
    agent = cfg.setdefault("agent", {})
    if os.getenv("FLIPFLEET_AGENT_ID"):
        agent["id"] = os.environ["FLIPFLEET_AGENT_ID"]
    if os.getenv("FLIPFLEET_DATA_DIR"):
        agent["data_dir"] = os.environ["FLIPFLEET_DATA_DIR"]

    catalog = cfg.setdefault("catalog", {})
    if os.getenv("FLIPFLEET_CATALOG_PATH"):
        catalog["path"] = os.environ["FLIPFLEET_CATALOG_PATH"]

    coord = cfg.setdefault("coordination", {})
    if os.getenv("FLIPFLEET_COORDINATION_MODE"):
        coord["mode"] = os.environ["FLIPFLEET_COORDINATION_MODE"]
    if os.getenv("FLIPFLEET_COORDINATOR_URL"):
        coord["url"] = os.environ["FLIPFLEET_COORDINATOR_URL"]
    if os.getenv("FLIPFLEET_SHARED_DOCUMENT"):
        coord["document_path"] = os.environ["FLIPFLEET_SHARED_DOCUMENT"]

    trading = cfg.setdefault("trading", {})
    if os.getenv("FLIPFLEET_MAX_CAPITAL"):
        trading["max_capital_in_flight"] = int(os.environ["FLIPFLEET_MAX_CAPITAL"])


def validate_config(cfg: dict[str, Any]) -> None:
    """Fail fast if the configuration is missing required sections."""
    required_top = ["agent", "trading"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    agent = cfg.get("agent") or {}
    if not str(agent.get("id") or "").strip():
        raise ValueError("Missing agent.id in config")

    trading = cfg.get("trading") or {}
    for k in ["max_capital_in_flight", "max_slots"]:
        if k not in trading:
            raise ValueError(f"Missing trading.{k} in config")
        if int(trading[k]) <= 0:
            raise ValueError(f"trading.{k} must be positive")

    mode = str((cfg.get("coordination") or {}).get("mode", "disabled")).lower()
    if mode not in _COORDINATION_MODES:
        raise ValueError(f"coordination.mode must be one of {sorted(_COORDINATION_MODES)}; got {mode!r}")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Read the fleet config (default `config/config.yaml`) once per process.

    FLIPFLEET_* environment variables are applied on top, then the result is
    validated. Every call hands back its own deep copy.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)


def resolve_path(value: str | Path, base: Path | None = None) -> Path:
    """Relative paths in the config are taken relative to the project root."""
    p = Path(value).expanduser()
    if p.is_absolute():
        return p
    return (base or _project_root()) / p
