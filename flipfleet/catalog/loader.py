from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pandas as pd

logger = logging.getLogger(__name__)

# Column names in the price-model export -> catalog row keys.
COLUMN_MAP = {
    "item_id": "id",
    "item_name": "name",
    "prob_up": "rise_probability",
    "est_buy_price": "est_buy",
    "est_sell_price": "est_sell",
    "expected_net_profit": "expected_profit",
    "liquidity_recent_sum": "liquidity",
    "horizon_minutes": "horizon_minutes",
}

REQUIRED_COLUMNS = ("item_name", "est_buy_price", "est_sell_price")


def load_catalog_rows(path: str | Path) -> list[dict[str, Any]]:
    """
    Read the CSV export into raw catalog rows.

    Validation of individual rows happens in `Catalog.load`; this only maps
    columns and turns NaN into None so bad rows are dropped there, one by one.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Catalog file not found: {p}")

    df = pd.read_csv(p, dtype=str, keep_default_na=False, skipinitialspace=True)
    df.columns = [str(c).strip().lower() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        logger.warning("Catalog header is missing expected columns: %s", ", ".join(missing))

    df = df.rename(columns={k: v for k, v in COLUMN_MAP.items() if k in df.columns})
    keep = [c for c in COLUMN_MAP.values() if c in df.columns]
    df = df[keep]
    # Blank lines in hand-edited exports come through as all-empty rows.
    df = df[(df != "").any(axis=1)]

    rows: list[dict[str, Any]] = []
    for rec in df.to_dict(orient="records"):
        rows.append({k: (None if v == "" else v) for k, v in rec.items()})

    logger.info("Read %s catalog rows from %s", len(rows), p)
    return rows


def catalog_mtime(path: str | Path) -> float | None:
    try:
        return Path(path).stat().st_mtime
    except OSError:
        return None
