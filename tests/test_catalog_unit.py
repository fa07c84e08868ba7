import pytest

from flipfleet.catalog.catalog import Catalog, probe_quantity_for, profile_from_row
from flipfleet.catalog.loader import load_catalog_rows
from flipfleet.errors import ConfigurationInvalid


def _row(name="Coal", buy="100", sell="120", **extra):
    row = {"name": name, "est_buy": buy, "est_sell": sell, "liquidity": "1000", "rise_probability": "0.6"}
    row.update(extra)
    return row


def test_profile_from_row_derives_guardrails():
    p = profile_from_row(_row(expected_profit="10"))
    assert p.max_buy >= p.est_buy
    assert p.max_buy <= p.est_buy * 1.01 + 1
    assert p.min_sell == 118  # floor(120 * 0.99)
    assert p.min_sell <= p.est_sell
    assert p.max_qty_per_cycle == 200  # round(1000 * 0.2)
    assert p.probe_qty == 10
    assert p.min_margin == 5


def test_profile_from_row_defaults_expected_profit_to_estimated_spread():
    p = profile_from_row(_row())
    assert p.min_margin == 10  # round(20 * 0.5)


def test_max_qty_is_clamped():
    assert profile_from_row(_row(liquidity="10")).max_qty_per_cycle == 100
    assert profile_from_row(_row(liquidity="10000000")).max_qty_per_cycle == 10_000


def test_probe_quantity_tiers():
    assert probe_quantity_for(6000) == 1
    assert probe_quantity_for(2000) == 2
    assert probe_quantity_for(500) == 5
    assert probe_quantity_for(200) == 10


@pytest.mark.parametrize(
    "row",
    [
        _row(name=""),
        _row(buy="0"),
        _row(sell="-5"),
        _row(buy="abc"),
        _row(sell=None),
        _row(buy="nan"),
    ],
)
def test_profile_from_row_rejects_bad_rows(row):
    with pytest.raises(ConfigurationInvalid):
        profile_from_row(row)


@pytest.mark.parametrize("row", [None, ["Coal", "100", "120"], "Coal,100,120"])
def test_profile_from_row_rejects_non_mapping_rows(row):
    with pytest.raises(ConfigurationInvalid):
        profile_from_row(row)


def test_catalog_load_skips_non_mapping_rows():
    catalog = Catalog.load([None, ["x"], _row("Coal")])
    assert [p.name for p in catalog] == ["Coal"]


def test_catalog_load_drops_bad_and_duplicate_rows_and_keeps_inverted_margin():
    catalog = Catalog.load(
        [
            _row("Coal"),
            _row("coal "),
            _row("Broken", buy="x"),
            _row("Upside down", buy="150", sell="100"),
            _row("Iron ore", buy="50", sell="60"),
        ]
    )
    names = [p.name for p in catalog]
    assert names == ["Coal", "Upside down", "Iron ore"]
    assert catalog.get("UPSIDE DOWN").margin() < 0


def test_catalog_replace_carries_probe_results_over():
    catalog = Catalog.load([_row("Coal"), _row("Iron ore", buy="50", sell="60")])
    catalog.get("Coal").record_probe(101, 119, at=123.0)

    fresh = Catalog.load([_row("COAL", buy="90", sell="130"), _row("Gold bar", buy="300", sell="330")])
    catalog.replace(fresh.snapshot())

    coal = catalog.get("coal")
    assert coal.est_buy == 90
    assert (coal.last_probe_buy, coal.last_probe_sell, coal.last_probe_at) == (101, 119, 123.0)
    assert catalog.get("Iron ore") is None
    assert len(catalog) == 2


def test_catalog_snapshot_is_a_copy():
    catalog = Catalog.load([_row("Coal")])
    snap = catalog.snapshot()
    snap.clear()
    assert len(catalog) == 1


def test_filter_unprofitable_applies_tax():
    catalog = Catalog.load(
        [
            _row("Thin", buy="1000", sell="1010", expected_profit="4"),  # net 10 - 10 tax = 0 < 2
            _row("Fat", buy="100", sell="140", expected_profit="20"),  # net 40 - 1 = 39 >= 10
        ]
    )
    dropped = catalog.filter_unprofitable(0.01)
    assert dropped == 1
    assert [p.name for p in catalog] == ["Fat"]


def test_load_catalog_rows_maps_export_columns(tmp_path):
    path = tmp_path / "items.csv"
    path.write_text(
        "item_id,item_name,prob_up,est_buy_price,est_sell_price,expected_net_profit,liquidity_recent_sum,horizon_minutes,extra\n"
        "453,Coal,0.58,140,151,8,310000,60,x\n"
        ",,,,,,,,\n"
        "1,Broken,0.5,abc,10,,,60,y\n",
        encoding="utf-8",
    )
    rows = load_catalog_rows(path)
    assert len(rows) == 2
    assert rows[0]["name"] == "Coal"
    assert rows[0]["est_buy"] == "140"
    assert rows[0]["rise_probability"] == "0.58"
    assert rows[1]["expected_profit"] is None
    assert "extra" not in rows[0]

    catalog = Catalog.load(rows)
    assert [p.name for p in catalog] == ["Coal"]
    coal = catalog.get("coal")
    assert coal.item_id == 453
    assert coal.min_margin == 4


def test_load_catalog_rows_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_catalog_rows(tmp_path / "nope.csv")
