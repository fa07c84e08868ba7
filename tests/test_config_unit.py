import pytest

from flipfleet.coord.factory import load_coordination_config
from flipfleet.trader.pacing import load_pacing_config
from flipfleet.trader.state_machine import load_trading_config
from flipfleet.utils.config_loader import load_config, resolve_path

BASE = """
agent:
  id: agent-1
trading:
  max_capital_in_flight: 500000
  max_slots: 8
coordination:
  mode: {mode}
"""


def _write(tmp_path, text):
    p = tmp_path / "config.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_load_config_reads_yaml(tmp_path):
    cfg = load_config(_write(tmp_path, BASE.format(mode="document")), force_reload=True)
    assert cfg["agent"]["id"] == "agent-1"
    assert cfg["coordination"]["mode"] == "document"


def test_load_config_returns_copies(tmp_path):
    path = _write(tmp_path, BASE.format(mode="disabled"))
    first = load_config(path, force_reload=True)
    first["agent"]["id"] = "mutated"
    assert load_config(path)["agent"]["id"] == "agent-1"


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("FLIPFLEET_AGENT_ID", "agent-7")
    monkeypatch.setenv("FLIPFLEET_MAX_CAPITAL", "1234")
    monkeypatch.setenv("FLIPFLEET_COORDINATION_MODE", "http")
    cfg = load_config(_write(tmp_path, BASE.format(mode="disabled")), force_reload=True)
    assert cfg["agent"]["id"] == "agent-7"
    assert cfg["trading"]["max_capital_in_flight"] == 1234
    assert cfg["coordination"]["mode"] == "http"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)


@pytest.mark.parametrize(
    "text",
    [
        "agent:\n  id: a\n",
        "agent: {}\ntrading:\n  max_capital_in_flight: 1\n  max_slots: 1\n",
        "agent:\n  id: a\ntrading:\n  max_capital_in_flight: 0\n  max_slots: 8\n",
        BASE.format(mode="carrier-pigeon"),
        "- not\n- a mapping\n",
    ],
)
def test_invalid_configs_fail_fast(tmp_path, monkeypatch, text):
    monkeypatch.delenv("FLIPFLEET_AGENT_ID", raising=False)
    monkeypatch.delenv("FLIPFLEET_COORDINATION_MODE", raising=False)
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, text), force_reload=True)


def test_section_defaults():
    trading = load_trading_config({})
    assert trading.max_slots == 8
    assert trading.kelly_fraction == 0.25
    assert trading.takeover_window == 3
    assert trading.random_top_k == 10

    coord = load_coordination_config({})
    assert coord.mode == "disabled"
    assert coord.ttl_seconds == 4 * 3600
    assert coord.server_ttl_seconds == 4 * 3600 + 300

    pacing = load_pacing_config({})
    assert pacing.idle_retry_seconds == 30


def test_resolve_path(tmp_path):
    assert resolve_path(tmp_path / "x.json") == tmp_path / "x.json"
    assert resolve_path("data/x.json", base=tmp_path) == tmp_path / "data" / "x.json"
