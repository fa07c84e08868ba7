import json
import random

import pytest
import requests

from flipfleet.coord.coordinator import Coordinator, NullTransport
from flipfleet.coord.factory import agent_seed, build_coordinator
from flipfleet.coord.registry import REGISTRY_TTL_SECONDS, CoordinationRegistry
from flipfleet.coord.transports import HttpTransport, RegistryTransport, SharedDocumentTransport
from flipfleet.domain.models import CoordinationEntry
from flipfleet.errors import CoordinationUnavailable


def _pair(clock, transport_a, transport_b=None):
    a = Coordinator("agent-a", transport_a, clock=clock)
    b = Coordinator("agent-b", transport_b or transport_a, clock=clock)
    return a, b


def test_report_is_visible_to_others_but_not_to_self(clock):
    transport = RegistryTransport(CoordinationRegistry(clock=clock), clock=clock)
    a, b = _pair(clock, transport)

    assert a.report("Coal")
    assert a.blocked_by_others() == set()
    assert b.blocked_by_others() == {"coal"}
    assert b.blocked_with_owners() == {"coal": "agent-a"}


def test_last_writer_owns_the_item(clock):
    transport = RegistryTransport(CoordinationRegistry(clock=clock), clock=clock)
    a, b = _pair(clock, transport)

    a.report("Coal")
    clock.advance(60)
    b.report("coal")

    assert "coal" in a.blocked_by_others()
    assert "coal" not in b.blocked_by_others()


def test_self_filter_is_case_insensitive(clock):
    transport = RegistryTransport(CoordinationRegistry(clock=clock), clock=clock)
    transport.upsert(CoordinationEntry("Coal", "AGENT-A", clock.now + 100, clock.now))
    me = Coordinator("agent-a", transport, clock=clock)
    assert me.blocked_by_others() == set()


class _FixedTransport:
    name = "fixed"
    available = True

    def __init__(self, entries):
        self.entries = entries

    def upsert(self, entry):
        self.entries.append(entry)

    def live_entries(self):
        return list(self.entries)

    def ping(self):
        return True


def test_blocked_by_others_never_contains_own_entries(clock):
    now = clock.now
    entries = [
        CoordinationEntry("Coal", "agent-a", now + 100, now),
        CoordinationEntry("Iron ore", "Agent-A", now + 100, now),
        CoordinationEntry("Death rune", "agent-b", now + 100, now),
        CoordinationEntry("Cannonball", "agent-c", now + 100, now),
        CoordinationEntry("Magic logs", "agent-b", now - 1, now - 100),
        CoordinationEntry("Gold bar", "agent-a ", now + 100, now),
    ]
    rng = random.Random(5)
    for _ in range(5):
        rng.shuffle(entries)
        me = Coordinator("agent-a", _FixedTransport(list(entries)), clock=clock)
        blocked = me.blocked_with_owners()
        assert blocked == {"death rune": "agent-b", "cannonball": "agent-c"}
        assert all(owner.strip().casefold() != "agent-a" for owner in blocked.values())


def test_entries_expire(clock):
    transport = RegistryTransport(CoordinationRegistry(clock=clock), clock=clock)
    a, b = _pair(clock, transport)
    a.report("Coal")
    clock.advance(REGISTRY_TTL_SECONDS + 1)
    assert b.blocked_by_others() == set()


class _BrokenTransport:
    name = "broken"
    available = False

    def upsert(self, entry):
        raise CoordinationUnavailable("down")

    def live_entries(self):
        raise CoordinationUnavailable("down")

    def ping(self):
        raise CoordinationUnavailable("down")


def test_outage_means_no_information(clock):
    coord = Coordinator("agent-a", _BrokenTransport(), clock=clock)
    assert coord.report("Coal") is False
    assert coord.blocked_by_others() == set()
    assert coord.is_available() is False
    health = coord.health()
    assert health["available"] is False
    assert health["reportsFailed"] == 1


def test_null_transport(clock):
    coord = Coordinator("agent-a", NullTransport(), clock=clock)
    assert coord.report("Coal") is True
    assert coord.blocked_by_others() == set()


# ----- shared document -----


def test_document_transport_shares_between_agents(tmp_path, clock):
    path = tmp_path / "shared" / "limits.json"
    ta = SharedDocumentTransport(path, cache_seconds=0, clock=clock)
    tb = SharedDocumentTransport(path, cache_seconds=0, clock=clock)
    a, b = _pair(clock, ta, tb)

    a.report("Coal")
    a.report("Iron ore")
    b.report("coal")

    doc = json.loads(path.read_text(encoding="utf-8"))
    by_item = {d["item"].lower(): d for d in doc["limits"]}
    assert set(by_item) == {"coal", "iron ore"}
    assert by_item["coal"]["account"] == "agent-b"
    assert by_item["coal"]["expiresAt"] == int(clock.now) + 4 * 3600
    assert by_item["coal"]["reportedAt"] == int(clock.now)

    assert a.blocked_by_others() == {"coal"}
    assert b.blocked_by_others() == {"iron ore"}


def test_document_transport_caches_reads(tmp_path, clock):
    path = tmp_path / "limits.json"
    reader = SharedDocumentTransport(path, cache_seconds=5, clock=clock)
    writer = SharedDocumentTransport(path, cache_seconds=5, clock=clock)

    assert reader.live_entries() == []
    writer.upsert(CoordinationEntry("Coal", "agent-b", clock.now + 100, clock.now))
    assert reader.live_entries() == []

    clock.advance(5)
    assert [e.item for e in reader.live_entries()] == ["Coal"]


def test_document_transport_corrupt_file(tmp_path, clock):
    path = tmp_path / "limits.json"
    path.write_text("{garbage", encoding="utf-8")
    transport = SharedDocumentTransport(path, cache_seconds=0, clock=clock)

    with pytest.raises(CoordinationUnavailable):
        transport.live_entries()
    assert Coordinator("agent-a", transport, clock=clock).blocked_by_others() == set()

    # A write heals the document.
    transport.upsert(CoordinationEntry("Coal", "agent-b", clock.now + 100, clock.now))
    assert [e.owner for e in transport.live_entries()] == ["agent-b"]


def test_document_transport_cleanup(tmp_path, clock):
    path = tmp_path / "limits.json"
    transport = SharedDocumentTransport(path, cache_seconds=0, clock=clock)
    transport.upsert(CoordinationEntry("Coal", "agent-b", clock.now + 10, clock.now))
    transport.upsert(CoordinationEntry("Iron ore", "agent-b", clock.now + 1000, clock.now))
    clock.advance(11)
    assert transport.cleanup() == 1
    doc = json.loads(path.read_text(encoding="utf-8"))
    assert [d["item"] for d in doc["limits"]] == ["Iron ore"]


# ----- http -----


class _FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self._payload


class _FakeSession:
    def __init__(self):
        self.headers = {}
        self.calls = []
        self.down = False
        self.blocked = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        if self.down:
            raise requests.ConnectionError("refused")
        if url.endswith("/health"):
            return _FakeResponse({"status": "ok", "blockedCount": len(self.blocked), "uptimeSeconds": 1})
        if url.endswith("/report"):
            self.blocked.append({"item": params["item"], "account": params["account"], "age": 0})
            return _FakeResponse({"status": "recorded"})
        if url.endswith("/list"):
            return _FakeResponse({"blocked": list(self.blocked)})
        return _FakeResponse({}, status=404)


def _http(clock, session):
    return HttpTransport(
        "http://coord.test/",
        session=session,
        rng=random.Random(1),
        clock=clock,
        sleep=lambda s: None,
    )


def test_http_transport_round_trip(clock):
    session = _FakeSession()
    session.blocked.append({"item": "Coal", "account": "agent-b", "age": 100})
    transport = _http(clock, session)

    transport.upsert(CoordinationEntry("Iron ore", "agent-a", clock.now + 10, clock.now))
    assert session.calls[0] == ("http://coord.test/report", {"item": "Iron ore", "account": "agent-a"})

    entries = {e.item: e for e in transport.live_entries()}
    assert entries["Coal"].reported_at == clock.now - 100
    assert entries["Coal"].expires_at == clock.now - 100 + REGISTRY_TTL_SECONDS
    assert session.headers["User-Agent"].startswith("FlipFleet")

    coord = Coordinator("agent-a", transport, clock=clock)
    assert coord.blocked_by_others() == {"coal"}


def test_http_transport_marks_unavailable_and_reprobes(clock):
    session = _FakeSession()
    session.down = True
    transport = _http(clock, session)
    coord = Coordinator("agent-a", transport, clock=clock)

    assert coord.report("Coal") is False
    assert len(session.calls) == 3
    assert transport.available is False
    assert transport.consecutive_failures == 3

    # Fails fast without touching the network until the re-probe interval passes.
    assert coord.blocked_by_others() == set()
    assert len(session.calls) == 3

    session.down = False
    session.blocked.append({"item": "Coal", "account": "agent-b", "age": 0})
    clock.advance(61)
    assert coord.blocked_by_others() == {"coal"}
    assert transport.available is True
    assert transport.consecutive_failures == 0


def test_http_transport_backs_off_after_a_failure(clock):
    session = _FakeSession()
    transport = _http(clock, session)
    session.down = True
    with pytest.raises(CoordinationUnavailable):
        transport.live_entries()
    calls = len(session.calls)

    session.down = False
    with pytest.raises(CoordinationUnavailable):
        transport.live_entries()
    assert len(session.calls) == calls

    clock.advance(transport.backoff.max_delay * 2)
    assert transport.live_entries() == []


def test_http_transport_rejects_garbage(clock):
    session = _FakeSession()
    session.get = lambda url, params=None, timeout=None: _FakeResponse(["not", "a", "dict"])
    transport = _http(clock, session)
    with pytest.raises(CoordinationUnavailable):
        transport.live_entries()


# ----- factory -----


def test_agent_seed_is_stable():
    assert agent_seed("agent-1") == agent_seed("agent-1")
    assert agent_seed("agent-1") != agent_seed("agent-2")


def test_build_coordinator_modes(tmp_path, clock):
    rng = random.Random(agent_seed("a"))
    http = build_coordinator({"coordination": {"mode": "http", "url": "http://x:1"}}, "a", rng, clock=clock)
    assert isinstance(http.transport, HttpTransport)
    assert http.transport.base_url == "http://x:1"

    doc = build_coordinator(
        {"coordination": {"mode": "document", "document_path": str(tmp_path / "d.json")}}, "a", rng, clock=clock
    )
    assert isinstance(doc.transport, SharedDocumentTransport)
    assert doc.transport.path == tmp_path / "d.json"

    off = build_coordinator({}, "a", rng, clock=clock)
    assert isinstance(off.transport, NullTransport)

    with pytest.raises(ValueError):
        build_coordinator({"coordination": {"mode": "carrier-pigeon"}}, "a", rng, clock=clock)
