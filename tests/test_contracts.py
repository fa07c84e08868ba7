import os
import socket
import subprocess
import sys
import time

import pytest

from flipfleet.coord.coordinator import Coordinator
from flipfleet.coord.transports import HttpTransport

pytestmark = pytest.mark.integration


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


@pytest.fixture(scope="module")
def coordinator_url():
    """Run the coordinator service in a real uvicorn process."""
    import httpx

    port = _free_port()
    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "flipfleet.api.app:app",
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
        "--log-level",
        "warning",
        "--workers",
        "1",
    ]
    proc = subprocess.Popen(cmd, env=os.environ.copy(), stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    url = f"http://127.0.0.1:{port}"
    try:
        # Wait for server to come up (max ~8s).
        deadline = time.monotonic() + 8.0
        while True:
            if proc.poll() is not None:
                pytest.fail("uvicorn exited early; coordinator contract tests cannot proceed")
            try:
                r = httpx.get(f"{url}/health", timeout=1.0)
                if r.status_code == 200:
                    break
            except httpx.HTTPError:
                pass
            if time.monotonic() > deadline:
                pytest.fail("uvicorn did not become healthy within the startup window")
            time.sleep(0.2)
        yield url
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=3)
        except subprocess.TimeoutExpired:
            proc.kill()


def test_health_shape(coordinator_url):
    import httpx

    data = httpx.get(f"{coordinator_url}/health", timeout=2.0).json()
    assert data["status"] == "ok"
    assert isinstance(data["blockedCount"], int)
    assert isinstance(data["uptimeSeconds"], int)


def test_report_requires_both_parameters(coordinator_url):
    import httpx

    resp = httpx.get(f"{coordinator_url}/report", params={"item": "Coal"}, timeout=2.0)
    assert resp.status_code == 400


def test_agents_share_limits_over_http(coordinator_url):
    import httpx

    httpx.get(f"{coordinator_url}/clear", timeout=2.0)
    a = Coordinator("contract-a", HttpTransport(coordinator_url, timeout=2.0))
    b = Coordinator("contract-b", HttpTransport(coordinator_url, timeout=2.0))

    assert a.report("Death rune")
    assert a.blocked_by_others() == set()
    assert b.blocked_by_others() == {"death rune"}

    # Last writer owns the item.
    assert b.report("death rune")
    assert a.blocked_by_others() == {"death rune"}
    assert b.blocked_by_others() == set()

    stats = httpx.get(f"{coordinator_url}/stats", timeout=2.0).json()
    assert stats["blockedItems"] == 1
    assert stats["totalRequests"] >= 4

    assert a.health()["available"] is True


def test_unreachable_coordinator_fails_open():
    port = _free_port()  # nothing listens here
    transport = HttpTransport(f"http://127.0.0.1:{port}", timeout=0.5, report_attempts=1, sleep=lambda s: None)
    coordinator = Coordinator("contract-a", transport)

    assert coordinator.report("Coal") is False
    assert coordinator.blocked_by_others() == set()
    assert coordinator.health()["available"] is False
