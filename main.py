"""FlipFleet entrypoint.

`python main.py` runs one agent. `python main.py --fleet a b c` starts one
agent process per id against the same config and waits for all of them.

The agent wiring and loop live in `flipfleet/trader/runner.py` so they can be
maintained and tested more easily.
"""

from __future__ import annotations

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger("fleet")

STOP_TIMEOUT_SECONDS = 10


def _load_local_secrets() -> None:
    """Load local environment overrides for development runs (ignored by git)."""
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)


def agent_command(agent_id: str, passthrough: list[str]) -> list[str]:
    return [sys.executable, str(Path(__file__).resolve()), "--agent-id", agent_id, *passthrough]


def run_fleet(agent_ids: list[str], passthrough: list[str]) -> int:
    """Start one child per agent and return the worst exit code."""
    procs: dict[str, subprocess.Popen] = {}
    for agent_id in agent_ids:
        procs[agent_id] = subprocess.Popen(agent_command(agent_id, passthrough))
        logger.info("Started agent %s (pid %s)", agent_id, procs[agent_id].pid)

    codes: dict[str, int] = {}
    try:
        for agent_id, proc in procs.items():
            codes[agent_id] = proc.wait()
            logger.info("Agent %s exited with %s", agent_id, codes[agent_id])
    except KeyboardInterrupt:
        logger.info("Stopping %s agents...", len(procs))
        for proc in procs.values():
            if proc.poll() is None:
                proc.terminate()
        for agent_id, proc in procs.items():
            try:
                codes[agent_id] = proc.wait(timeout=STOP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Agent %s did not stop in time; killing it", agent_id)
                proc.kill()
                codes[agent_id] = proc.wait()
    return max((abs(c) for c in codes.values()), default=0)


def main(argv: list[str] | None = None) -> None:
    _load_local_secrets()

    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--fleet", nargs="+", metavar="AGENT_ID")
    args, rest = parser.parse_known_args(argv)

    if args.fleet:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        sys.exit(run_fleet(args.fleet, rest))

    from flipfleet.trader.runner import main as runner_main

    runner_main(rest)


if __name__ == "__main__":
    main()
