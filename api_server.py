import os
import sys
import uvicorn
import logging
import fcntl
from pathlib import Path
from dotenv import load_dotenv

from flipfleet.utils.config_loader import load_config

# Log to both stderr and a file from the very first line.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler("coordinator.log", mode="a")
    ]
)
logger = logging.getLogger("api_server")


def _load_local_env() -> None:
    """Load config/secrets.env (if present) so overrides match `python main.py`."""
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)


def _service_address() -> tuple[str, int]:
    host = os.environ.get("FLIPFLEET_SERVICE_HOST")
    port = os.environ.get("FLIPFLEET_SERVICE_PORT")
    try:
        service = load_config().get("service") or {}
    except (FileNotFoundError, ValueError) as e:
        logger.warning("Using default service address (config not usable: %s)", e)
        service = {}
    return str(host or service.get("host", "127.0.0.1")), int(port or service.get("port", 8888))


def main() -> None:
    _load_local_env()

    # One coordinator per host: a second one would split the registry.
    lock_path = Path(".coordinator.lock")
    try:
        lock_f = lock_path.open("w")
        fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        lock_f.write(str(os.getpid()))
        lock_f.flush()
        # Keep lock file handle alive for process lifetime.
    except OSError:
        logger.error("Another coordinator instance appears to be running (lockfile busy). Exiting.")
        sys.exit(1)

    host, port = _service_address()
    try:
        logger.info("Starting FlipFleet coordinator on %s:%s", host, port)
        uvicorn.run(
            "flipfleet.api.app:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            loop="auto",
            workers=1  # The registry lives in process memory
        )
    except Exception as e:
        logger.error(f"Fatal error in coordinator: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
