"""
PayDrop — Logging setup
Call setup_logging() once at startup; modules use logging.getLogger(__name__).
"""
import logging
import sys

from config import LOG_LEVEL


def setup_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
        stream=sys.stdout,
    )
    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
