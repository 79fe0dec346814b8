"""Root logger setup shared by every service entrypoint."""

import logging
import os

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(service_name: str) -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    fmt = os.environ.get("LOG_FORMAT", DEFAULT_FORMAT)
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger(service_name).info("Logging configured (level=%s)", level)
