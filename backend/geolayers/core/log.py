"""Process-wide logging setup for the API and worker entrypoints."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once per process.

    Args:
        level: Logging level name (e.g. "INFO", "DEBUG").
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # httpx logs every request at INFO, which floods the tile proxy logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
