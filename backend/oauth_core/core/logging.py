"""
Logging setup shared by the web application and the operational CLI.
"""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a consistent format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
        force=True,
    )
    # httpx logs full request URLs at INFO, which include authorization codes
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = ["configure_logging"]
