"""
Logging setup shared by every cartcore module.

    from cartcore.logging import get_logger
    logger = get_logger(__name__)
"""

import logging
import os
import sys
from functools import cache

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_root_logger() -> None:
    root = logging.getLogger()
    # Host application already set up logging
    if root.handlers:
        return

    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.setLevel(level)
    root.addHandler(handler)

    # Supabase and Upstash clients log every request through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)


_configure_root_logger()


@cache
def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def sanitize_id_for_logging(id_value, max_length: int = 24) -> str:
    """Escape control characters and truncate a product id before logging it.

    Ids arrive from page data attributes and storage, so a crafted id must
    not be able to forge log lines.
    """
    if not id_value:
        return "N/A"
    safe = str(id_value).translate({ord("\n"): "\\n", ord("\r"): "\\r", ord("\t"): "\\t", 0: None})
    return safe if len(safe) <= max_length else safe[:max_length] + "..."


__all__ = ["LOG_FORMAT", "get_logger", "sanitize_id_for_logging"]
