"""Process-wide logging setup."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger("newsai")


def configure_logging(level: str | None = None) -> None:
    resolved = (level or os.environ.get("NEWSAI_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logger.setLevel(resolved)
