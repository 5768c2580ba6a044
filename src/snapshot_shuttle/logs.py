"""Loguru-based logging setup."""

from __future__ import annotations

import sys
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from loguru import logger

LOG_FILE_PATTERN = "bckp-{time:YYYY-MM-DD}.log"

logger.configure(extra={"subsystem": "core"})


def setup_logger(log_dir: Path | None = None, debug: bool = False) -> None:
    """Configure loguru with console + daily NDJSON file output."""
    logger.remove()

    # Console
    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format=(
            "<green>{time:HH:mm:ss}</green> | <level>{level:<7}</level> | "
            "<cyan>{extra[subsystem]}</cyan> | {message}"
        ),
        colorize=True,
    )

    # File
    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / LOG_FILE_PATTERN),
            level="DEBUG" if debug else "INFO",
            serialize=True,
            rotation="00:00",
            retention="14 days",
            encoding="utf-8",
        )


def get_logger(subsystem: str):
    return logger.bind(subsystem=subsystem)


def redact_url(url: str) -> str:
    """Drop the query string (and with it any SAS token) from a URL."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
