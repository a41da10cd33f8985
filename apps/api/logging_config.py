"""Logging configuration shared by the API process and the RQ worker."""

from __future__ import annotations

import logging

from config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging() -> None:
    """Configure the root logger from LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # httpx logs full request URLs at INFO, which include the access token.
    logging.getLogger("httpx").setLevel(logging.WARNING)
