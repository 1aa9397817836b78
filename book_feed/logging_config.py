"""
Logging setup for book_feed.

- structlog for structured, key/value logging on top of stdlib logging
- Console renderer for development, JSON renderer for production

Environment variables:
  LOG_LEVEL  -> DEBUG | INFO | WARNING | ERROR (default: INFO)
  JSON_LOGS  -> true | false (default: false)
"""

from __future__ import annotations

import logging
import os

import structlog


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog and stdlib logging. Call once at process start."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    if json_logs is None:
        json_logs = os.getenv("JSON_LOGS", "false").lower() == "true"

    logging.basicConfig(level=log_level, format="%(message)s")
    for noisy in ("aiohttp", "aiohttp.access", "asyncio"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
