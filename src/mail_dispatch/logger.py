# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail dispatcher.

Handlers, level and format are configured once with ``logging.basicConfig()``
in the entry points (CLI and ASGI server); library modules only ask for a
named logger.

Example:
    Typical usage in a module::

        from mail_dispatch.logger import get_logger

        logger = get_logger("RateLimiter")
        logger.warning("Recipient %s over limit", recipient)
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailDispatch") -> logging.Logger:
    """Retrieve a logger instance bound to ``name``.

    Args:
        name: The logger name. Defaults to "MailDispatch".

    Returns:
        A ``logging.Logger`` instance. No handler is attached here.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for an entry point.

    Args:
        level: Level name; falls back to ``MD_LOG_LEVEL`` and then ``INFO``.
    """
    level_name = (level or os.getenv("MD_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
