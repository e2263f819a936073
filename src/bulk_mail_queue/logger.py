# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the bulk mail queue.

Handlers, level and format are configured once by the entry points
(``server.py`` and the CLI) through :func:`configure_logging`; library
modules only ask for a named logger.

Example:
    Typical usage in a module::

        from bulk_mail_queue.logger import get_logger

        logger = get_logger("DeliveryQueue")
        logger.info("Queue drained")
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "BulkMailQueue") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "BulkMailQueue".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for an entry point.

    The level comes from ``level`` or ``BMQ_LOG_LEVEL`` (default INFO).
    ``force=True`` replaces handlers installed by earlier calls.
    """
    name = (level or os.getenv("BMQ_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
