# This project was developed with assistance from AI tools.
"""Logging setup for applications embedding the workflow engine.

Library modules only create ``logging.getLogger(__name__)`` loggers; the
embedding process decides whether to call ``configure_logging``.
"""

import logging

from .config import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Attach a stream handler to the package logger at LOG_LEVEL."""
    package_logger = logging.getLogger("loan_workflow")
    package_logger.setLevel((level or settings.LOG_LEVEL).upper())

    if not any(isinstance(h, logging.StreamHandler) for h in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        package_logger.addHandler(handler)
