# Overview: Logging configuration for the invsync package loggers.

from __future__ import annotations

import logging

_HANDLER_NAME = "invsync-stream"


def configure_logging(app) -> logging.Logger:
    """
    Configure the "invsync" logger from app config.

    Services log through module loggers (invsync.services.*), which propagate
    here. Safe to call on every create_app(): the stream handler is only
    attached once.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger("invsync")
    logger.setLevel(level)

    if not any(getattr(h, "name", None) == _HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        logger.addHandler(handler)

    return logger
