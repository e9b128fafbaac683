"""JSON logs on stdout for the API and the Celery workers."""

import logging
import sys

from pythonjsonlogger import jsonlogger

from admarket.core.config import settings

_QUIET_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "sqlalchemy.engine",
    "celery.app.trace",
    "pyrogram",
)


def setup_logging(level: str | None = None) -> None:
    """Replace the root handlers with one JSON stream handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
        static_fields={"service": settings.service_name},
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
