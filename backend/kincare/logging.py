"""Logging setup: request and identity context on every record."""

from __future__ import annotations

import contextvars
import logging

from kincare.config import settings

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id",
    default=None,
)
identity_id_var: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "identity_id",
    default=None,
)

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(message)s "
    "request_id=%(request_id)s identity=%(identity_id)s"
)

# Chatty at INFO; raised to WARNING unless SQL echo is on.
_QUIET_LOGGERS = ("sqlalchemy.engine", "asyncpg", "uvicorn.access")


class ContextFilter(logging.Filter):
    """Stamp the current request id and caller identity onto log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = getattr(record, "request_id", None) or request_id_var.get() or "-"
        identity_id = getattr(record, "identity_id", None)
        if identity_id is None:
            identity_id = identity_id_var.get()
        record.identity_id = "-" if identity_id is None else identity_id
        return True


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger. Safe to call more than once."""
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(existing, ContextFilter) for existing in handler.filters):
            handler.addFilter(ContextFilter())

    quiet_level = logging.INFO if settings.database_echo else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
