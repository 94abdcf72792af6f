"""Loguru setup for the gateway process and the request-scoped log context."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any, TextIO

from loguru import logger

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
identity_ctx_var: ContextVar[str] = ContextVar("identity", default="-")

# Third-party loggers capped at these levels whatever the gateway level is.
QUIET_LOGGERS = {
    "aiosqlite": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def _inject_context(record: dict[str, Any]) -> None:
    extra = record["extra"]
    if "request_id" not in extra:
        extra["request_id"] = request_id_ctx_var.get()
    if "identity" not in extra:
        extra["identity"] = identity_ctx_var.get()


def setup_logging(level: str = "INFO", *, serialize: bool = True, sink: TextIO | None = None) -> None:
    """Send gateway records to a single loguru sink, JSON lines unless ``serialize`` is off.

    Every record carries the ``request_id`` and ``identity`` of the request
    being served, or ``"-"`` outside a request.
    """

    level = level.upper()
    logging.basicConfig(level=level)
    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(floor)

    logger.remove()
    logger.configure(patcher=_inject_context)
    logger.add(
        sink or sys.stdout,
        level=level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        serialize=serialize,
    )
