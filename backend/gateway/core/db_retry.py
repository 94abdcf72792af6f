"""Retry of SQLite operations that fail because another writer holds the lock."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError

T = TypeVar("T")

DB_RETRY_ATTEMPTS = 4
DB_RETRY_BASE_DELAY = 0.05
DB_RETRY_JITTER = 0.025

SQLITE_LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def is_locked_error(exc: DBAPIError) -> bool:
    """True for SQLite busy/locked errors, which may succeed on a later attempt."""

    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(fragment in message for fragment in SQLITE_LOCK_MESSAGES)


def backoff_delay(attempt: int, base_delay: float, jitter: float) -> float:
    return base_delay * 2 ** (attempt - 1) + random.uniform(0, jitter)


async def with_db_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DB_RETRY_ATTEMPTS,
    base_delay: float = DB_RETRY_BASE_DELAY,
    jitter: float = DB_RETRY_JITTER,
) -> T:
    """Await ``operation()``, retrying while SQLite reports a lock, at most *attempts* times.

    ``operation`` must open its own transaction so that a retry starts clean.
    Other database errors propagate on the first failure.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    attempt = 1
    while True:
        try:
            return await operation()
        except DBAPIError as exc:
            if attempt >= attempts or not is_locked_error(exc):
                raise
            delay = backoff_delay(attempt, base_delay, jitter)
            logger.bind(
                attempt=attempt,
                max_attempts=attempts,
                sleep=round(delay, 4),
                error=str(exc.orig),
            ).warning("db_retry_locked")
            attempt += 1
            await asyncio.sleep(delay)
