"""Embedded SQLite store shared by the idempotency broker, event log and audit trail."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy import delete, event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gateway.core.db_retry import with_db_retry
from gateway.core.errors import StoreUnavailable
from gateway.models import Base, GwAuditLog, GwEventLog, GwIdempotencyKey

T = TypeVar("T")

MEMORY_PATH = ":memory:"
SQLITE_BUSY_TIMEOUT_MS = 5000


@dataclass(slots=True)
class SweepResult:
    idempotency: int = 0
    events: int = 0
    audit: int = 0

    @property
    def total(self) -> int:
        return self.idempotency + self.events + self.audit


def _database_url(path: str) -> str:
    if path == MEMORY_PATH:
        return "sqlite+aiosqlite://"
    return f"sqlite+aiosqlite:///{Path(path).expanduser()}"


def _create_engine(path: str) -> AsyncEngine:
    if path == MEMORY_PATH:
        # One shared connection, otherwise every checkout would see an empty database.
        return create_async_engine(
            _database_url(path),
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(_database_url(path))

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    return engine


class GatewayStore:
    """Owns every persisted gateway row.

    Transactions are serialized in-process: SQLite admits a single writer and
    the ``:memory:`` database lives on one shared connection. The unique
    constraint on ``gw_idempotency_key.idempotency_key`` still guards the
    check-then-insert sequence if several processes share a database file.
    """

    def __init__(self, path: str = MEMORY_PATH) -> None:
        self.path = path
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        """Create the engine and the schema if absent. Safe to call twice."""

        if self._engine is not None:
            return
        engine = _create_engine(self.path)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except DBAPIError as exc:
            await engine.dispose()
            logger.bind(path=self.path, error=str(exc)).error("store_open_failed")
            raise StoreUnavailable(f"Could not open gateway store at {self.path}") from exc
        self._engine = engine
        self._sessionmaker = async_sessionmaker(bind=engine, expire_on_commit=False)
        logger.bind(path=self.path).info("store_opened")

    async def close(self) -> None:
        engine = self._engine
        if engine is None:
            return
        self._engine = None
        self._sessionmaker = None
        async with self._lock:
            await engine.dispose()
        logger.bind(path=self.path).info("store_closed")

    def _require_open(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            raise StoreUnavailable("Gateway store is not open")
        return self._sessionmaker

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one committed-or-rolled-back transaction."""

        async with self._lock:
            sessionmaker = self._require_open()
            async with sessionmaker() as session:
                async with session.begin():
                    yield session

    async def run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run *operation* in its own transaction, retrying busy/locked errors."""

        async def _once() -> T:
            async with self.transaction() as session:
                return await operation(session)

        return await with_db_retry(_once)

    async def ping(self) -> None:
        async def _select_one(session: AsyncSession) -> None:
            await session.execute(text("SELECT 1"))

        await self.run(_select_one)

    async def sweep(self, now: int) -> SweepResult:
        """Delete every idempotency, event and audit row with ``expires_at <= now``."""

        async def _delete_expired(session: AsyncSession) -> SweepResult:
            result = SweepResult()
            for model, field in (
                (GwIdempotencyKey, "idempotency"),
                (GwEventLog, "events"),
                (GwAuditLog, "audit"),
            ):
                deleted = await session.execute(delete(model).where(model.expires_at <= now))
                setattr(result, field, deleted.rowcount or 0)
            return result

        result = await self.run(_delete_expired)
        if result.total:
            logger.bind(
                idempotency=result.idempotency,
                events=result.events,
                audit=result.audit,
            ).debug("store_swept")
        return result
