"""Bounded, time-evicted log of admitted requests."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.core.db import GatewayStore
from gateway.models import GwEventLog


@dataclass(frozen=True, slots=True)
class EventRecord:
    id: int
    identity: str
    method: str
    path: str
    request_id: str | None
    accepted_at: int
    expires_at: int

    @classmethod
    def from_row(cls, row: GwEventLog) -> "EventRecord":
        return cls(
            id=row.id,
            identity=row.identity,
            method=row.method,
            path=row.path,
            request_id=row.request_id,
            accepted_at=row.accepted_at,
            expires_at=row.expires_at,
        )


@dataclass(frozen=True, slots=True)
class EventPage:
    cursor: int
    events: list[EventRecord]


class EventLog:
    def __init__(self, store: GatewayStore, *, ttl_ms: int) -> None:
        self.store = store
        self.ttl_ms = ttl_ms

    async def append(
        self,
        identity: str,
        path: str,
        now: int,
        *,
        method: str = "GET",
        request_id: str | None = None,
    ) -> EventRecord:
        async def _insert(session: AsyncSession) -> EventRecord:
            row = GwEventLog(
                identity=identity,
                method=method,
                path=path[:512],
                request_id=request_id,
                accepted_at=now,
                expires_at=now + self.ttl_ms,
            )
            session.add(row)
            await session.flush()
            return EventRecord.from_row(row)

        return await self.store.run(_insert)

    async def sweep(self, now: int) -> int:
        async def _delete(session: AsyncSession) -> int:
            result = await session.execute(delete(GwEventLog).where(GwEventLog.expires_at <= now))
            return result.rowcount or 0

        return await self.store.run(_delete)

    async def poll(self, since: int | None, limit: int, now: int) -> EventPage:
        """Return live events after *since*, or the newest *limit* when *since* is None.

        Events are always returned in ascending ``id`` order.
        """

        async def _select(session: AsyncSession) -> list[GwEventLog]:
            query = select(GwEventLog).where(GwEventLog.expires_at > now)
            if since is not None:
                query = query.where(GwEventLog.id > since).order_by(GwEventLog.id.asc())
                return list((await session.scalars(query.limit(limit))).all())
            newest = await session.scalars(query.order_by(GwEventLog.id.desc()).limit(limit))
            return list(reversed(newest.all()))

        rows = await self.store.run(_select)
        events = [EventRecord.from_row(row) for row in rows]
        cursor = events[-1].id if events else (since or 0)
        return EventPage(cursor=cursor, events=events)
