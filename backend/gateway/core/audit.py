"""Audit rows for rejected and failed gateway requests."""

from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.core.db import GatewayStore
from gateway.models.gw_audit import GwAuditLog


async def log_audit(
    store: GatewayStore,
    identity: str,
    method: str,
    route: str,
    action: str,
    result: str,
    *,
    now: int,
    ttl_ms: int,
    request_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    payload = {
        "event_time": now,
        "identity": identity,
        "method": method,
        "route": route[:512],
        "action": action,
        "result": result,
        "request_id": request_id,
        "details": json.dumps(details) if details is not None else None,
        "expires_at": now + ttl_ms,
    }

    async def _insert(session: AsyncSession) -> None:
        await session.execute(insert(GwAuditLog).values(**payload))

    await store.run(_insert)
