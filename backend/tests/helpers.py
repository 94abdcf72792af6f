"""Shared builders for gateway tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from sqlalchemy import select

from gateway.core.config import GatewayConfig, RateLimitConfig
from gateway.core.handler import GatewayRequest, GatewayResponse
from gateway.core.pipeline import AdmissionPipeline
from gateway.main import create_app
from gateway.models import GwAuditLog

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class CountingHandler:
    """Records every invocation and echoes the body with a call number."""

    def __init__(self) -> None:
        self.calls: list[GatewayRequest] = []

    async def __call__(self, request: GatewayRequest) -> GatewayResponse:
        self.calls.append(request)
        return GatewayResponse.json(
            {"ok": True, "call": len(self.calls), "path": request.path, "body": request.json()},
            status_code=201 if request.method == "POST" else 200,
        )


def make_config(**overrides) -> GatewayConfig:
    values = {
        "host": "127.0.0.1",
        "port": 0,
        "token": None,
        "allowlist": ["127.0.0.1"],
        "store_path": ":memory:",
        "idempotency_ttl_ms": 600_000,
        "event_ttl_ms": 86_400_000,
        "rate_limit": RateLimitConfig(window_ms=60_000, max=100),
        "sweep_interval_ms": 0,
        "idempotency_poll_interval_ms": 10,
    }
    values.update(overrides)
    return GatewayConfig(**values)


@asynccontextmanager
async def gateway_client(
    config: GatewayConfig,
    handler,
    *,
    clock=None,
    client_ips: tuple[str, ...] = ("127.0.0.1",),
) -> AsyncIterator[tuple[dict[str, httpx.AsyncClient], AdmissionPipeline]]:
    """Open the app's store and yield one in-process client per source address."""

    app = create_app(config, handler, clock=clock)
    pipeline: AdmissionPipeline = app.state.pipeline
    await pipeline.store.open()
    clients: dict[str, httpx.AsyncClient] = {}
    try:
        for ip in client_ips:
            transport = httpx.ASGITransport(app=app, client=(ip, 50000))
            clients[ip] = httpx.AsyncClient(transport=transport, base_url="http://gateway.test")
        yield clients, pipeline
    finally:
        for client in clients.values():
            await client.aclose()
        await pipeline.store.close()


async def audit_actions(pipeline: AdmissionPipeline) -> list[tuple[str, str, str]]:
    """``(action, result, route)`` for every audit row, oldest first."""

    async def _load(session):
        rows = await session.scalars(select(GwAuditLog).order_by(GwAuditLog.id.asc()))
        return [(row.action, row.result, row.route) for row in rows]

    return await pipeline.store.run(_load)
