"""Wiring of the admission components shared by every request of one app."""

from __future__ import annotations

import time
from typing import Any, Callable

from loguru import logger

from gateway.core.access import AccessGuard
from gateway.core.audit import log_audit
from gateway.core.concurrency import HandlerRunner
from gateway.core.config import GatewayConfig
from gateway.core.db import GatewayStore, SweepResult
from gateway.core.events import EventLog
from gateway.core.handler import Handler
from gateway.core.idempotency import IdempotencyBroker
from gateway.core.rate_limit import FixedWindowRateLimiter

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


class AdmissionPipeline:
    """AccessGuard, RateLimiter, IdempotencyBroker, EventLog and the handler, built from one config."""

    def __init__(
        self,
        config: GatewayConfig,
        handler: Handler,
        *,
        store: GatewayStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.clock: Clock = clock or now_ms
        self.store = store or GatewayStore(config.store_path)
        self.guard = AccessGuard(token=config.token, allowlist=config.allowlist)
        self.limiter = FixedWindowRateLimiter(
            window_ms=config.rate_limit.window_ms,
            max_requests=config.rate_limit.max,
        )
        self.broker = IdempotencyBroker(
            self.store,
            ttl_ms=config.idempotency_ttl_ms,
            clock=self.clock,
            wait_timeout_ms=config.idempotency_wait_timeout_ms,
            poll_interval_ms=config.idempotency_poll_interval_ms,
        )
        self.events = EventLog(self.store, ttl_ms=config.event_ttl_ms)
        self.handler = HandlerRunner(handler, max_concurrency=config.handler_max_concurrency)
        self.started_at = time.monotonic()
        self._last_sweep: int | None = None

    async def sweep(self, now: int | None = None) -> SweepResult:
        now = self.clock() if now is None else now
        self._last_sweep = now
        result = await self.store.sweep(now)
        await self.limiter.sweep(now)
        return result

    async def sweep_if_due(self, now: int) -> SweepResult | None:
        """Sweep expired rows at most once per ``sweep_interval_ms``."""

        if self._last_sweep is not None and now - self._last_sweep < self.config.sweep_interval_ms:
            return None
        return await self.sweep(now)

    async def audit(
        self,
        *,
        identity: str,
        method: str,
        route: str,
        action: str,
        result: str,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            await log_audit(
                self.store,
                identity,
                method,
                route,
                action,
                result,
                now=self.clock(),
                ttl_ms=self.config.event_ttl_ms,
                request_id=request_id,
                details=details,
            )
        except Exception:
            # The caller already has its answer; a lost audit row must not change it.
            logger.bind(action=action, route=route).exception("audit_write_failed")
