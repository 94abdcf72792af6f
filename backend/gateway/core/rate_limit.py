"""Per-identity fixed-window rate limiting.

Counters live in process memory and are lost on restart. The fixed window is
approximate: a client can land up to ``2 * max`` requests around a window
boundary. In exchange each identity costs one counter and each check is O(1).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from fastapi import Request

from gateway.core.access import parse_address

UNKNOWN_IDENTITY = "unknown"


@dataclass(slots=True)
class RateWindowCounter:
    identity: str
    window_start: int
    count: int


@dataclass(frozen=True, slots=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_ms: int = 0


def client_identity(request: Request, *, trust_proxy: bool = False) -> str:
    """Return the client identity used as the allowlist and rate-limit key.

    Behind a trusted proxy the first parseable ``X-Forwarded-For`` hop (then
    ``X-Real-IP``) is used. A request without a peer address resolves to
    ``"unknown"``, which no allowlist entry matches.
    """

    if trust_proxy:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            for part in forwarded_for.split(","):
                address = parse_address(part)
                if address is not None:
                    return str(address)
        real_ip = parse_address(request.headers.get("X-Real-IP"))
        if real_ip is not None:
            return str(real_ip)

    if request.client is None or not request.client.host:
        return UNKNOWN_IDENTITY
    address = parse_address(request.client.host)
    return str(address) if address is not None else request.client.host


class FixedWindowRateLimiter:
    """Count requests per identity in windows of ``floor(now / window_ms)``."""

    def __init__(self, *, window_ms: int, max_requests: int) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._counters: dict[str, RateWindowCounter] = {}
        self._lock = asyncio.Lock()

    def _window_start(self, now: int) -> int:
        return (now // self.window_ms) * self.window_ms

    async def admit(self, identity: str, now: int) -> RateDecision:
        """Register one request for *identity*; rejected calls still count."""

        window_start = self._window_start(now)
        reset_at = window_start + self.window_ms
        async with self._lock:
            counter = self._counters.get(identity)
            if counter is None or counter.window_start != window_start:
                # Replacing the counter evicts the previous window.
                counter = RateWindowCounter(identity, window_start, 0)
                self._counters[identity] = counter
            counter.count += 1
            count = counter.count

        if count > self.max_requests:
            return RateDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after_ms=reset_at - now,
            )
        return RateDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_at=reset_at,
        )

    async def sweep(self, now: int) -> int:
        """Drop counters whose window has ended; return how many were removed."""

        current = self._window_start(now)
        async with self._lock:
            stale = [key for key, counter in self._counters.items() if counter.window_start < current]
            for key in stale:
                del self._counters[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)
