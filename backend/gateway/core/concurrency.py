"""Concurrency helpers for running application handlers off the accept loop."""

from __future__ import annotations

import inspect

import anyio

from gateway.core.handler import GatewayRequest, GatewayResponse, Handler


class HandlerRunner:
    """Invoke coroutine handlers inline and sync handlers in bounded worker threads."""

    def __init__(self, handler: Handler, *, max_concurrency: int) -> None:
        self._handler = handler
        self._sem = anyio.Semaphore(max_concurrency)
        self._is_async = inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        )

    async def __call__(self, request: GatewayRequest) -> GatewayResponse:
        if self._is_async:
            return await self._handler(request)  # type: ignore[misc]
        async with self._sem:
            result = await anyio.to_thread.run_sync(self._handler, request)
        if inspect.isawaitable(result):
            return await result
        return result
