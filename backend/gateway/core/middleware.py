"""Custom ASGI middleware used by the gateway app."""

from __future__ import annotations

import time
import uuid

from fastapi import Request
from loguru import logger
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from gateway.core.errors import PayloadTooLarge, error_response
from gateway.core.logging import identity_ctx_var, request_id_ctx_var

MAX_REQUEST_ID_LENGTH = 64


def _request_id(request: Request) -> str:
    supplied = (request.headers.get("X-Request-ID") or "").strip()
    if supplied and len(supplied) <= MAX_REQUEST_ID_LENGTH:
        return supplied
    return uuid.uuid4().hex


def _declared_length(headers: Headers) -> int | None:
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log one ``request_completed`` line for it."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = _request_id(request)
        request.state.request_id = request_id
        id_token = request_id_ctx_var.set(request_id)
        identity_token = identity_ctx_var.set("-")
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers.setdefault("X-Request-ID", request_id)
            return response
        finally:
            # The route runs in its own task; identity comes back through request.state.
            logger.bind(
                method=request.method,
                path=str(request.url.path),
                status=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                identity=getattr(request.state, "identity", "-"),
            ).info("request_completed")
            request_id_ctx_var.reset(id_token)
            identity_ctx_var.reset(identity_token)


class BodySizeLimitMiddleware:
    """Answer 413 before routing once the request body exceeds the limit.

    A declared ``Content-Length`` over the limit is refused without reading.
    Otherwise the body is buffered up to the limit, counting chunked uploads as
    they arrive, and replayed to the app as a single message.
    """

    def __init__(self, app: ASGIApp, *, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = _declared_length(Headers(scope=scope))
        if declared is not None and declared > self.max_body_bytes:
            await self._reject(scope, receive, send, received=declared)
            return

        chunks: list[bytes] = []
        received = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                return
            chunk = message.get("body", b"")
            received += len(chunk)
            if received > self.max_body_bytes:
                await self._reject(scope, receive, send, received=received)
                return
            chunks.append(chunk)
            more_body = message.get("more_body", False)

        body = b"".join(chunks)
        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if replayed:
                return await receive()
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send, *, received: int) -> None:
        logger.bind(received=received, limit=self.max_body_bytes).warning("payload_too_large")
        await error_response(PayloadTooLarge())(scope, receive, send)
