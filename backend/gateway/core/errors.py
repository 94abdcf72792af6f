"""Gateway error taxonomy and its translation into HTTP responses."""

from __future__ import annotations

import math
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import DBAPIError


class GatewayError(Exception):
    """Base class for every rejection the gateway reports to a caller."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "ERR_INTERNAL"
    message: str = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.headers = headers or {}
        self.extra = extra or {}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": False,
            "error": {"code": self.code, "message": self.message},
        }
        payload.update(self.extra)
        return payload


class Unauthorized(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "ERR_UNAUTHORIZED"
    message = "Missing gateway token"


class Forbidden(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ERR_FORBIDDEN"
    message = "IP not allowed"


class RateLimited(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "ERR_RATE_LIMIT"
    message = "Too many requests"

    def __init__(self, retry_after_ms: int, *, reset_at: int | None = None) -> None:
        self.retry_after_ms = max(0, retry_after_ms)
        retry_after_s = max(1, math.ceil(self.retry_after_ms / 1000))
        extra: dict[str, Any] = {"retryAfterMs": self.retry_after_ms}
        if reset_at is not None:
            extra["resetAt"] = reset_at
        super().__init__(headers={"Retry-After": str(retry_after_s)}, extra=extra)


class MissingIdempotencyKey(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ERR_IDEMPOTENCY_KEY_REQUIRED"
    message = "Idempotency-Key header is required for this operation."


class IdempotencyConflict(GatewayError):
    status_code = status.HTTP_409_CONFLICT
    code = "ERR_IDEMPOTENCY_CONFLICT"
    message = "Idempotency-Key was already used for a different request."


class IdempotencyInProgress(GatewayError):
    status_code = status.HTTP_409_CONFLICT
    code = "ERR_IDEMPOTENCY_IN_PROGRESS"
    message = "Another request with this Idempotency-Key is still running. Please retry shortly."

    def __init__(self, retry_after_ms: int) -> None:
        self.retry_after_ms = max(0, retry_after_ms)
        retry_after_s = max(1, math.ceil(self.retry_after_ms / 1000))
        super().__init__(
            headers={"Retry-After": str(retry_after_s)},
            extra={"retryAfterMs": self.retry_after_ms},
        )


class PayloadTooLarge(GatewayError):
    status_code = 413
    code = "ERR_PAYLOAD_TOO_LARGE"
    message = "Request entity too large"


class StoreUnavailable(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "ERR_STORE_UNAVAILABLE"
    message = "Gateway store is unavailable"


class HandlerFailed(GatewayError):
    code = "ERR_HANDLER"
    message = "Request handler failed"

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(),
        headers=exc.headers or None,
    )


def init_error_handlers(app: FastAPI) -> None:
    """Attach the gateway exception handlers to the FastAPI app."""

    async def gateway_error_handler(request: Request, exc: GatewayError):  # type: ignore[unused-arg]
        return error_response(exc)

    async def store_error_handler(request: Request, exc: DBAPIError):
        logger.bind(path=str(request.url.path), error=str(exc)).error("store_unavailable")
        return error_response(StoreUnavailable())

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(DBAPIError, store_error_handler)
