"""Contract between the gateway core and the application handler it protects."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union


@dataclass(frozen=True, slots=True)
class GatewayRequest:
    """An admitted request, as handed to the application handler."""

    method: str
    path: str
    query: str
    headers: Mapping[str, str]
    body: bytes
    identity: str
    request_id: str
    idempotency_key: str | None = None

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


@dataclass(slots=True)
class GatewayResponse:
    status_code: int = 200
    body: bytes = b""
    content_type: str = "application/json"
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, payload: Any, status_code: int = 200) -> "GatewayResponse":
        body = json.dumps(payload, separators=(",", ":")).encode()
        return cls(status_code=status_code, body=body)


class HandlerError(Exception):
    """Raised by handlers to report an application failure with a chosen status."""

    def __init__(self, status_code: int = 500, message: str = "Request handler failed") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


Handler = Callable[[GatewayRequest], Union[GatewayResponse, Awaitable[GatewayResponse]]]


async def echo_handler(request: GatewayRequest) -> GatewayResponse:
    """Demo handler: reflect the admitted request back to the caller."""

    try:
        payload = request.json()
    except ValueError:
        payload = request.body.decode("utf-8", errors="replace")
    return GatewayResponse.json(
        {
            "ok": True,
            "data": {
                "method": request.method,
                "path": request.path,
                "identity": request.identity,
                "body": payload,
            },
        }
    )
