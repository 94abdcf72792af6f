from fastapi import Depends, Request
from loguru import logger

from gateway.core.access import DenyReason, extract_credential
from gateway.core.errors import Forbidden, RateLimited, Unauthorized
from gateway.core.logging import identity_ctx_var
from gateway.core.pipeline import AdmissionPipeline
from gateway.core.rate_limit import client_identity


def get_pipeline(request: Request) -> AdmissionPipeline:
    return request.app.state.pipeline


async def authorize(
    request: Request,
    pipeline: AdmissionPipeline = Depends(get_pipeline),
) -> str:
    """Run the AccessGuard and return the caller's identity."""

    identity = client_identity(request, trust_proxy=pipeline.config.trust_proxy)
    request.state.identity = identity
    identity_ctx_var.set(identity)
    decision = pipeline.guard.authorize(
        credential=extract_credential(request.headers),
        client_ip=identity,
    )
    if decision.allowed:
        return identity

    logger.bind(reason=decision.reason.value, path=str(request.url.path)).warning("access_denied")
    await pipeline.audit(
        identity=identity,
        method=request.method,
        route=str(request.url.path),
        action=decision.reason.value,
        result="denied",
        request_id=getattr(request.state, "request_id", None),
    )
    if decision.reason == DenyReason.FORBIDDEN:
        raise Forbidden(decision.message)
    raise Unauthorized(decision.message)


async def enforce_rate_limit(
    request: Request,
    identity: str = Depends(authorize),
    pipeline: AdmissionPipeline = Depends(get_pipeline),
) -> str:
    """Count the request against the caller's window; runs only after ``authorize``."""

    now = pipeline.clock()
    decision = await pipeline.limiter.admit(identity, now)
    request.state.rate_limit = decision
    if decision.allowed:
        return identity

    logger.bind(retry_after_ms=decision.retry_after_ms).warning("rate_limited")
    await pipeline.audit(
        identity=identity,
        method=request.method,
        route=str(request.url.path),
        action="rate_limited",
        result="denied",
        request_id=getattr(request.state, "request_id", None),
        details={"retryAfterMs": decision.retry_after_ms},
    )
    raise RateLimited(decision.retry_after_ms, reset_at=decision.reset_at)
