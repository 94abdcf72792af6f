"""Catch-all route: admitted requests are forwarded to the application handler."""

from fastapi import APIRouter, Depends, Request, Response
from loguru import logger

from gateway.core.deps import enforce_rate_limit, get_pipeline
from gateway.core.errors import (
    GatewayError,
    HandlerFailed,
    IdempotencyConflict,
    IdempotencyInProgress,
    MissingIdempotencyKey,
)
from gateway.core.handler import GatewayRequest, GatewayResponse, HandlerError
from gateway.core.idempotency import (
    MUTATING_METHODS,
    CachedResponse,
    IdempotencyClaimState,
    request_fingerprint,
    require_idempotency_key,
)
from gateway.core.pipeline import AdmissionPipeline

router = APIRouter()

ALL_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


def _full_path(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def _to_response(request: Request, status_code: int, body: bytes, content_type: str, headers=None) -> Response:
    response = Response(content=body, status_code=status_code, media_type=content_type, headers=headers)
    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    return response


async def _run_handler(pipeline: AdmissionPipeline, gw_request: GatewayRequest) -> GatewayResponse:
    """Invoke the handler, translating its failures into gateway errors."""

    try:
        return await pipeline.handler(gw_request)
    except GatewayError:
        raise
    except HandlerError as exc:
        logger.bind(status=exc.status_code, error=exc.message).warning("handler_failed")
        raise HandlerFailed(exc.message, status_code=exc.status_code) from exc
    except Exception as exc:
        logger.bind(error=repr(exc)).exception("handler_failed")
        raise HandlerFailed() from exc


@router.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
async def dispatch(
    request: Request,
    identity: str = Depends(enforce_rate_limit),
    pipeline: AdmissionPipeline = Depends(get_pipeline),
) -> Response:
    now = pipeline.clock()
    await pipeline.sweep_if_due(now)

    # BodySizeLimitMiddleware has already bounded the body.
    body = await request.body()

    request_id = getattr(request.state, "request_id", None) or "-"
    method = request.method.upper()
    path = request.url.path
    audit_ctx = {"identity": identity, "method": method, "route": path, "request_id": request_id}

    # The event log records admission, whatever the idempotency outcome.
    await pipeline.events.append(identity, path, now, method=method, request_id=request_id)

    gw_request = GatewayRequest(
        method=method,
        path=path,
        query=request.url.query,
        headers=dict(request.headers),
        body=body,
        identity=identity,
        request_id=request_id,
        idempotency_key=request.headers.get("Idempotency-Key"),
    )

    if method not in MUTATING_METHODS:
        try:
            result = await _run_handler(pipeline, gw_request)
        except HandlerFailed as exc:
            await pipeline.audit(**audit_ctx, action="handler_failed", result=str(exc.status_code))
            raise
        return _to_response(request, result.status_code, result.body, result.content_type, result.headers)

    try:
        key = require_idempotency_key(request)
    except MissingIdempotencyKey:
        await pipeline.audit(**audit_ctx, action="idempotency_key_missing", result="denied")
        raise

    fingerprint = request_fingerprint(method, _full_path(request), body)
    claim = await pipeline.broker.begin(key, fingerprint)

    if claim.state == IdempotencyClaimState.CONFLICT:
        await pipeline.audit(
            **audit_ctx,
            action="idempotency_conflict",
            result="denied",
            details={"idempotencyKey": key},
        )
        raise IdempotencyConflict()
    if claim.state == IdempotencyClaimState.IN_PROGRESS:
        await pipeline.audit(
            **audit_ctx,
            action="idempotency_in_progress",
            result="denied",
            details={"idempotencyKey": key},
        )
        raise IdempotencyInProgress(claim.retry_after_ms or 0)
    if claim.state == IdempotencyClaimState.CACHED:
        cached: CachedResponse = claim.response  # type: ignore[assignment]
        logger.bind(idempotency_key=key).info("idempotency_replay")
        return _to_response(
            request,
            cached.status_code,
            cached.body,
            cached.content_type,
            {**cached.headers, "Idempotent-Replay": "true"},
        )

    lease = claim.lease
    # A cancelled request (client gone) skips both branches below and leaves the
    # record pending: the side effect may already have happened.
    try:
        result = await _run_handler(pipeline, gw_request)
    except GatewayError as exc:
        await pipeline.broker.fail(lease, exc.message)
        await pipeline.audit(
            **audit_ctx,
            action="handler_failed",
            result=str(exc.status_code),
            details={"idempotencyKey": key},
        )
        raise

    if result.status_code >= 500:
        await pipeline.broker.fail(lease, f"handler responded with status {result.status_code}")
        await pipeline.audit(
            **audit_ctx,
            action="handler_failed",
            result=str(result.status_code),
            details={"idempotencyKey": key},
        )
    else:
        await pipeline.broker.complete(
            lease,
            CachedResponse(
                status_code=result.status_code,
                body=result.body,
                content_type=result.content_type,
                headers=dict(result.headers),
            ),
        )
    return _to_response(request, result.status_code, result.body, result.content_type, result.headers)
